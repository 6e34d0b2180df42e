"""
mailtriage

A multi-account mail triage service that keeps IMAP sessions open with
IDLE, classifies every message into a fixed set of categories using a
local LLM (Ollama) with a keyword fallback, and alerts on interested leads.
"""

__version__ = "1.0.0"
__app_name__ = "mailtriage"
