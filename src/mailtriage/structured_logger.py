"""Structured logging for mailtriage."""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class StructuredLogger:
    """Structured logger for audit trail."""

    def __init__(self, log_file: str | None = None):
        """Initialize structured logger.

        Args:
            log_file: Path to JSON log file for audit trail
        """
        self.log_file = Path(log_file) if log_file else None
        self._lock = threading.Lock()

    def log_event(self, event_type: str, data: dict[str, Any]) -> None:
        """Log a structured event.

        Args:
            event_type: Type of event (e.g., 'email_classified', 'account_connected')
            data: Event data
        """
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            **data,
        }

        if self.log_file:
            try:
                with self._lock, open(self.log_file, "a", encoding="utf-8") as f:
                    f.write(json.dumps(event) + "\n")
            except OSError as e:
                logger.error(f"Failed to write to audit log: {e}")

    def log_email_classified(
        self,
        account: str,
        folder: str,
        message_id: str | None,
        category: str,
        source: str,
    ) -> None:
        """Log a classification result.

        Args:
            account: Account email the message belongs to
            folder: Mailbox the message was fetched from
            message_id: Message-ID header, if any
            category: Resolved category label
            source: Where the label came from (cache, llm, fallback)
        """
        safe_message_id = self._sanitize_for_json(message_id) if message_id else None

        self.log_event(
            "email_classified",
            {
                "account": account,
                "folder": folder,
                "message_id": safe_message_id,
                "category": category,
                "source": source,
            },
        )

    def log_account_event(self, event_type: str, account: str, **details: Any) -> None:
        """Log an account lifecycle event (connected, disconnected, failed)."""
        self.log_event(event_type, {"account": account, **details})

    def log_error(self, error_type: str, message: str, details: dict[str, Any] | None = None) -> None:
        """Log error event.

        Args:
            error_type: Type of error
            message: Error message
            details: Additional error details
        """
        self.log_event(
            "error",
            {
                "error_type": error_type,
                "message": self._sanitize_for_json(message),
                "details": details or {},
            },
        )

    def log_startup(self, config: dict[str, Any]) -> None:
        """Log application startup.

        Args:
            config: Sanitized configuration
        """
        self.log_event("startup", config)

    def log_shutdown(self, reason: str = "normal") -> None:
        """Log application shutdown."""
        self.log_event("shutdown", {"reason": reason})

    def _sanitize_for_json(self, value: str) -> str:
        """Strip control characters and cap the length of a logged string."""
        sanitized = ''.join(c for c in value if c.isprintable() or c in [' ', '\t'])
        if len(sanitized) > 500:
            sanitized = sanitized[:497] + "..."
        return sanitized
