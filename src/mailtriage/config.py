"""Configuration management for mailtriage."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field


class ImapSettings(BaseModel):
    """Session settings shared by every IMAP account."""

    mailbox: str = "INBOX"
    backlog_days: int = Field(
        default=30,
        description="Trailing window in days fetched when an account connects",
    )
    timeout: int = Field(default=30, description="Socket timeout for IMAP commands in seconds")
    idle_timeout: int = Field(
        default=1740,
        description="Seconds before IDLE is renewed (servers drop IDLE after 30 minutes)",
    )
    heartbeat_interval: int = Field(
        default=600,
        description="NOOP interval in seconds when the server cannot IDLE",
    )


class OllamaConfig(BaseModel):
    """Ollama configuration."""

    base_url: str = "http://localhost:11434"
    model: str = "llama3"
    timeout: int = 30
    temperature: float = 0.0


class CategorizerConfig(BaseModel):
    """Categorization engine configuration."""

    cache_size: int = Field(default=1000, gt=0)


class NotificationConfig(BaseModel):
    """Outbound notification targets for interested emails."""

    slack_webhook_url: str | None = Field(default=None, repr=False)
    interested_webhook_url: str | None = Field(default=None, repr=False)
    timeout: int = 10


class StorageConfig(BaseModel):
    """Paths for persisted state."""

    database_path: str = "mailtriage.db"
    accounts_file: str = "config/accounts.json"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    log_file: str | None = None
    audit_file: str | None = "audit.jsonl"


class WebConfig(BaseModel):
    """HTTP API configuration."""

    host: str = "127.0.0.1"
    port: int = 5000


class Config(BaseModel):
    """Main configuration."""

    imap: ImapSettings = Field(default_factory=ImapSettings)
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    categorizer: CategorizerConfig = Field(default_factory=CategorizerConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    web: WebConfig = Field(default_factory=WebConfig)


def load_config(config_path: str | Path) -> Config:
    """Load configuration from YAML file."""
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    return Config(**(data or {}))
