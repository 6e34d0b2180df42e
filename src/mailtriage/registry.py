"""Account registry: connection directory and saved reconnect configuration."""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class AccountStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class AccountConfig(BaseModel):
    """Non-secret connection parameters saved for reconnection.

    Has no password field. Unknown keys, password included, are dropped.
    """

    model_config = ConfigDict(extra="ignore")

    email: str
    host: str
    port: int
    secure: bool


@dataclass
class AccountSummary:
    """Directory entry for a tracked account."""

    id: str
    email: str
    provider: str = "IMAP"
    status: AccountStatus = AccountStatus.CONNECTED
    last_sync: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    total_emails: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "email": self.email,
            "provider": self.provider,
            "status": self.status.value,
            "lastSync": self.last_sync.isoformat(),
            "totalEmails": self.total_emails,
        }


class AccountRegistry:
    """Tracks account connection state and persists saved configs.

    The directory holds one entry per email, in first-connect order. Saved
    configs are written to ``accounts_file`` as a JSON list on every
    successful connect. All state changes happen under one lock.
    """

    def __init__(self, accounts_file: str | Path | None = None):
        self.accounts_file = Path(accounts_file) if accounts_file else None
        self._lock = threading.Lock()
        self._directory: dict[str, AccountSummary] = {}
        self._saved_configs: dict[str, AccountConfig] = {}
        self._connecting: set[str] = set()

    def load_on_startup(self) -> int:
        """Load saved configs from disk. Returns the number loaded."""
        if not self.accounts_file or not self.accounts_file.exists():
            logger.info("No saved account configurations found")
            return 0

        try:
            data = json.loads(self.accounts_file.read_text(encoding="utf-8"))
            configs = [AccountConfig(**item) for item in data]
        except (OSError, ValueError, TypeError) as e:
            logger.error(f"Error loading account configs from {self.accounts_file}: {e}")
            return 0

        with self._lock:
            for config in configs:
                self._saved_configs[config.email] = config

        logger.info(f"Loaded {len(configs)} saved account configurations")
        return len(configs)

    def register_connecting(self, email: str) -> bool:
        """Reserve an email for a connection attempt.

        Returns False when the account is already connected or another
        attempt for it is in flight.
        """
        with self._lock:
            entry = self._directory.get(email)
            if entry and entry.status is AccountStatus.CONNECTED:
                logger.info(f"Account {email} is already connected.")
                return False
            if email in self._connecting:
                logger.info(f"Account {email} is already connecting.")
                return False
            self._connecting.add(email)
            return True

    def release(self, email: str) -> None:
        """Drop a connection reservation without touching the directory."""
        with self._lock:
            self._connecting.discard(email)

    def mark_connected(self, config: AccountConfig) -> AccountSummary:
        """Mark an account connected and save its non-secret config."""
        with self._lock:
            self._connecting.discard(config.email)
            self._saved_configs[config.email] = config
            self._persist()

            entry = self._directory.get(config.email)
            if entry is None:
                entry = AccountSummary(
                    id=uuid.uuid4().hex,
                    email=config.email,
                )
                self._directory[config.email] = entry
            else:
                entry.status = AccountStatus.CONNECTED
                entry.last_sync = datetime.now(timezone.utc)
            return entry

    def record_sync(self, email: str, total_emails: int | None = None) -> None:
        """Update the last sync time and, if given, the email count."""
        with self._lock:
            entry = self._directory.get(email)
            if entry is None:
                return
            entry.last_sync = datetime.now(timezone.utc)
            if total_emails is not None:
                entry.total_emails = total_emails

    def mark_disconnected(self, email: str) -> None:
        """Flip an account to disconnected, keeping its directory entry."""
        with self._lock:
            self._connecting.discard(email)
            entry = self._directory.get(email)
            if entry is not None:
                entry.status = AccountStatus.DISCONNECTED

    def is_connected(self, email: str) -> bool:
        entry = self._directory.get(email)
        return entry is not None and entry.status is AccountStatus.CONNECTED

    def list_connected(self) -> list[AccountSummary]:
        """All tracked accounts, connected or not."""
        with self._lock:
            return list(self._directory.values())

    def list_saved_configs(self) -> list[AccountConfig]:
        with self._lock:
            return list(self._saved_configs.values())

    def get_saved_config(self, email: str) -> AccountConfig | None:
        with self._lock:
            return self._saved_configs.get(email)

    def _persist(self) -> None:
        """Write saved configs to disk. Caller holds the lock."""
        if not self.accounts_file:
            return

        records = [config.model_dump() for config in self._saved_configs.values()]
        try:
            self.accounts_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.accounts_file.with_name(self.accounts_file.name + ".tmp")
            tmp_path.write_text(json.dumps(records, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.accounts_file)
            logger.info(f"Saved {len(records)} account configurations to {self.accounts_file}")
        except OSError as e:
            logger.error(f"Error saving account configs: {e}")
