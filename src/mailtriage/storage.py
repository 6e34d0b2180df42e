"""SQLite-backed store for classified emails."""

from __future__ import annotations

import hashlib
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Generator, Protocol

if TYPE_CHECKING:
    from mailtriage.categories import Category
    from mailtriage.email_parser import ParsedEmail

logger = logging.getLogger(__name__)


class EmailStore(Protocol):
    """Contract the connection manager and service rely on."""

    def store(
        self,
        message: ParsedEmail,
        folder: str,
        account: str,
        category: Category | None = None,
    ) -> None: ...

    def count_for_account(self, account: str) -> int: ...

    def search(self, category: str, account: str = "", folder: str = "") -> list[dict[str, Any]]: ...


class Storage:
    """SQLite storage for classified emails.

    Writes are upserts keyed by (account, folder, message key), so the same
    message written twice, e.g. after a reconnect re-runs the backlog, is
    stored once.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str | Path):
        """Initialize storage with database path."""
        self.db_path = Path(db_path)
        self._write_lock = threading.Lock()
        self._init_database()

    def _init_database(self) -> None:
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                );

                CREATE TABLE IF NOT EXISTS emails (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account TEXT NOT NULL,
                    folder TEXT NOT NULL,
                    message_key TEXT NOT NULL,
                    message_id TEXT,
                    subject TEXT,
                    from_addr TEXT,
                    to_addrs TEXT,
                    date TEXT,
                    body TEXT,
                    category TEXT,
                    stored_at TEXT NOT NULL,
                    UNIQUE (account, folder, message_key)
                );

                CREATE INDEX IF NOT EXISTS idx_emails_account ON emails(account);
                CREATE INDEX IF NOT EXISTS idx_emails_category ON emails(category);
                """
            )

            cursor = conn.execute("SELECT version FROM schema_version")
            if cursor.fetchone() is None:
                conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,),
                )

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with proper handling."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def store(
        self,
        message: ParsedEmail,
        folder: str,
        account: str,
        category: Category | None = None,
    ) -> None:
        """Store a message under an account and folder."""
        resolved = category or message.category
        record = message.to_dict()
        with self._write_lock, self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO emails (
                    account, folder, message_key, message_id, subject,
                    from_addr, to_addrs, date, body, category, stored_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (account, folder, message_key) DO UPDATE SET
                    category = excluded.category,
                    stored_at = excluded.stored_at
                """,
                (
                    account,
                    folder,
                    self._message_key(message),
                    message.message_id or None,
                    record["subject"],
                    record["from"],
                    record["to"],
                    record["date"],
                    record["body"],
                    resolved.value if resolved else None,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
        logger.debug(f"Stored '{message.subject}' for {account}/{folder} as {resolved}")

    def count_for_account(self, account: str) -> int:
        """Number of stored emails for an account."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT COUNT(*) AS total FROM emails WHERE account = ?", (account,)
            )
            return cursor.fetchone()["total"]

    def search(self, category: str, account: str = "", folder: str = "") -> list[dict[str, Any]]:
        """Find emails by category, optionally narrowed to an account and folder."""
        clauses = ["category = ?"]
        params: list[Any] = [category]
        if account:
            clauses.append("account = ?")
            params.append(account)
        if folder:
            clauses.append("folder = ?")
            params.append(folder)

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""
                SELECT account, folder, message_id, subject, from_addr, to_addrs,
                       date, body, category, stored_at
                FROM emails
                WHERE {' AND '.join(clauses)}
                ORDER BY date DESC
                """,
                params,
            )
            return [dict(row) for row in cursor.fetchall()]

    def get_statistics(self, account: str | None = None) -> dict[str, Any]:
        """Counts per category, overall or for one account."""
        where_clause = ""
        params: tuple = ()
        if account:
            where_clause = "WHERE account = ?"
            params = (account,)

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""
                SELECT category, COUNT(*) AS count
                FROM emails {where_clause}
                GROUP BY category
                """,
                params,
            )
            by_category = {row["category"]: row["count"] for row in cursor.fetchall()}

        return {
            "total": sum(by_category.values()),
            "by_category": by_category,
        }

    def _message_key(self, message: ParsedEmail) -> str:
        if message.message_id:
            return message.message_id
        fingerprint = f"{message.from_text}|{message.date_str}|{message.subject}|{message.body_text}"
        return hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()
