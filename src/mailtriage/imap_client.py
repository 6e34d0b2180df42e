"""IMAP client for mailbox operations."""

from __future__ import annotations

import imaplib
import json
import logging
import re
import select
import time
from datetime import date
from typing import TYPE_CHECKING

from mailtriage.errors import AccountConnectionError

if TYPE_CHECKING:
    from mailtriage.config import ImapSettings

logger = logging.getLogger(__name__)

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_STATUS_MESSAGES_RE = re.compile(rb"MESSAGES\s+(\d+)", re.IGNORECASE)


class IdleNotSupportedError(Exception):
    """The server does not offer IDLE or refused to enter it."""


def is_transport_error(error: BaseException) -> bool:
    """True for failures that mean the IMAP connection itself is gone."""
    return isinstance(error, (OSError, imaplib.IMAP4.abort))


def imap_date(value: date) -> str:
    """Format a date the way IMAP SEARCH expects (e.g. 01-Jan-2024)."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


class IMAPClient:
    """Blocking IMAP session for a single account.

    Every method blocks on the network; async callers run them in a worker
    thread. The password is only used during ``connect`` and is dropped
    right after login.
    """

    def __init__(
        self,
        email: str,
        password: str,
        host: str,
        port: int,
        secure: bool,
        settings: ImapSettings,
    ):
        """Initialize the IMAP client."""
        self.email = email
        self.host = host
        self.port = port
        self.secure = secure
        self.settings = settings
        self._password: str | None = password
        self._connection: imaplib.IMAP4 | None = None
        self._selected_folder: str | None = None
        self._should_stop: bool = False
        self.supports_idle: bool = False  # Set during connect()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    def connect(self) -> None:
        """Connect and log in to the IMAP server.

        Raises:
            AccountConnectionError: If the server is unreachable or login fails
        """
        logger.info(json.dumps({"event": "connecting", "host": self.host, "port": self.port, "secure": self.secure}))

        password, self._password = self._password, None
        try:
            if self.secure:
                self._connection = imaplib.IMAP4_SSL(self.host, self.port, timeout=self.settings.timeout)
            else:
                self._connection = imaplib.IMAP4(self.host, self.port, timeout=self.settings.timeout)
            logger.debug("Connection established")
        except (OSError, imaplib.IMAP4.error) as e:
            error_msg = f"Cannot connect to {self.host}:{self.port} - Check host, port, and network connection"
            logger.error(json.dumps({"event": "connect_error", "host": self.host, "error": str(e)}))
            raise AccountConnectionError(error_msg) from e

        try:
            self._connection.login(self.email, password or "")
            logger.info(json.dumps({"event": "logged_in", "username": self.email}))

            # Some servers advertise more capabilities after authentication
            self._connection.capability()
            capabilities = self._connection.capabilities
            self.supports_idle = "IDLE" in capabilities
            if self.supports_idle:
                logger.debug(json.dumps({"event": "idle_supported", "server": self.host}))
            else:
                logger.warning(json.dumps({"event": "idle_not_supported", "server": self.host}))

        except (OSError, imaplib.IMAP4.error) as e:
            self._close_quietly()
            error_str = str(e)
            if "AUTHENTICATIONFAILED" in error_str or "authentication" in error_str.lower():
                error_msg = f"Authentication failed for {self.email} - Check username and password"
            else:
                error_msg = f"IMAP error during login: {e}"
            logger.error(error_msg)
            raise AccountConnectionError(error_msg) from e

    def stop(self) -> None:
        """Signal the client to stop (interrupts IDLE)."""
        self._should_stop = True

    def disconnect(self) -> None:
        """Disconnect from the IMAP server."""
        if self._connection:
            try:
                self._connection.logout()
            except (OSError, imaplib.IMAP4.error) as e:
                logger.warning(f"Error during logout: {e}")
            finally:
                self._connection = None
                self._selected_folder = None

    def _close_quietly(self) -> None:
        if self._connection:
            try:
                self._connection.shutdown()
            except OSError:
                pass
            self._connection = None

    def _require_connection(self) -> imaplib.IMAP4:
        if not self._connection:
            raise AccountConnectionError(f"Not connected to {self.host}")
        return self._connection

    def select_folder(self, folder: str = "INBOX") -> int:
        """Select a folder and return its message count."""
        connection = self._require_connection()

        logger.debug(f"Selecting folder: {folder}")
        status, data = connection.select(folder)

        if status != "OK":
            raise RuntimeError(f"Failed to select folder {folder}: {data}")

        self._selected_folder = folder
        count = int(data[0]) if data and data[0] else 0
        logger.debug(f"Selected folder: {folder} ({count} messages)")
        return count

    def search_since(self, since: date) -> list[int]:
        """UIDs of messages in the selected folder received on or after ``since``."""
        connection = self._require_connection()
        if not self._selected_folder:
            raise RuntimeError("No folder selected")

        status, data = connection.uid("SEARCH", None, "SINCE", imap_date(since))

        if status != "OK":
            logger.error(json.dumps({"event": "search_failed", "data": str(data)}))
            return []

        uids = [int(uid) for uid in data[0].split()] if data and data[0] else []
        logger.info(json.dumps({"event": "found_since", "since": imap_date(since), "count": len(uids)}))
        return uids

    def message_count(self, folder: str | None = None) -> int:
        """Current number of messages in a folder, via STATUS."""
        connection = self._require_connection()
        folder = folder or self._selected_folder or self.settings.mailbox

        status, data = connection.status(folder, "(MESSAGES)")
        if status != "OK" or not data or not data[0]:
            raise RuntimeError(f"STATUS failed for {folder}: {data}")

        match = _STATUS_MESSAGES_RE.search(data[0])
        if not match:
            raise RuntimeError(f"Unexpected STATUS response: {data[0]!r}")
        return int(match.group(1))

    def fetch_by_uid(self, uid: int) -> bytes | None:
        """Fetch a message source by UID without marking it as seen."""
        connection = self._require_connection()
        status, data = connection.uid("FETCH", str(uid), "(BODY.PEEK[])")
        return self._extract_source(status, data, f"UID {uid}")

    def fetch_by_position(self, position: int) -> bytes | None:
        """Fetch a message source by sequence number without marking it as seen."""
        connection = self._require_connection()
        status, data = connection.fetch(str(position), "(BODY.PEEK[])")
        return self._extract_source(status, data, f"message #{position}")

    def _extract_source(self, status: str, data: list, label: str) -> bytes | None:
        if status != "OK" or not data or not isinstance(data[0], tuple):
            logger.warning(f"Failed to fetch {label}")
            return None
        return data[0][1]

    def idle(self, timeout: int | None = None) -> bool:
        """Wait for new messages using IDLE.

        Args:
            timeout: Maximum time to wait in seconds (default from settings)

        Returns:
            True if the server announced new messages, False on timeout or stop

        Raises:
            IdleNotSupportedError: If the server does not accept IDLE
            AccountConnectionError: If the connection drops while idling
        """
        connection = self._require_connection()
        if not self._selected_folder:
            raise RuntimeError("No folder selected")
        if not self.supports_idle:
            raise IdleNotSupportedError(f"{self.host} does not advertise IDLE")

        timeout = timeout or self.settings.idle_timeout
        logger.debug(f"Entering IDLE mode (timeout={timeout}s)")

        try:
            tag = connection._new_tag().decode()
            connection.send(f"{tag} IDLE\r\n".encode())

            response = connection.readline()
            if not response.startswith(b'+'):
                raise IdleNotSupportedError(f"Unexpected IDLE response: {response!r}")

            logger.debug("IDLE mode active, waiting for notifications...")

            start_time = time.time()
            has_new_messages = False

            connection.sock.setblocking(False)

            while time.time() - start_time < timeout and not self._should_stop:
                readable, _, _ = select.select([connection.sock], [], [], 1.0)

                if readable:
                    connection.sock.setblocking(True)
                    connection.sock.settimeout(5.0)
                    line = connection.readline()
                    connection.sock.setblocking(False)

                    logger.debug(f"IDLE notification: {line}")

                    if not line:
                        raise AccountConnectionError(f"Server {self.host} closed the connection")

                    if b'EXISTS' in line or b'RECENT' in line:
                        has_new_messages = True
                        break

                    if line.startswith(b'* BYE'):
                        raise AccountConnectionError(f"Server {self.host} ended the session: {line!r}")

            # Exit IDLE
            connection.sock.setblocking(True)
            connection.sock.settimeout(5.0)
            connection.send(b"DONE\r\n")
            self._read_until_tagged(connection, tag)
            connection.sock.settimeout(self.settings.timeout)

            return has_new_messages

        except (OSError, imaplib.IMAP4.abort) as e:
            logger.error(f"IDLE error: {e}")
            self._close_quietly()
            raise AccountConnectionError(f"Connection lost while idling: {e}") from e

    def _read_until_tagged(self, connection: imaplib.IMAP4, tag: str) -> None:
        """Consume lines until the tagged completion of IDLE."""
        while True:
            line = connection.readline()
            logger.debug(f"IDLE exit response: {line}")
            if not line:
                raise AccountConnectionError(f"Server {self.host} closed the connection")
            if line.startswith(tag.encode()):
                return

    def noop(self) -> None:
        """Send NOOP to keep connection alive."""
        connection = self._require_connection()
        try:
            connection.noop()
        except (OSError, imaplib.IMAP4.abort) as e:
            self._close_quietly()
            raise AccountConnectionError(f"Connection lost during NOOP: {e}") from e
