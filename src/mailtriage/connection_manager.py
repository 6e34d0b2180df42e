"""Per-account IMAP sessions: backlog sync followed by IDLE listening."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Callable

from mailtriage.email_parser import EmailParser, ParsedEmail
from mailtriage.errors import AccountConnectionError, MessageParseError
from mailtriage.imap_client import IdleNotSupportedError, IMAPClient, is_transport_error
from mailtriage.notifier import NotificationContext
from mailtriage.registry import AccountConfig

if TYPE_CHECKING:
    from mailtriage.categorizer import Categorizer
    from mailtriage.config import ImapSettings
    from mailtriage.registry import AccountRegistry
    from mailtriage.storage import EmailStore
    from mailtriage.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)

STOP_GRACE_SECONDS = 10


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    BACKLOG_SYNC = "backlog_sync"
    LISTENING = "listening"
    FAILED = "failed"


class ListenMode(str, Enum):
    PUSH_WAIT = "push_wait"
    HEARTBEAT_POLL = "heartbeat_poll"


@dataclass
class AccountCredentials:
    """Everything needed to open a session. Lives for one connect call."""

    email: str
    password: str = field(repr=False)
    host: str
    port: int
    secure: bool

    def to_config(self) -> AccountConfig:
        return AccountConfig(email=self.email, host=self.host, port=self.port, secure=self.secure)


@dataclass
class MailboxEvent:
    """A signal that the mailbox may have new messages."""

    kind: str  # "exists" from IDLE, "poll" after a heartbeat
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


ClientFactory = Callable[..., IMAPClient]


class AccountSession:
    """One account's long-lived mailbox session.

    All work for the account runs in a single task, so the backlog, each
    pushed event and each heartbeat are handled strictly one after another.
    """

    def __init__(
        self,
        config: AccountConfig,
        client: IMAPClient,
        categorizer: Categorizer,
        store: EmailStore,
        registry: AccountRegistry,
        settings: ImapSettings,
        parser: EmailParser | None = None,
        audit: StructuredLogger | None = None,
    ):
        self.config = config
        self.client = client
        self.categorizer = categorizer
        self.store = store
        self.registry = registry
        self.settings = settings
        self.parser = parser or EmailParser()
        self.audit = audit

        self.state = SessionState.CONNECTING
        self.listen_mode: ListenMode | None = None
        self.events: asyncio.Queue[MailboxEvent] = asyncio.Queue()
        self.mailbox_lock = asyncio.Lock()
        self.task: asyncio.Task | None = None
        self._known_count = 0
        self._stop_event = asyncio.Event()

    @property
    def email(self) -> str:
        return self.config.email

    @property
    def folder(self) -> str:
        return self.settings.mailbox

    def start(self) -> asyncio.Task:
        self.task = asyncio.create_task(self.run(), name=f"session:{self.email}")
        return self.task

    async def run(self) -> None:
        """Backlog sync, then listen until stopped or the connection drops."""
        try:
            stored = await self.backlog_sync()
            logger.info(f"[{self.email}] Backlog sync stored {stored} messages")
            await self.listen()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.state = SessionState.FAILED
            logger.error(f"[{self.email}] Session failed: {e}", exc_info=True)
            if self.audit:
                self.audit.log_account_event("account_failed", self.email, error=str(e))
        finally:
            if self.state is not SessionState.FAILED:
                self.state = SessionState.DISCONNECTED
            self.registry.mark_disconnected(self.email)
            await asyncio.to_thread(self.client.disconnect)
            logger.info(f"[{self.email}] Session closed ({self.state.value})")

    async def backlog_sync(self) -> int:
        """Fetch, classify and store everything inside the backlog window."""
        self.state = SessionState.BACKLOG_SYNC
        since = (datetime.now(timezone.utc) - timedelta(days=self.settings.backlog_days)).date()
        stored = 0

        async with self.mailbox_lock:
            self._known_count = await asyncio.to_thread(self.client.select_folder, self.folder)
            uids = await asyncio.to_thread(self.client.search_since, since)
            logger.info(f"[{self.email}] Syncing {len(uids)} messages since {since.isoformat()}")

            for uid in uids:
                if self._stop_event.is_set():
                    break
                try:
                    raw = await asyncio.to_thread(self.client.fetch_by_uid, uid)
                except Exception as e:
                    if is_transport_error(e):
                        raise
                    logger.error(f"[{self.email}] Failed to fetch UID {uid}: {e}")
                    continue
                if await self._process(raw, label=f"UID {uid}", notify=False):
                    stored += 1

        self.registry.record_sync(self.email, total_emails=stored)
        return stored

    async def listen(self) -> None:
        """Wait for new mail until stopped.

        The wait strategy is picked once here: IDLE when the server
        advertises it, otherwise a NOOP heartbeat. A server that refuses
        IDLE later switches the session to the heartbeat for good.
        """
        self.state = SessionState.LISTENING
        self.listen_mode = ListenMode.PUSH_WAIT if self.client.supports_idle else ListenMode.HEARTBEAT_POLL
        logger.info(f"[{self.email}] Listening ({self.listen_mode.value})")

        while not self._stop_event.is_set():
            try:
                if self.listen_mode is ListenMode.PUSH_WAIT:
                    await self._push_wait()
                else:
                    await self._heartbeat_poll()
            except Exception as e:
                if is_transport_error(e):
                    raise
                logger.error(f"[{self.email}] Error while waiting for mail: {e}", exc_info=True)
                if self.audit:
                    self.audit.log_error(
                        "listen_failed", str(e), {"account": self.email, "mode": self.listen_mode.value}
                    )
            await self._drain_events()

    async def _push_wait(self) -> None:
        async with self.mailbox_lock:
            try:
                has_new = await asyncio.to_thread(self.client.idle, self.settings.idle_timeout)
            except IdleNotSupportedError as e:
                logger.warning(
                    f"[{self.email}] IDLE unavailable ({e}), "
                    f"falling back to NOOP every {self.settings.heartbeat_interval}s"
                )
                self.listen_mode = ListenMode.HEARTBEAT_POLL
                return

        if has_new:
            logger.info(f"[{self.email}] New email signalled by server")
            self.events.put_nowait(MailboxEvent(kind="exists"))

    async def _heartbeat_poll(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.settings.heartbeat_interval)
            return
        except asyncio.TimeoutError:
            pass

        async with self.mailbox_lock:
            await asyncio.to_thread(self.client.noop)
        logger.debug(f"[{self.email}] Heartbeat sent")
        self.events.put_nowait(MailboxEvent(kind="poll"))

    async def _drain_events(self) -> None:
        while not self.events.empty():
            event = self.events.get_nowait()
            try:
                await self.handle_event(event)
            except Exception as e:
                if is_transport_error(e):
                    raise
                logger.error(f"[{self.email}] Error processing {event.kind} event: {e}", exc_info=True)
                if self.audit:
                    self.audit.log_error("event_failed", str(e), {"account": self.email, "kind": event.kind})
            finally:
                self.events.task_done()

    async def handle_event(self, event: MailboxEvent) -> int:
        """Process messages that arrived since the last known count.

        Returns the number of messages stored.
        """
        stored = 0
        async with self.mailbox_lock:
            count = await asyncio.to_thread(self.client.message_count, self.folder)
            if count <= self._known_count:
                # Unchanged, or messages were expunged
                self._known_count = count
                return 0

            first_new = self._known_count + 1
            self._known_count = count
            for position in range(first_new, count + 1):
                try:
                    raw = await asyncio.to_thread(self.client.fetch_by_position, position)
                except Exception as e:
                    if is_transport_error(e):
                        raise
                    logger.error(f"[{self.email}] Failed to fetch message #{position}: {e}")
                    if self.audit:
                        self.audit.log_error(
                            "fetch_failed", str(e), {"account": self.email, "message": f"#{position}"}
                        )
                    continue
                if await self._process(raw, label=f"message #{position}", notify=True):
                    stored += 1

        if stored:
            self.registry.record_sync(self.email)
        return stored

    async def _process(self, raw: bytes | None, label: str, notify: bool) -> bool:
        """Parse, classify and store one message. Returns True if stored."""
        if raw is None:
            logger.warning(f"[{self.email}] No source found for {label}")
            return False

        try:
            parsed = self.parser.parse_bytes(raw)
        except MessageParseError as e:
            logger.warning(f"[{self.email}] Skipping {label}: {e}")
            if self.audit:
                self.audit.log_error("parse_failed", str(e), {"account": self.email, "message": label})
            return False

        context = self._notification_context(parsed) if notify else None
        result = await self.categorizer.categorize(parsed.subject, parsed.body_text, context)
        parsed.category = result.category
        logger.info(f"[{self.email}] {parsed.subject!r} -> {result.category.value} ({result.source})")

        try:
            await asyncio.to_thread(self.store.store, parsed, self.folder, self.email, result.category)
        except Exception as e:
            logger.error(f"[{self.email}] Failed to store {label}: {e}", exc_info=True)
            return False

        if self.audit:
            self.audit.log_email_classified(
                account=self.email,
                folder=self.folder,
                message_id=parsed.message_id,
                category=result.category.value,
                source=result.source,
            )
        return True

    def _notification_context(self, parsed: ParsedEmail) -> NotificationContext:
        return NotificationContext(
            subject=parsed.subject,
            from_addr=parsed.from_text,
            to_addrs=parsed.to_text,
            body=parsed.body_text,
            date=parsed.date,
            folder=self.folder,
            account=self.email,
        )

    async def stop(self) -> None:
        """Stop listening and wait for the session task to finish."""
        self._stop_event.set()
        self.client.stop()
        if self.task is None or self.task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(self.task), timeout=STOP_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.email}] Session did not stop in time, cancelling")
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass


class ConnectionManager:
    """Owns one AccountSession per connected account."""

    def __init__(
        self,
        registry: AccountRegistry,
        categorizer: Categorizer,
        store: EmailStore,
        settings: ImapSettings,
        audit: StructuredLogger | None = None,
        client_factory: ClientFactory = IMAPClient,
    ):
        self.registry = registry
        self.categorizer = categorizer
        self.store = store
        self.settings = settings
        self.audit = audit
        self.client_factory = client_factory
        self.sessions: dict[str, AccountSession] = {}

    def get_state(self, email: str) -> SessionState:
        session = self.sessions.get(email)
        return session.state if session else SessionState.DISCONNECTED

    async def connect(self, credentials: AccountCredentials) -> bool:
        """Open a session and start syncing in the background.

        Returns False without doing anything if the account is already
        connected or connecting.

        Raises:
            AccountConnectionError: If the server cannot be reached or login fails
        """
        email = credentials.email
        if not self.registry.register_connecting(email):
            return False

        client = self.client_factory(
            email=email,
            password=credentials.password,
            host=credentials.host,
            port=credentials.port,
            secure=credentials.secure,
            settings=self.settings,
        )
        session = AccountSession(
            config=credentials.to_config(),
            client=client,
            categorizer=self.categorizer,
            store=self.store,
            registry=self.registry,
            settings=self.settings,
            audit=self.audit,
        )
        self.sessions[email] = session

        try:
            await asyncio.to_thread(client.connect)
        except Exception as e:
            session.state = SessionState.FAILED
            self.registry.release(email)
            logger.error(f"Connection failed to {email}: {e}")
            if self.audit:
                self.audit.log_account_event("account_connect_failed", email, error=str(e))
            if isinstance(e, AccountConnectionError):
                raise
            raise AccountConnectionError(f"Connection failed to {email}: {e}") from e

        self.registry.mark_connected(session.config)
        if self.audit:
            self.audit.log_account_event(
                "account_connected", email, host=credentials.host, port=credentials.port
            )
        logger.info(f"Connected to {email}")
        session.start()
        return True

    async def disconnect(self, email: str) -> bool:
        """Tear down an account's session. Returns False if none is running."""
        session = self.sessions.get(email)
        if session is None:
            return False

        await session.stop()
        self.registry.mark_disconnected(email)
        if self.audit:
            self.audit.log_account_event("account_disconnected", email)
        return True

    async def shutdown(self) -> None:
        """Stop every session and flush pending notifications."""
        await asyncio.gather(*(self.disconnect(email) for email in list(self.sessions)))
        await self.categorizer.wait_for_notifications()
