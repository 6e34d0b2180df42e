"""Account operations exposed to the API layer."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from mailtriage.cache import CategoryCache
from mailtriage.categories import Category
from mailtriage.categorizer import Categorizer
from mailtriage.connection_manager import AccountCredentials, ConnectionManager
from mailtriage.errors import AccountNotFoundError, AccountValidationError
from mailtriage.llm_client import LLMClient
from mailtriage.notifier import NotificationSink
from mailtriage.registry import AccountRegistry
from mailtriage.rules_engine import RulesEngine
from mailtriage.storage import Storage

if TYPE_CHECKING:
    from mailtriage.config import Config
    from mailtriage.registry import AccountConfig
    from mailtriage.storage import EmailStore
    from mailtriage.structured_logger import StructuredLogger


logger = logging.getLogger(__name__)


def _require(**fields: Any) -> None:
    missing = [
        name
        for name, value in fields.items()
        if value is None or (isinstance(value, str) and not value.strip())
    ]
    if missing:
        raise AccountValidationError(f"Missing required fields: {', '.join(missing)}")


class AccountService:
    """Validates requests and delegates to the registry and manager."""

    def __init__(self, registry: AccountRegistry, manager: ConnectionManager, store: EmailStore):
        self.registry = registry
        self.manager = manager
        self.store = store

    async def add_account(
        self,
        email: str,
        password: str,
        host: str,
        port: int,
        secure: bool,
    ) -> bool:
        """Connect an account and start its sync.

        Returns False if the account was already connected.

        Raises:
            AccountValidationError: If a field is missing or the port is invalid
            AccountConnectionError: If the connection attempt fails
        """
        _require(email=email, password=password, host=host, port=port, secure=secure)
        try:
            port = int(port)
        except (TypeError, ValueError) as e:
            raise AccountValidationError(f"Invalid port: {port!r}") from e
        if not 0 < port < 65536:
            raise AccountValidationError(f"Invalid port: {port}")
        if not isinstance(secure, bool):
            raise AccountValidationError("secure must be a boolean")

        credentials = AccountCredentials(
            email=email.strip(),
            password=password,
            host=host.strip(),
            port=port,
            secure=secure,
        )
        started = await self.manager.connect(credentials)
        if not started:
            logger.info(f"Account {email} is already connected, nothing to do")
        return started

    async def reconnect(self, email: str, password: str) -> bool:
        """Reconnect a saved account with a freshly supplied password.

        Raises:
            AccountValidationError: If email or password is missing
            AccountNotFoundError: If there is no saved configuration for the email
            AccountConnectionError: If the connection attempt fails
        """
        _require(email=email, password=password)
        saved = self.registry.get_saved_config(email)
        if saved is None:
            raise AccountNotFoundError(f"No saved configuration found for {email}")

        return await self.add_account(
            email=saved.email,
            password=password,
            host=saved.host,
            port=saved.port,
            secure=saved.secure,
        )

    async def disconnect(self, email: str) -> None:
        """Tear down a running session.

        Raises:
            AccountNotFoundError: If the account has no session
        """
        if not await self.manager.disconnect(email):
            raise AccountNotFoundError(f"No session for {email}")

    async def list_connected_accounts(self) -> list[dict[str, Any]]:
        """Tracked accounts with live email counts from the store."""
        accounts = self.registry.list_connected()
        counts = await asyncio.gather(
            *(asyncio.to_thread(self.store.count_for_account, account.email) for account in accounts)
        )
        result = []
        for account, count in zip(accounts, counts):
            entry = account.to_dict()
            entry["totalEmails"] = count
            entry["state"] = self.manager.get_state(account.email).value
            result.append(entry)
        return result

    def list_saved_configs(self) -> list[AccountConfig]:
        return self.registry.list_saved_configs()

    async def search_emails(self, category: str, account: str = "", folder: str = "") -> list[dict[str, Any]]:
        """Search stored emails by category.

        Raises:
            AccountValidationError: If no category is given
        """
        _require(category=category)
        resolved = Category.from_label(category)
        label = resolved.value if resolved else category
        return await asyncio.to_thread(self.store.search, label, account, folder)

    async def shutdown(self) -> None:
        """Stop all sessions and release HTTP clients."""
        await self.manager.shutdown()
        categorizer = self.manager.categorizer
        if categorizer.llm is not None:
            await categorizer.llm.close()
        if categorizer.notifier is not None:
            await categorizer.notifier.close()


def build_service(config: Config, audit: StructuredLogger | None = None) -> AccountService:
    """Wire up the registry, categorizer, store and connection manager."""
    registry = AccountRegistry(config.storage.accounts_file)
    registry.load_on_startup()

    categorizer = Categorizer(
        llm=LLMClient(config.ollama),
        rules=RulesEngine(),
        cache=CategoryCache(config.categorizer.cache_size),
        notifier=NotificationSink(config.notifications),
        audit=audit,
        inference_timeout=config.ollama.timeout + 5,
    )
    store = Storage(config.storage.database_path)
    manager = ConnectionManager(
        registry=registry,
        categorizer=categorizer,
        store=store,
        settings=config.imap,
        audit=audit,
    )
    return AccountService(registry=registry, manager=manager, store=store)
