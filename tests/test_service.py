"""Tests for the account service layer."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from mailtriage.config import Config
from mailtriage.connection_manager import SessionState
from mailtriage.errors import AccountNotFoundError, AccountValidationError
from mailtriage.registry import AccountConfig, AccountRegistry
from mailtriage.service import AccountService, build_service


@pytest.fixture
def registry():
    return AccountRegistry()


@pytest.fixture
def manager():
    mock = MagicMock()
    mock.connect = AsyncMock(return_value=True)
    mock.disconnect = AsyncMock(return_value=True)
    mock.shutdown = AsyncMock()
    mock.get_state.return_value = SessionState.LISTENING
    return mock


@pytest.fixture
def store():
    mock = MagicMock()
    mock.count_for_account.return_value = 7
    mock.search.return_value = [{"subject": "Hi"}]
    return mock


@pytest.fixture
def service(registry, manager, store):
    return AccountService(registry=registry, manager=manager, store=store)


VALID = {
    "email": "me@example.com",
    "password": "secret",
    "host": "imap.example.com",
    "port": 993,
    "secure": True,
}


class TestAddAccount:
    """Tests for add_account validation and delegation."""

    @pytest.mark.asyncio
    async def test_valid_request(self, service, manager):
        assert await service.add_account(**VALID)
        credentials = manager.connect.await_args.args[0]
        assert credentials.email == "me@example.com"
        assert credentials.password == "secret"
        assert credentials.port == 993

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["email", "password", "host", "port", "secure"])
    async def test_missing_field(self, service, manager, missing):
        request = {**VALID, missing: None}
        with pytest.raises(AccountValidationError, match=missing):
            await service.add_account(**request)
        manager.connect.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("blank", ["email", "host"])
    async def test_whitespace_only_field(self, service, manager, blank):
        request = {**VALID, blank: "   "}
        with pytest.raises(AccountValidationError, match=blank):
            await service.add_account(**request)
        manager.connect.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("port", [0, 70000, "abc"])
    async def test_invalid_port(self, service, port):
        with pytest.raises(AccountValidationError):
            await service.add_account(**{**VALID, "port": port})

    @pytest.mark.asyncio
    async def test_secure_must_be_bool(self, service):
        with pytest.raises(AccountValidationError):
            await service.add_account(**{**VALID, "secure": "yes"})

    @pytest.mark.asyncio
    async def test_secure_false_is_accepted(self, service, manager):
        await service.add_account(**{**VALID, "port": 143, "secure": False})
        assert manager.connect.await_args.args[0].secure is False

    @pytest.mark.asyncio
    async def test_already_connected(self, service, manager):
        manager.connect.return_value = False
        assert not await service.add_account(**VALID)


class TestReconnect:
    """Tests for reconnecting saved accounts."""

    @pytest.mark.asyncio
    async def test_unknown_account(self, service):
        with pytest.raises(AccountNotFoundError):
            await service.reconnect("nobody@example.com", "pw")

    @pytest.mark.asyncio
    async def test_missing_password(self, service):
        with pytest.raises(AccountValidationError):
            await service.reconnect("me@example.com", "")

    @pytest.mark.asyncio
    async def test_uses_saved_settings(self, service, registry, manager):
        registry.mark_connected(AccountConfig(email="me@example.com", host="mail.host", port=143, secure=False))
        registry.mark_disconnected("me@example.com")

        await service.reconnect("me@example.com", "new-password")

        credentials = manager.connect.await_args.args[0]
        assert credentials.host == "mail.host"
        assert credentials.port == 143
        assert credentials.secure is False
        assert credentials.password == "new-password"


class TestQueries:
    """Tests for listing and searching."""

    @pytest.mark.asyncio
    async def test_list_connected_uses_live_counts(self, service, registry):
        registry.mark_connected(AccountConfig(email="me@example.com", host="h", port=993, secure=True))
        accounts = await service.list_connected_accounts()
        assert accounts[0]["email"] == "me@example.com"
        assert accounts[0]["totalEmails"] == 7
        assert accounts[0]["state"] == "listening"

    @pytest.mark.asyncio
    async def test_search_requires_category(self, service):
        with pytest.raises(AccountValidationError):
            await service.search_emails("")

    @pytest.mark.asyncio
    async def test_search_normalizes_category(self, service, store):
        assert await service.search_emails("action required", "me@example.com") == [{"subject": "Hi"}]
        store.search.assert_called_once_with("Action Required", "me@example.com", "")

    @pytest.mark.asyncio
    async def test_disconnect_unknown(self, service, manager):
        manager.disconnect.return_value = False
        with pytest.raises(AccountNotFoundError):
            await service.disconnect("nobody@example.com")


class TestBuildService:
    """Tests for service wiring."""

    @pytest.mark.asyncio
    async def test_build_service(self, tmp_path):
        config = Config(
            storage={
                "database_path": str(tmp_path / "mail.db"),
                "accounts_file": str(tmp_path / "accounts.json"),
            },
            categorizer={"cache_size": 5},
        )
        service = build_service(config)
        try:
            assert service.manager.categorizer.cache.max_size == 5
            assert service.manager.store is service.store
            assert service.list_saved_configs() == []
        finally:
            await service.shutdown()
