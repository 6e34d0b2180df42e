"""Tests for the account registry."""

import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from mailtriage.registry import AccountConfig, AccountRegistry, AccountStatus


@pytest.fixture
def accounts_file(tmp_path):
    return tmp_path / "config" / "accounts.json"


@pytest.fixture
def registry(accounts_file):
    return AccountRegistry(accounts_file)


def _config(email="a@x.com"):
    return AccountConfig(email=email, host="imap.x.com", port=993, secure=True)


class TestAccountConfig:
    """Tests for the saved config model."""

    def test_password_is_dropped(self):
        config = AccountConfig(email="user@test.com", password="p", host="h", port=993, secure=True)
        assert "password" not in config.model_dump()


class TestDirectory:
    """Tests for connection tracking."""

    def test_connect_twice_gives_one_entry(self, registry):
        first = registry.mark_connected(_config())
        second = registry.mark_connected(_config())

        assert len(registry.list_connected()) == 1
        assert first.id == second.id

    def test_register_connecting_rejects_connected_account(self, registry):
        assert registry.register_connecting("a@x.com")
        registry.mark_connected(_config())
        assert not registry.register_connecting("a@x.com")

    def test_register_connecting_rejects_in_flight_attempt(self, registry):
        assert registry.register_connecting("a@x.com")
        assert not registry.register_connecting("a@x.com")
        registry.release("a@x.com")
        assert registry.register_connecting("a@x.com")

    def test_release_leaves_directory_untouched(self, registry, accounts_file):
        registry.register_connecting("a@x.com")
        registry.release("a@x.com")
        assert registry.list_connected() == []
        assert registry.list_saved_configs() == []
        assert not accounts_file.exists()

    def test_mark_disconnected_keeps_entry(self, registry):
        registry.mark_connected(_config())
        registry.mark_disconnected("a@x.com")

        entries = registry.list_connected()
        assert len(entries) == 1
        assert entries[0].status is AccountStatus.DISCONNECTED
        assert not registry.is_connected("a@x.com")
        assert registry.register_connecting("a@x.com")

    def test_reconnect_reuses_entry(self, registry):
        entry = registry.mark_connected(_config())
        registry.mark_disconnected("a@x.com")
        again = registry.mark_connected(_config())
        assert again is entry
        assert again.status is AccountStatus.CONNECTED

    def test_record_sync(self, registry):
        entry = registry.mark_connected(_config())
        before = entry.last_sync
        registry.record_sync("a@x.com", total_emails=12)
        assert entry.total_emails == 12
        assert entry.last_sync >= before

    def test_record_sync_unknown_account_is_ignored(self, registry):
        registry.record_sync("nobody@x.com", total_emails=3)
        assert registry.list_connected() == []

    def test_summary_to_dict(self, registry):
        data = registry.mark_connected(_config()).to_dict()
        assert data["email"] == "a@x.com"
        assert data["provider"] == "IMAP"
        assert data["status"] == "connected"
        assert set(data) == {"id", "email", "provider", "status", "lastSync", "totalEmails"}


class TestConcurrency:
    """Tests for the registry under concurrent callers."""

    def test_concurrent_mark_connected_gives_one_entry_per_email(self, registry, accounts_file):
        emails = [f"user{i % 4}@x.com" for i in range(16)]
        barrier = threading.Barrier(16)

        def connect(email):
            barrier.wait()
            return registry.mark_connected(_config(email)).id

        with ThreadPoolExecutor(max_workers=16) as pool:
            ids = list(pool.map(connect, emails))

        connected = registry.list_connected()
        assert sorted(s.email for s in connected) == [f"user{i}@x.com" for i in range(4)]
        assert len(set(ids)) == 4
        saved = json.loads(accounts_file.read_text())
        assert len(saved) == 4

    def test_concurrent_register_connecting_reserves_once(self, registry):
        barrier = threading.Barrier(16)

        def reserve(_):
            barrier.wait()
            return registry.register_connecting("a@x.com")

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(reserve, range(16)))

        assert results.count(True) == 1


class TestPersistence:
    """Tests for saved configuration on disk."""

    def test_cold_start(self, registry):
        assert registry.load_on_startup() == 0
        assert registry.list_saved_configs() == []

    def test_persisted_file_has_no_password(self, registry, accounts_file):
        registry.mark_connected(
            AccountConfig(email="user@test.com", password="p", host="imap.test.com", port=993, secure=True)
        )

        records = json.loads(accounts_file.read_text())
        assert records == [{"email": "user@test.com", "host": "imap.test.com", "port": 993, "secure": True}]
        assert "password" not in accounts_file.read_text()

    def test_round_trip(self, registry, accounts_file):
        registry.mark_connected(_config("a@x.com"))
        registry.mark_connected(_config("b@x.com"))

        restored = AccountRegistry(accounts_file)
        assert restored.load_on_startup() == 2
        assert [c.email for c in restored.list_saved_configs()] == ["a@x.com", "b@x.com"]
        assert restored.get_saved_config("b@x.com").host == "imap.x.com"
        # Saved configs do not imply live connections
        assert restored.list_connected() == []

    def test_corrupt_file(self, accounts_file):
        accounts_file.parent.mkdir(parents=True)
        accounts_file.write_text("{not json")
        registry = AccountRegistry(accounts_file)
        assert registry.load_on_startup() == 0
        assert registry.list_saved_configs() == []

    def test_invalid_record(self, accounts_file):
        accounts_file.parent.mkdir(parents=True)
        accounts_file.write_text(json.dumps([{"email": "a@x.com"}]))
        assert AccountRegistry(accounts_file).load_on_startup() == 0

    def test_no_file_configured(self):
        registry = AccountRegistry()
        registry.mark_connected(_config())
        assert registry.get_saved_config("a@x.com") is not None
