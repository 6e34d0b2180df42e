"""Tests for the blocking IMAP client."""

import imaplib
from datetime import date
from unittest.mock import MagicMock

import pytest

from mailtriage.config import ImapSettings
from mailtriage.errors import AccountConnectionError
from mailtriage.imap_client import IdleNotSupportedError, IMAPClient, imap_date, is_transport_error


@pytest.fixture
def connection():
    conn = MagicMock()
    conn.capabilities = ("IMAP4REV1", "IDLE")
    conn.select.return_value = ("OK", [b"12"])
    conn.uid.return_value = ("OK", [b"3 7 9"])
    conn.status.return_value = ("OK", [b'INBOX (MESSAGES 14)'])
    conn.fetch.return_value = ("OK", [(b"1 (BODY[] {5}", b"raw!!"), b")"])
    return conn


@pytest.fixture
def imap_ssl(monkeypatch, connection):
    factory = MagicMock(return_value=connection)
    monkeypatch.setattr(imaplib, "IMAP4_SSL", factory)
    return factory


@pytest.fixture
def client():
    return IMAPClient(
        email="me@example.com",
        password="secret",
        host="imap.example.com",
        port=993,
        secure=True,
        settings=ImapSettings(),
    )


class TestHelpers:
    """Tests for module helpers."""

    def test_imap_date(self):
        assert imap_date(date(2024, 3, 5)) == "05-Mar-2024"

    def test_transport_errors(self):
        assert is_transport_error(ConnectionResetError())
        assert is_transport_error(imaplib.IMAP4.abort("socket error"))
        assert is_transport_error(AccountConnectionError("gone"))
        assert not is_transport_error(RuntimeError("bad response"))
        assert not is_transport_error(ValueError())


class TestConnect:
    """Tests for connection and login."""

    def test_connect_logs_in_and_drops_password(self, client, imap_ssl, connection):
        client.connect()

        imap_ssl.assert_called_once_with("imap.example.com", 993, timeout=30)
        connection.login.assert_called_once_with("me@example.com", "secret")
        assert client.supports_idle
        assert client._password is None

    def test_plain_connection(self, monkeypatch, connection):
        factory = MagicMock(return_value=connection)
        monkeypatch.setattr(imaplib, "IMAP4", factory)
        client = IMAPClient("me@example.com", "pw", "imap.example.com", 143, False, ImapSettings())

        client.connect()

        factory.assert_called_once_with("imap.example.com", 143, timeout=30)

    def test_no_idle_capability(self, client, imap_ssl, connection):
        connection.capabilities = ("IMAP4REV1",)
        client.connect()
        assert not client.supports_idle

    def test_unreachable_host(self, client, monkeypatch):
        monkeypatch.setattr(imaplib, "IMAP4_SSL", MagicMock(side_effect=ConnectionRefusedError("refused")))
        with pytest.raises(AccountConnectionError, match="Cannot connect"):
            client.connect()

    def test_authentication_failure(self, client, imap_ssl, connection):
        connection.login.side_effect = imaplib.IMAP4.error("[AUTHENTICATIONFAILED] Invalid credentials")
        with pytest.raises(AccountConnectionError, match="Authentication failed"):
            client.connect()
        assert not client.is_connected


class TestMailboxOperations:
    """Tests for commands on a connected client."""

    @pytest.fixture
    def connected(self, client, imap_ssl):
        client.connect()
        return client

    def test_requires_connection(self, client):
        with pytest.raises(AccountConnectionError):
            client.select_folder()

    def test_select_folder(self, connected, connection):
        assert connected.select_folder("INBOX") == 12
        connection.select.assert_called_once_with("INBOX")

    def test_search_since(self, connected, connection):
        connected.select_folder()
        assert connected.search_since(date(2024, 1, 2)) == [3, 7, 9]
        connection.uid.assert_called_once_with("SEARCH", None, "SINCE", "02-Jan-2024")

    def test_message_count(self, connected):
        assert connected.message_count("INBOX") == 14

    def test_fetch_by_position(self, connected, connection):
        assert connected.fetch_by_position(1) == b"raw!!"
        connection.fetch.assert_called_once_with("1", "(BODY.PEEK[])")

    def test_fetch_failure_returns_none(self, connected, connection):
        connection.uid.return_value = ("NO", [None])
        assert connected.fetch_by_uid(5) is None

    def test_idle_without_capability(self, connected):
        connected.select_folder()
        connected.supports_idle = False
        with pytest.raises(IdleNotSupportedError):
            connected.idle(1)

    def test_noop_connection_lost(self, connected, connection):
        connection.noop.side_effect = imaplib.IMAP4.abort("socket closed")
        with pytest.raises(AccountConnectionError):
            connected.noop()
        assert not connected.is_connected

    def test_disconnect(self, connected, connection):
        connected.disconnect()
        connection.logout.assert_called_once()
        assert not connected.is_connected
