"""Tests for the SQLite email store."""

import sqlite3

import pytest

from mailtriage.categories import Category
from mailtriage.email_parser import EmailAddress, ParsedEmail
from mailtriage.storage import Storage


@pytest.fixture
def storage(tmp_path):
    return Storage(tmp_path / "data" / "mail.db")


def _email(message_id="m1@example.com", subject="Hello", body="body"):
    return ParsedEmail(
        message_id=message_id,
        subject=subject,
        from_addr=EmailAddress.parse("Alice <alice@example.com>"),
        to_addrs=[EmailAddress.parse("me@example.com")],
        date_str="Mon, 1 Jan 2024 12:00:00 +0000",
        body_text=body,
    )


class TestStorage:
    """Tests for Storage."""

    def test_creates_parent_directory(self, tmp_path):
        Storage(tmp_path / "nested" / "dir" / "mail.db")
        assert (tmp_path / "nested" / "dir" / "mail.db").exists()

    def test_store_and_search(self, storage):
        storage.store(_email(), "INBOX", "me@example.com", Category.INTERESTED)

        results = storage.search("Interested")
        assert len(results) == 1
        row = results[0]
        assert row["account"] == "me@example.com"
        assert row["folder"] == "INBOX"
        assert row["subject"] == "Hello"
        assert row["from_addr"] == "Alice <alice@example.com>"
        assert row["category"] == "Interested"

    def test_search_filters(self, storage):
        storage.store(_email("1"), "INBOX", "a@example.com", Category.SPAM)
        storage.store(_email("2"), "Archive", "a@example.com", Category.SPAM)
        storage.store(_email("3"), "INBOX", "b@example.com", Category.SPAM)
        storage.store(_email("4"), "INBOX", "a@example.com", Category.INTERESTED)

        assert len(storage.search("Spam")) == 3
        assert len(storage.search("Spam", account="a@example.com")) == 2
        assert len(storage.search("Spam", account="a@example.com", folder="INBOX")) == 1
        assert storage.search("Meeting Booked") == []

    def test_category_from_message(self, storage):
        message = _email()
        message.category = Category.OUT_OF_OFFICE
        storage.store(message, "INBOX", "me@example.com")
        assert len(storage.search("Out of Office")) == 1

    def test_same_message_stored_once(self, storage):
        storage.store(_email(), "INBOX", "me@example.com", Category.NOT_INTERESTED)
        storage.store(_email(), "INBOX", "me@example.com", Category.INTERESTED)

        assert storage.count_for_account("me@example.com") == 1
        assert storage.search("Not Interested") == []
        assert len(storage.search("Interested")) == 1

    def test_same_message_different_accounts(self, storage):
        storage.store(_email(), "INBOX", "a@example.com", Category.SPAM)
        storage.store(_email(), "INBOX", "b@example.com", Category.SPAM)
        assert storage.count_for_account("a@example.com") == 1
        assert storage.count_for_account("b@example.com") == 1

    def test_messages_without_id_dedup_by_content(self, storage):
        storage.store(_email(message_id=""), "INBOX", "me@example.com", Category.SPAM)
        storage.store(_email(message_id=""), "INBOX", "me@example.com", Category.SPAM)
        storage.store(_email(message_id="", subject="Other"), "INBOX", "me@example.com", Category.SPAM)
        assert storage.count_for_account("me@example.com") == 2

    def test_count_unknown_account(self, storage):
        assert storage.count_for_account("nobody@example.com") == 0

    def test_get_statistics(self, storage):
        storage.store(_email("1"), "INBOX", "a@example.com", Category.SPAM)
        storage.store(_email("2"), "INBOX", "a@example.com", Category.SPAM)
        storage.store(_email("3"), "INBOX", "b@example.com", Category.INTERESTED)

        stats = storage.get_statistics()
        assert stats["total"] == 3
        assert stats["by_category"] == {"Spam": 2, "Interested": 1}
        assert storage.get_statistics("b@example.com")["total"] == 1

    def test_schema_version_recorded_once(self, tmp_path):
        path = tmp_path / "mail.db"
        Storage(path)
        Storage(path)
        with sqlite3.connect(path) as conn:
            rows = conn.execute("SELECT version FROM schema_version").fetchall()
        assert rows == [(Storage.SCHEMA_VERSION,)]
