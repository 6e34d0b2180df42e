"""Turns raw RFC 822 sources into the fields the categorizer and store need."""

from __future__ import annotations

import email
import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from email import policy
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.message import Message
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from typing import Any

from mailtriage.categories import Category
from mailtriage.errors import MessageParseError

logger = logging.getLogger(__name__)

_SCRIPT_OR_STYLE_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.DOTALL | re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class EmailAddress:
    """A mailbox from a From or To header."""

    name: str
    address: str

    @property
    def domain(self) -> str:
        return self.address.rpartition("@")[2] if "@" in self.address else ""

    @classmethod
    def parse(cls, value: str | None) -> EmailAddress | None:
        """Build from a header value like ``Jane <jane@example.com>``."""
        if not value:
            return None
        return cls.from_pair(parseaddr(value))

    @classmethod
    def from_pair(cls, pair: tuple[str, str]) -> EmailAddress | None:
        name, address = pair
        if not address:
            return None
        return cls(name=name, address=address.lower())

    def __str__(self) -> str:
        return f"{self.name} <{self.address}>" if self.name else self.address


@dataclass
class ParsedEmail:
    """One message reduced to headers, a text body and its category."""

    message_id: str = ""
    subject: str = ""
    from_addr: EmailAddress | None = None
    to_addrs: list[EmailAddress] = field(default_factory=list)
    date: datetime | None = None
    date_str: str = ""
    body_text: str = ""
    size: int = 0
    category: Category | None = None

    @property
    def from_text(self) -> str:
        return str(self.from_addr) if self.from_addr else ""

    @property
    def to_text(self) -> str:
        return ", ".join(str(a) for a in self.to_addrs)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "message_id": self.message_id,
            "subject": self.subject,
            "from": self.from_text,
            "to": self.to_text,
            "date": self.date.isoformat() if self.date else self.date_str or None,
            "body": self.body_text,
            "category": self.category.value if self.category else None,
        }


class EmailParser:
    """Extracts message id, addresses, subject, date and a text body.

    Plain text parts win over HTML; HTML-only messages are reduced to text.
    Bodies longer than ``max_body_chars`` are cut.
    """

    def __init__(self, max_body_chars: int = 20000):
        self.max_body_chars = max_body_chars

    def parse_bytes(self, raw: bytes | None) -> ParsedEmail:
        """Parse a raw message source.

        Raises:
            MessageParseError: If the source is empty or has no header fields
        """
        if not raw:
            raise MessageParseError("Empty message source")
        try:
            message = email.message_from_bytes(raw, policy=policy.compat32)
        except Exception as e:
            raise MessageParseError(f"Unparseable message source: {e}") from e

        if not message.keys():
            raise MessageParseError("Message source has no header fields")

        parsed = self.parse(message)
        parsed.size = len(raw)
        return parsed

    def parse(self, message: Message) -> ParsedEmail:
        """Parse an already decoded message object."""
        date_str = str(message.get("Date", "") or "")
        return ParsedEmail(
            message_id=self._header(message, "Message-ID").strip().strip("<>"),
            subject=self._header(message, "Subject"),
            from_addr=EmailAddress.parse(self._header(message, "From")),
            to_addrs=self._addresses(message, "To"),
            date=self._parse_date(date_str),
            date_str=date_str,
            body_text=self._body(message)[: self.max_body_chars],
        )

    def _header(self, message: Message, name: str) -> str:
        value = message.get(name)
        if not value:
            return ""
        try:
            return str(make_header(decode_header(str(value))))
        except (HeaderParseError, LookupError, UnicodeError, ValueError):
            # Undecodable encoded-words are kept as sent
            return str(value)

    def _addresses(self, message: Message, name: str) -> list[EmailAddress]:
        decoded = self._header(message, name)
        if not decoded:
            return []
        found = (EmailAddress.from_pair(pair) for pair in getaddresses([decoded]))
        return [address for address in found if address]

    def _parse_date(self, value: str) -> datetime | None:
        if not value:
            return None
        try:
            return parsedate_to_datetime(value)
        except (ValueError, TypeError):
            logger.debug(f"Unparseable Date header: {value!r}")
            return None

    def _body(self, message: Message) -> str:
        html_part = None
        for part in message.walk():
            if part.is_multipart() or "attachment" in str(part.get("Content-Disposition", "")):
                continue
            content_type = part.get_content_type()
            if content_type == "text/plain":
                return self._payload_text(part).strip()
            if content_type == "text/html" and html_part is None:
                html_part = part

        if html_part is None:
            return ""
        return self._strip_html(self._payload_text(html_part))

    def _payload_text(self, part: Message) -> str:
        payload = part.get_payload(decode=True)
        if not payload:
            return ""
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset, errors="replace")
        except LookupError:
            logger.debug(f"Unknown charset {charset!r}, decoding as utf-8")
            return payload.decode("utf-8", errors="replace")

    def _strip_html(self, markup: str) -> str:
        text = _SCRIPT_OR_STYLE_RE.sub("", markup)
        text = html.unescape(_TAG_RE.sub(" ", text))
        return _WHITESPACE_RE.sub(" ", text).strip()
