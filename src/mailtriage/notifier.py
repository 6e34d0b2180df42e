"""Slack and webhook delivery for interested emails."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from mailtriage.config import NotificationConfig

logger = logging.getLogger(__name__)

SLACK_BODY_PREVIEW_CHARS = 500


@dataclass
class NotificationContext:
    """Message fields forwarded to the notification channels."""

    subject: str = ""
    from_addr: str = ""
    to_addrs: str = ""
    body: str = ""
    date: datetime | None = None
    folder: str = ""
    account: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "subject": self.subject,
            "from": self.from_addr,
            "to": self.to_addrs,
            "body": self.body,
            "date": self.date.isoformat() if self.date else None,
            "folder": self.folder,
            "account": self.account,
        }


class NotificationSink:
    """Posts interested-email notifications to Slack and a generic webhook.

    Each delivery is independent: an unset URL is skipped, and a failing
    request raises only from its own coroutine.
    """

    def __init__(self, config: NotificationConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def alert(self, context: NotificationContext) -> None:
        """Send a Slack alert for an interested email."""
        if not self.config.slack_webhook_url:
            logger.debug("Slack webhook not configured, skipping alert")
            return

        response = await self._get_client().post(
            self.config.slack_webhook_url,
            json={"text": self._format_slack_text(context)},
        )
        response.raise_for_status()
        logger.info(f"Slack alert sent for '{context.subject}' ({context.account})")

    async def webhook(self, context: NotificationContext) -> None:
        """Trigger the interested-email webhook."""
        if not self.config.interested_webhook_url:
            logger.debug("Interested webhook not configured, skipping")
            return

        payload = {"event": "interested_email", **context.to_dict()}
        response = await self._get_client().post(self.config.interested_webhook_url, json=payload)
        response.raise_for_status()
        logger.info(f"Interested webhook triggered for '{context.subject}' ({context.account})")

    def _format_slack_text(self, context: NotificationContext) -> str:
        body = context.body.strip()
        if len(body) > SLACK_BODY_PREVIEW_CHARS:
            body = body[: SLACK_BODY_PREVIEW_CHARS - 3] + "..."
        lines = [
            ":star: *New interested email*",
            f"*Account:* {context.account}",
            f"*From:* {context.from_addr}",
            f"*Subject:* {context.subject}",
        ]
        if context.date:
            lines.append(f"*Date:* {context.date.isoformat()}")
        if body:
            lines.extend(["", body])
        return "\n".join(lines)
