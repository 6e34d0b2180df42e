"""Categorization engine: cache, LLM inference and rule-based fallback."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from mailtriage.cache import CategoryCache, make_cache_key
from mailtriage.categories import HIGH_VALUE_CATEGORY, Category
from mailtriage.errors import InferenceError
from mailtriage.rules_engine import RulesEngine

if TYPE_CHECKING:
    from mailtriage.llm_client import LLMClient
    from mailtriage.notifier import NotificationContext, NotificationSink
    from mailtriage.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)


@dataclass
class Classification:
    """A resolved category and its source: cache, llm or fallback."""

    category: Category
    source: str


class Categorizer:
    """Maps a subject and body to exactly one Category.

    ``classify`` never raises: a failed or unusable inference call falls back
    to the rules engine. Results are cached by normalized content. Interested
    emails with a notification context trigger a Slack alert and a webhook,
    each as its own background task.
    """

    def __init__(
        self,
        llm: LLMClient | None = None,
        rules: RulesEngine | None = None,
        cache: CategoryCache | None = None,
        notifier: NotificationSink | None = None,
        audit: StructuredLogger | None = None,
        inference_timeout: float | None = None,
    ):
        self.llm = llm
        self.rules = rules or RulesEngine()
        self.cache = cache if cache is not None else CategoryCache()
        self.notifier = notifier
        self.audit = audit
        self.inference_timeout = inference_timeout
        self._notification_tasks: set[asyncio.Task] = set()

    async def classify(
        self,
        subject: str,
        body: str,
        notify_context: NotificationContext | None = None,
    ) -> Category:
        """Classify an email and notify if it is an interested lead."""
        result = await self.categorize(subject, body, notify_context)
        return result.category

    async def categorize(
        self,
        subject: str,
        body: str,
        notify_context: NotificationContext | None = None,
    ) -> Classification:
        """Like ``classify`` but also reports where the label came from."""
        subject = subject or ""
        body = body or ""
        key = make_cache_key(subject, body)

        category = self.cache.get(key)
        if category is not None:
            logger.debug(f"Using cached categorization: {category}")
            source = "cache"
        else:
            try:
                category = await self._infer(subject, body)
                source = "llm"
                logger.info(f"AI categorized as: {category}")
            except InferenceError as e:
                logger.warning(f"AI categorization failed: {e}")
                category = self.rules.classify(subject, body)
                source = "fallback"
                logger.info(f"Fallback categorized as: {category}")
            self.cache.put(key, category)

        if category is HIGH_VALUE_CATEGORY and notify_context is not None:
            self._notify(notify_context)

        return Classification(category=category, source=source)

    async def _infer(self, subject: str, body: str) -> Category:
        """Run the inference call, raising InferenceError on any failure."""
        if self.llm is None:
            raise InferenceError("No LLM configured")

        try:
            if self.inference_timeout:
                response = await asyncio.wait_for(
                    self.llm.categorize(subject, body), timeout=self.inference_timeout
                )
            else:
                response = await self.llm.categorize(subject, body)
        except asyncio.TimeoutError as e:
            raise InferenceError(f"Inference timed out after {self.inference_timeout}s") from e
        except Exception as e:
            raise InferenceError(f"Inference call failed: {e}") from e

        if not response.success or response.category is None:
            raise InferenceError(response.error or f"Invalid response: {response.raw_response!r}")
        return response.category

    def _notify(self, context: NotificationContext) -> None:
        if self.notifier is None:
            logger.debug("No notification sink configured")
            return

        for name, coro in (
            ("slack_alert", self.notifier.alert(context)),
            ("interested_webhook", self.notifier.webhook(context)),
        ):
            task = asyncio.create_task(coro, name=f"{name}:{context.account}")
            self._notification_tasks.add(task)
            task.add_done_callback(self._on_notification_done)

    def _on_notification_done(self, task: asyncio.Task) -> None:
        self._notification_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Notification {task.get_name()} failed: {error}")
            if self.audit:
                self.audit.log_error("notification_failed", str(error), {"task": task.get_name()})

    async def wait_for_notifications(self) -> None:
        """Wait until all in-flight notification deliveries have finished."""
        if self._notification_tasks:
            await asyncio.gather(*self._notification_tasks, return_exceptions=True)
