"""LLM client for Ollama integration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from mailtriage.categories import Category

if TYPE_CHECKING:
    from mailtriage.config import OllamaConfig

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 4000


@dataclass
class LLMResponse:
    """Container for LLM response with metadata."""

    success: bool
    category: Category | None
    raw_response: str
    error: str | None = None


CATEGORY_PROMPT = """You are an assistant that categorizes email content into one of the following categories:
{categories}

Only reply with the exact category name from the above list. Do not add any explanation.

Email Subject: {subject}
Email Body: {body}"""


def build_category_prompt(subject: str, body: str) -> str:
    """Build the categorization prompt for a subject and body."""
    categories = "\n".join(f"- {category.value}" for category in Category)
    return CATEGORY_PROMPT.format(
        categories=categories,
        subject=subject,
        body=body[:MAX_BODY_CHARS],
    )


class LLMClient:
    """Async client for the Ollama generate API."""

    def __init__(self, config: OllamaConfig, client: httpx.AsyncClient | None = None):
        """Initialize the LLM client."""
        self.config = config
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        await self.close()

    async def check_health(self) -> bool:
        """Check if Ollama is available."""
        try:
            response = await self._get_client().get("/api/tags")
            return response.status_code == 200
        except Exception as e:
            logger.warning(f"Ollama health check failed: {e}")
            return False

    async def list_models(self) -> list[str]:
        """List available models."""
        try:
            response = await self._get_client().get("/api/tags")
            if response.status_code == 200:
                data = response.json()
                return [m["name"] for m in data.get("models", [])]
        except Exception as e:
            logger.error(f"Failed to list models: {e}")
        return []

    async def categorize(self, subject: str, body: str) -> LLMResponse:
        """Ask the model for the category of an email.

        Never raises; failures and labels outside the category set come
        back as an unsuccessful response carrying the error text.
        """
        prompt = build_category_prompt(subject, body)
        raw_response, error = await self._call_llm(prompt)

        if error:
            return LLMResponse(success=False, category=None, raw_response=raw_response, error=error)

        category = Category.from_label(raw_response)
        if category is None:
            return LLMResponse(
                success=False,
                category=None,
                raw_response=raw_response,
                error=f"Unknown category: {raw_response!r}",
            )

        return LLMResponse(success=True, category=category, raw_response=raw_response)

    async def _call_llm(self, prompt: str) -> tuple[str, str | None]:
        """Call the Ollama API and return (response, error)."""
        try:
            payload = {
                "model": self.config.model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": self.config.temperature,
                },
            }

            logger.debug(f"Calling Ollama API with model {self.config.model}")

            response = await self._get_client().post("/api/generate", json=payload)

            if response.status_code != 200:
                return "", f"API error: {response.status_code} - {response.text}"

            data = response.json()
            return data.get("response", "").strip(), None

        except httpx.TimeoutException:
            return "", "Request timed out"
        except httpx.RequestError as e:
            return "", f"Request failed: {e}"
        except Exception as e:
            logger.exception("Unexpected error calling LLM")
            return "", f"Unexpected error: {e}"
