"""Base agent – shared plumbing for the model-backed agents.

Both the bug scanner and the fix engineer talk to an OpenAI-compatible chat
endpoint (Gemini by default) with deterministic sampling.  Rate limiting
(HTTP 429) is retried with exponential backoff; anything else surfaces as
:class:`LLMError` and the caller decides how to degrade.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import Awaitable, Callable

import httpx

from shared.determinism import LLM_DETERMINISTIC_PARAMS
from shared.errors import HealingError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta/openai"
DEFAULT_MODEL = "gemini-2.0-flash"

_FENCE_OPEN = re.compile(r"^```[\w+-]*\n?")
_FENCE_CLOSE = re.compile(r"\n?```\s*$")


class LLMError(HealingError):
    """The model call failed or returned something unusable."""


def strip_fences(content: str) -> str:
    """Remove a markdown code fence if the model wrapped its answer anyway."""
    content = content.strip()
    if content.startswith("```"):
        content = _FENCE_OPEN.sub("", content)
        content = _FENCE_CLOSE.sub("", content)
    return content


class BaseAgent:
    """Base class for the model-backed agents."""

    name: str = "base"
    request_timeout_s: float = 60.0
    max_rate_limit_retries: int = 3

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        model: str | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.environ.get("GEMINI_API_KEY", "")
        self.api_base = (api_base or os.environ.get("GEMINI_API_BASE") or DEFAULT_API_BASE).rstrip("/")
        self.model = model or os.environ.get("GEMINI_MODEL") or DEFAULT_MODEL
        self._client = client
        self._sleep = sleep

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _complete(self, system_prompt: str, user_prompt: str) -> str:
        """Send one chat completion and return the assistant's text.

        Raises:
            LLMError: no API key, transport failure, non-2xx status after the
                rate-limit retries, or a malformed response body.
        """
        if not self.enabled:
            raise LLMError("No GEMINI_API_KEY configured")

        payload = {
            "model": self.model,
            **LLM_DETERMINISTIC_PARAMS,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        url = f"{self.api_base}/chat/completions"

        for attempt in range(self.max_rate_limit_retries + 1):
            try:
                resp = await self._post(url, headers, payload)
            except httpx.HTTPError as exc:
                raise LLMError(f"{self.name}: request to {self.api_base} failed: {exc}") from exc

            if resp.status_code == 429 and attempt < self.max_rate_limit_retries:
                delay = 2 ** (attempt + 1)  # 2, 4, 8 seconds
                logger.warning(
                    "LLM rate-limited (429), retrying in %ds (attempt %d/%d)",
                    delay, attempt + 1, self.max_rate_limit_retries,
                )
                await self._sleep(delay)
                continue

            if resp.status_code != 200:
                raise LLMError(
                    f"{self.name}: HTTP {resp.status_code} from {self.api_base}: {resp.text[:500]}"
                )

            try:
                content = resp.json()["choices"][0]["message"]["content"]
            except (ValueError, KeyError, IndexError, TypeError) as exc:
                raise LLMError(f"{self.name}: malformed completion response") from exc
            if not isinstance(content, str):
                raise LLMError(f"{self.name}: completion content is not text")

            logger.info("%s: %d chars from %s/%s", self.name, len(content), self.api_base, self.model)
            return content

        raise LLMError(f"{self.name}: still rate-limited after {self.max_rate_limit_retries} retries")

    async def _post(self, url: str, headers: dict[str, str], payload: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, headers=headers, json=payload, timeout=self.request_timeout_s)
        async with httpx.AsyncClient(timeout=self.request_timeout_s) as client:
            return await client.post(url, headers=headers, json=payload)

    def __repr__(self) -> str:
        return f"<Agent: {self.name}>"
