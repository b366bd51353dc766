from __future__ import annotations

import asyncio
import logging

import httpx

from common.config import LLMSettings
from common.errors import CompletionError, ConfigurationError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


class ChatCompletionClient:
    """Single-shot OpenAI-compatible chat completion client."""

    def __init__(self, settings: LLMSettings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or LLMSettings()
        if not self.settings.api_key:
            raise ConfigurationError("Completion API key not set (LLM_API_KEY)")
        self._transport = transport

    async def complete(self, messages: list[dict[str, str]]) -> str:
        """Return the assistant message content, retrying transient failures."""
        attempts = self.settings.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._post(messages)
            except httpx.TimeoutException as exc:
                reason = f"timeout: {exc}"
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code not in TRANSIENT_STATUS_CODES:
                    raise CompletionError(f"Completion request rejected ({exc.response.status_code})") from exc
                reason = f"status {exc.response.status_code}"
            except httpx.TransportError as exc:
                reason = f"transport error: {exc}"

            if attempt < attempts:
                logger.warning("Completion attempt %d/%d failed (%s), retrying", attempt, attempts, reason)
                await asyncio.sleep(self.settings.retry_delay_s)

        raise CompletionError(f"Completion service unavailable ({reason})")

    async def _post(self, messages: list[dict[str, str]]) -> str:
        url = f"{self.settings.base_url.rstrip('/')}/chat/completions"
        payload = {
            "model": self.settings.model_name,
            "messages": messages,
            "temperature": self.settings.temperature,
            "max_tokens": self.settings.max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.settings.api_key}"}

        async with httpx.AsyncClient(timeout=self.settings.timeout_s, transport=self._transport) as client:
            resp = await client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
            try:
                return data["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError) as exc:
                raise CompletionError("Unexpected completion response shape") from exc
