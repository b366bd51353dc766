from __future__ import annotations

import logging
from collections import deque
from typing import Protocol

from common.config import LLMSettings
from common.errors import CompletionError
from common.schemas import EnrichmentResult, InputKind
from llm_service.parser import parse_response
from llm_service.prompts import build_messages

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    async def complete(self, messages: list[dict[str, str]]) -> str: ...


class ConversationHistory:
    """Last ``max_entries`` raw inputs, oldest first."""

    def __init__(self, max_entries: int = 20):
        self.max_entries = max_entries
        self._entries: deque[str] = deque(maxlen=max_entries)

    def append(self, text: str) -> None:
        self._entries.append(text)

    def items(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class EnrichmentDispatcher:
    """Sends finalized text to the completion provider with recent context.

    One dispatcher per connection: the history is that connection's
    conversation.
    """

    def __init__(self, client: CompletionClient, settings: LLMSettings | None = None):
        self.client = client
        self.settings = settings or LLMSettings()
        self.history = ConversationHistory(self.settings.history_size)

    async def process_text(self, text: str, input_kind: InputKind = InputKind.text) -> EnrichmentResult:
        """Never raises: failures come back as a result explaining the problem."""
        logger.info(
            "Enriching %s input (%d chars, history=%d)",
            input_kind.value, len(text), len(self.history),
        )
        self.history.append(text)
        messages = build_messages(input_kind, self.history.items(), text)

        try:
            content = await self.client.complete(messages)
        except CompletionError as exc:
            logger.error("Completion failed: %s", exc)
            return EnrichmentResult.failure(f"Error processing text with LLM: {exc}")
        except Exception as exc:
            logger.exception("Completion call failed")
            return EnrichmentResult.failure(f"Error processing text with LLM: {exc}")

        try:
            result = parse_response(content, input_kind)
        except Exception as exc:
            logger.exception("Could not parse completion: %.200s", content)
            return EnrichmentResult.failure(f"Error parsing LLM response: {exc}")

        logger.info(
            "Enrichment done (skip=%s, questions=%d, answers=%d, suggestions=%d)",
            result.skip, len(result.questions), len(result.answers), len(result.suggestions),
        )
        return result

    def clear_history(self) -> None:
        self.history.clear()
