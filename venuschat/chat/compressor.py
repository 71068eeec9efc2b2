"""
Context Compressor: summarize long conversations for the next request.

After a turn whose total token usage exceeds the threshold, the conversation
is summarized by the user's first enabled model on an active provider and
the summary is written to the ContextCache. On the next request the cached
summary goes into the system prompt and the history sent to the model is
truncated to the last few messages.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

from sqlalchemy import select

from venuschat.cache import ContextCache
from venuschat.chat.messages import ChatMessage, TextPart
from venuschat.config.logging import get_logger
from venuschat.config.settings import LLMSettings
from venuschat.db.models import DiscoveredModel, Provider, ProviderStatus
from venuschat.db.session import Database
from venuschat.llm.adapter import ModelAdapter, create_model_adapter
from venuschat.llm.models import ModelConfig

logger = get_logger(__name__)

M = TypeVar("M")

SUMMARY_PROMPT = """Summarize the following conversation, preserving key facts, decisions, and context. Be concise but comprehensive:

{transcript}

Provide a summary that captures:
1. Main topics discussed
2. Important decisions or conclusions
3. Key facts or data mentioned
4. Current state/progress of any ongoing tasks

Summary:"""


class CompressionUnavailable(Exception):
    """The user has no enabled model on an active provider."""


def build_transcript(messages: list[ChatMessage]) -> str:
    """'User: ...' / 'Assistant: ...' blocks built from the text parts."""
    blocks = []
    for message in messages:
        role = "User" if message.role == "user" else "Assistant"
        text = "\n".join(part.text for part in message.parts if isinstance(part, TextPart))
        blocks.append(f"{role}: {text}")
    return "\n\n".join(blocks)


def truncate_messages(messages: list[M], keep_last: int = 10, role_of: Callable[[M], str] | None = None) -> list[M]:
    """
    Keep a window of recent messages anchored at the last user message.

    The window covers the `keep_last` messages ending at the last user message,
    plus anything after it. Without a user message the last `keep_last`
    messages are kept.
    """
    if len(messages) <= keep_last:
        return messages

    role_of = role_of or (lambda message: message.role)
    last_user = next(
        (index for index in range(len(messages) - 1, -1, -1) if role_of(messages[index]) == "user"),
        None,
    )
    if last_user is None:
        return messages[-keep_last:]
    return messages[max(0, last_user - keep_last + 1):]


class ContextCompressor:
    """
    Args:
        db: Database handle, used to find the user's compression model
        cache: Where summaries are stored
        llm_settings: Passed to the adapter factory
        threshold: Compress only after turns using more than this many tokens
        prefix_chars: Transcript characters sent to the summarizer
        adapter_factory: Builds a ModelAdapter from a ModelConfig
    """

    def __init__(
        self,
        db: Database,
        cache: ContextCache,
        llm_settings: LLMSettings | None = None,
        threshold: int = 32000,
        prefix_chars: int = 2000,
        adapter_factory: Callable[[ModelConfig, LLMSettings], ModelAdapter] = create_model_adapter,
    ):
        self._db = db
        self._cache = cache
        self._llm_settings = llm_settings or LLMSettings()
        self.threshold = threshold
        self._prefix_chars = prefix_chars
        self._adapter_factory = adapter_factory

    def should_compress(self, total_tokens: int) -> bool:
        return total_tokens > self.threshold

    def _first_user_model(self, user_id: str) -> ModelConfig | None:
        stmt = (
            select(DiscoveredModel, Provider)
            .join(Provider, DiscoveredModel.provider_id == Provider.id)
            .where(
                DiscoveredModel.is_enabled.is_(True),
                Provider.user_id == user_id,
                Provider.status == ProviderStatus.ACTIVE.value,
            )
            .order_by(DiscoveredModel.created_at.asc())
            .limit(1)
        )
        with self._db.session() as session:
            row = session.execute(stmt).first()
            if row is None:
                return None
            model, provider = row
            return ModelConfig(
                provider=provider.name,
                name=model.model_id,
                api_key=provider.api_key,
                api_endpoint=provider.api_endpoint,
                is_preset=False,
            )

    async def compress(self, messages: list[ChatMessage], conversation_id: str, user_id: str) -> str:
        """
        Summarize the conversation and overwrite its cache entry.

        Raises:
            CompressionUnavailable: If the user has no usable model
            LLMError: If the summarizer call fails
        """
        config = await self._db.run(self._first_user_model, user_id)
        if config is None:
            raise CompressionUnavailable(f"No available models found for user {user_id}")

        adapter = self._adapter_factory(config, self._llm_settings)
        transcript = build_transcript(messages)[: self._prefix_chars]
        summary = (await adapter.generate(SUMMARY_PROMPT.format(transcript=transcript))).strip()

        await self._cache.set(conversation_id, summary)
        logger.info(
            f"Compressed conversation {conversation_id} with {config.provider}/{config.name} "
            f"({len(summary)} chars)"
        )
        return summary

    async def maybe_compress(
        self,
        messages: list[ChatMessage],
        conversation_id: str,
        user_id: str,
        total_tokens: int,
    ) -> str | None:
        """Compress if the turn crossed the threshold. Failures are logged, never raised."""
        if not self.should_compress(total_tokens):
            return None

        logger.info(
            f"Turn used {total_tokens} tokens (> {self.threshold}); "
            f"compressing conversation {conversation_id}"
        )
        try:
            return await self.compress(messages, conversation_id, user_id)
        except Exception as e:
            logger.warning(f"Context compression failed for conversation {conversation_id}: {e}")
            return None

    async def load_summary(self, conversation_id: str | None) -> str | None:
        """Cached summary for a conversation; cache errors read as no summary."""
        if not conversation_id:
            return None
        try:
            return await self._cache.get(conversation_id)
        except Exception as e:
            logger.warning(f"Could not load compressed context for {conversation_id}: {e}")
            return None
