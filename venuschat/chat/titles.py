"""Conversation title generation for the first exchange."""

from __future__ import annotations

from venuschat.chat.messages import message_text, parse_parts
from venuschat.config.logging import get_logger
from venuschat.db.models import DEFAULT_TITLE
from venuschat.llm.adapter import ModelAdapter

logger = get_logger(__name__)

TITLE_SYSTEM_PROMPT = """You generate short, accurate conversation titles.

Rules:
1. 2 to 8 words
2. Capture the main topic or question of the conversation
3. Write in the language the user wrote in
4. No filler such as "About" or "Discussion of"
5. Output only the title, with no explanation or trailing punctuation

Examples:
- The user asks how to use React hooks -> React Hooks Usage Guide
- The user asks about asynchronous JavaScript -> Asynchronous JavaScript
- The user wants help deploying a project -> Project Deployment Help"""

TRANSCRIPT_LIMIT = 2000


def should_generate_title(message_count: int) -> bool:
    """Titles are generated once, right after the first user/assistant exchange."""
    return message_count == 2


def _strip_quotes(title: str) -> str:
    title = title.strip()
    if title[:1] in ("'", '"'):
        title = title[1:]
    if title[-1:] in ("'", '"'):
        title = title[:-1]
    return title.strip()


class TitleGenerator:
    """Generates titles with a (normally preset) model adapter."""

    def __init__(self, adapter: ModelAdapter):
        self._adapter = adapter

    async def generate(self, messages: list[tuple[str, str]]) -> str:
        """
        Title for a conversation.

        Args:
            messages: (role, stored content) pairs in order

        Returns:
            The generated title, or the default title if generation fails or
            produces nothing.
        """
        transcript = "\n\n".join(
            f"{'User' if role == 'user' else 'Assistant'}: {message_text(parse_parts(content))}"
            for role, content in messages
        )
        if not transcript:
            return DEFAULT_TITLE

        try:
            raw = await self._adapter.generate(
                f"Generate a concise title for this conversation:\n\n{transcript[:TRANSCRIPT_LIMIT]}",
                system=TITLE_SYSTEM_PROMPT,
            )
        except Exception as e:
            logger.warning(f"Title generation failed: {e}")
            return DEFAULT_TITLE

        return _strip_quotes(raw) or DEFAULT_TITLE
