"""
Persistence Writer: append one user/assistant turn idempotently.

A save is skipped when the conversation already ends with this turn:

    ... user(X)                 a retried request after a save with no reply
    ... user(X), assistant(Y)   a retried request after a complete save

Comparison is on the canonical serialized content. The assistant message is
only written together with its user message, so a duplicate user leg never
leaves an orphaned reply. Both rows, their citations and the conversation's
updated_at are written in one transaction; the assistant row is timestamped
after the user row so ordering is stable.

Two requests racing past the duplicate check before either commits can both
save. There is no request-scoped idempotency key to prevent that.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from venuschat.chat.citations import Citation
from venuschat.chat.errors import ConversationNotFoundError
from venuschat.chat.messages import ChatMessage, TextPart, UploadedAttachment, serialize_parts
from venuschat.chat.text_cleaner import clean
from venuschat.chat.titles import TitleGenerator, should_generate_title
from venuschat.config.logging import get_logger
from venuschat.db.models import (
    DEFAULT_TITLE,
    Conversation,
    Message,
    MessageCitation,
    MessageRole,
    utcnow,
)
from venuschat.db.session import Database

logger = get_logger(__name__)

ASSISTANT_OFFSET = timedelta(milliseconds=100)
_MIN_STEP = timedelta(milliseconds=1)


class SaveResult(BaseModel):
    skipped: bool = False
    user_message_id: str | None = None
    assistant_message_id: str | None = None
    message_count: int = 0
    title: str | None = None


def _is_duplicate(recent: list[Message], user_content: str, assistant_content: str | None) -> bool:
    """`recent` is newest first."""
    if not recent:
        return False
    last = recent[0]
    if last.role == MessageRole.USER.value:
        return last.content == user_content
    if (
        assistant_content is not None
        and len(recent) >= 2
        and last.role == MessageRole.ASSISTANT.value
        and last.content == assistant_content
    ):
        previous = recent[1]
        return previous.role == MessageRole.USER.value and previous.content == user_content
    return False


class MessageSaver:
    """
    Args:
        db: Database handle
        title_generator: Generates a title after the first exchange (None = never)
    """

    def __init__(self, db: Database, title_generator: TitleGenerator | None = None):
        self._db = db
        self._title_generator = title_generator

    def _load_conversation(self, session: Session, conversation_id: str, user_id: str) -> Conversation:
        conversation = session.get(Conversation, conversation_id)
        if conversation is None or conversation.is_deleted or conversation.user_id != user_id:
            raise ConversationNotFoundError()
        return conversation

    def _count_messages(self, session: Session, conversation_id: str) -> int:
        return session.scalar(
            select(func.count(Message.id)).where(
                Message.conversation_id == conversation_id, Message.is_deleted.is_(False)
            )
        ) or 0

    def _save_sync(
        self,
        conversation_id: str,
        user_id: str,
        user_message: ChatMessage,
        assistant_text: str,
        citations: list[Citation],
        attachments: list[UploadedAttachment],
    ) -> SaveResult:
        user_content = serialize_parts(user_message.parts)
        assistant_content = serialize_parts([TextPart(text=assistant_text)]) if assistant_text else None

        with self._db.session() as session, session.begin():
            conversation = self._load_conversation(session, conversation_id, user_id)

            recent = list(
                session.scalars(
                    select(Message)
                    .where(Message.conversation_id == conversation_id, Message.is_deleted.is_(False))
                    .order_by(Message.created_at.desc())
                    .limit(2)
                )
            )
            if _is_duplicate(recent, user_content, assistant_content):
                logger.info(f"No new messages to save (turn already stored in {conversation_id})")
                return SaveResult(skipped=True, message_count=self._count_messages(session, conversation_id))

            user_created_at: datetime = utcnow()
            if recent and recent[0].created_at >= user_created_at:
                user_created_at = recent[0].created_at + _MIN_STEP

            user_row = Message(
                conversation_id=conversation_id,
                user_id=user_id,
                role=MessageRole.USER.value,
                content=user_content,
                uploaded_attachments=[att.to_payload() for att in attachments] or None,
                created_at=user_created_at,
            )
            session.add(user_row)

            assistant_row = None
            if assistant_content is not None:
                assistant_row = Message(
                    conversation_id=conversation_id,
                    user_id=user_id,
                    role=MessageRole.ASSISTANT.value,
                    content=assistant_content,
                    created_at=user_created_at + ASSISTANT_OFFSET,
                )
                assistant_row.citations = [
                    MessageCitation(
                        citation_number=citation.id,
                        url=citation.url,
                        title=citation.title,
                        snippet=citation.snippet,
                        thumbnail=citation.thumbnail,
                    )
                    for citation in citations
                ]
                session.add(assistant_row)

            conversation.updated_at = utcnow()
            session.flush()

            result = SaveResult(
                user_message_id=user_row.id,
                assistant_message_id=assistant_row.id if assistant_row is not None else None,
                message_count=self._count_messages(session, conversation_id),
            )

        saved = 1 if assistant_row is None else 2
        logger.info(f"Saved {saved} new message(s) to conversation {conversation_id}")
        return result

    def _first_exchange(self, conversation_id: str) -> list[tuple[str, str]]:
        with self._db.session() as session:
            rows = session.scalars(
                select(Message)
                .where(Message.conversation_id == conversation_id, Message.is_deleted.is_(False))
                .order_by(Message.created_at.asc())
                .limit(2)
            )
            return [(row.role, row.content) for row in rows]

    def _set_title(self, conversation_id: str, title: str) -> None:
        with self._db.session() as session, session.begin():
            conversation = session.get(Conversation, conversation_id)
            if conversation is not None:
                conversation.title = title
                conversation.updated_at = utcnow()

    async def _generate_title(self, conversation_id: str) -> str | None:
        try:
            exchange = await self._db.run(self._first_exchange, conversation_id)
            title = await self._title_generator.generate(exchange)
            if title == DEFAULT_TITLE:
                return None
            await self._db.run(self._set_title, conversation_id, title)
            logger.info(f"Generated title for conversation {conversation_id}: {title!r}")
            return title
        except Exception:
            logger.exception(f"Failed to set title for conversation {conversation_id}")
            return None

    async def save(
        self,
        conversation_id: str,
        user_id: str,
        last_user_message: ChatMessage,
        assistant_response: str,
        citations: list[Citation] | None = None,
        attachments: list[UploadedAttachment] | None = None,
    ) -> SaveResult:
        """
        Append the turn unless it is already stored, then title a new conversation.

        The assistant text is cleaned of step markers before it is stored.

        Raises:
            ConversationNotFoundError: If the conversation is missing, deleted
                or owned by someone else
            SQLAlchemyError: If the transaction fails (nothing is written)
        """
        result = await self._db.run(
            self._save_sync,
            conversation_id,
            user_id,
            last_user_message,
            clean(assistant_response),
            citations or [],
            attachments or [],
        )

        if (
            not result.skipped
            and self._title_generator is not None
            and should_generate_title(result.message_count)
        ):
            result.title = await self._generate_title(conversation_id)
        return result
