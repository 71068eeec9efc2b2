"""
Chat message and request models.

Message content is an ordered list of typed parts, validated as a tagged
union on the `type` field:

    text | reasoning | tool-call | tool-result | file | source-url

The wire format (HTTP bodies, stored message content) uses camelCase keys.
`serialize_parts()` is the canonical serialization: stored content is
compared against it when deciding whether a save is a duplicate.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TextPart(_Wire):
    type: Literal["text"] = "text"
    text: str


class ReasoningPart(_Wire):
    type: Literal["reasoning"] = "reasoning"
    text: str


class ToolCallPart(_Wire):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(_Wire):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: Any = None


class FilePart(_Wire):
    type: Literal["file"] = "file"
    url: str
    media_type: str
    filename: str | None = None


class SourceUrlPart(_Wire):
    type: Literal["source-url"] = "source-url"
    source_id: str
    url: str
    title: str | None = None


MessagePart = Annotated[
    Union[TextPart, ReasoningPart, ToolCallPart, ToolResultPart, FilePart, SourceUrlPart],
    Field(discriminator="type"),
]

_parts_adapter = TypeAdapter(list[MessagePart])


class ChatMessage(_Wire):
    id: str | None = None
    role: Literal["user", "assistant", "system"]
    parts: list[MessagePart] = Field(min_length=1)


class UploadedAttachment(_Wire):
    """A file uploaded ahead of the request; the blob store is external."""

    url: str
    filename: str
    size: int = Field(ge=0)
    type: str
    content_type: str


class ChatRequest(_Wire):
    """Body of POST /api/chat."""

    messages: list[ChatMessage] = Field(min_length=1)
    user_id: str | None = None
    model_id: str | None = None
    conversation_id: str | None = None
    web_search: bool = False
    enable_thinking: bool = True
    uploaded_attachments: list[UploadedAttachment] = Field(default_factory=list)


def serialize_parts(parts: list[MessagePart]) -> str:
    """Canonical JSON for a list of parts, as stored in Message.content."""
    return json.dumps([part.to_payload() for part in parts], ensure_ascii=False)


def parse_parts(content: str) -> list[MessagePart]:
    """
    Parse stored message content.

    Content that is not a valid part list is treated as a single text part.
    """
    try:
        return _parts_adapter.validate_json(content)
    except ValidationError:
        return [TextPart(text=content)]


def message_text(parts: list[MessagePart]) -> str:
    """Concatenated text of the text parts."""
    return " ".join(part.text for part in parts if isinstance(part, TextPart)).strip()


def first_text(message: ChatMessage) -> str | None:
    for part in message.parts:
        if isinstance(part, TextPart) and part.text.strip():
            return part.text
    return None


def attach_files_to_last_message(
    messages: list[ChatMessage],
    attachments: list[UploadedAttachment],
) -> list[ChatMessage]:
    """Append attachments as file parts to the last message if it is a user message."""
    if not attachments or not messages or messages[-1].role != "user":
        return messages

    last = messages[-1]
    file_parts = [
        FilePart(url=att.url, media_type=att.content_type, filename=att.filename)
        for att in attachments
    ]
    updated = last.model_copy(update={"parts": [*last.parts, *file_parts]})
    return [*messages[:-1], updated]


def _user_content(parts: list[MessagePart]) -> str | list[dict[str, Any]]:
    files = [part for part in parts if isinstance(part, FilePart)]
    text = "\n".join(part.text for part in parts if isinstance(part, TextPart))
    if not files:
        return text

    content: list[dict[str, Any]] = []
    if text:
        content.append({"type": "text", "text": text})
    for part in files:
        if part.media_type.startswith("image/"):
            content.append({"type": "image_url", "image_url": {"url": part.url}})
        else:
            content.append({"type": "text", "text": f"[Attached file: {part.filename or part.url}]"})
    return content


def to_model_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """
    Convert chat messages to the OpenAI chat format sent to the model.

    Only text and file parts are forwarded; tool parts from earlier turns are
    already reflected in the assistant text. Messages left empty are skipped.
    """
    converted: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "user":
            content = _user_content(message.parts)
        else:
            content = "\n".join(part.text for part in message.parts if isinstance(part, TextPart))
        if not content:
            continue
        converted.append({"role": message.role, "content": content})
    return converted
