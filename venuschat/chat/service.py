"""
ChatService: the request pipeline around the Streaming Orchestrator.

    prepare(user_id, request)           synchronous checks, may raise ChatError
        validate → conversation ownership → model resolution
        → image prompt (image models) → Billing Gate pre-check (non-preset)
        → attachments → compressed-context trimming → system prompt → tools
    stream(prepared)                    StreamEvents from the step loop
        on finish: compression, billing record and persistence are spawned
        as independent post-completion tasks
    generate_image(prepared)            image models bypass the step loop

Anything that can fail before the first model call fails in prepare(), so
the API layer can answer with a plain status code instead of a stream.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select

from venuschat.cache import ContextCache
from venuschat.chat.billing import BillingGate
from venuschat.chat.citations import CitationAggregator
from venuschat.chat.compressor import ContextCompressor, truncate_messages
from venuschat.chat.errors import (
    BillingLimitError,
    ChatValidationError,
    ConversationNotFoundError,
    ImageGenerationError,
    ModelNotFoundError,
    UnauthorizedError,
)
from venuschat.chat.messages import (
    ChatMessage,
    ChatRequest,
    TextPart,
    UploadedAttachment,
    attach_files_to_last_message,
    first_text,
    to_model_messages,
)
from venuschat.chat.persistence import MessageSaver
from venuschat.chat.prompts import build_system_prompt, load_system_template
from venuschat.chat.tasks import PostCompletionTasks
from venuschat.chat.titles import TitleGenerator
from venuschat.config.logging import get_logger
from venuschat.config.settings import Settings
from venuschat.db.models import Conversation, DiscoveredModel, Provider, ProviderStatus
from venuschat.db.session import Database
from venuschat.llm.adapter import (
    ModelAdapter,
    create_model_adapter,
    default_model_config,
    is_image_model,
)
from venuschat.llm.models import LLMError, ModelConfig
from venuschat.llm.orchestrator import OrchestratorResult, StreamEvent, StreamingOrchestrator
from venuschat.tools.registry import ToolSet, build_tools

logger = get_logger(__name__)

IMAGE_OUTPUT_TOKENS = 1000


@dataclass
class PreparedChat:
    """Everything one accepted request needs to run."""

    user_id: str
    request: ChatRequest
    model_config: ModelConfig
    adapter: ModelAdapter
    messages: list[ChatMessage]
    last_user_message: ChatMessage
    max_steps: int
    system_prompt: str | None = None
    tools: ToolSet | None = None
    image_prompt: str | None = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def conversation_id(self) -> str | None:
        return self.request.conversation_id

    @property
    def attachments(self) -> list[UploadedAttachment]:
        return self.request.uploaded_attachments

    @property
    def is_image(self) -> bool:
        return self.image_prompt is not None


class ChatService:
    """
    Args:
        settings: Application settings
        db: Database handle
        cache: Compressed-context cache
        adapter_factory: Builds adapters from model configs (tests pass fakes)
        tasks: Post-completion task runner (a fresh one by default)
    """

    def __init__(
        self,
        settings: Settings,
        db: Database,
        cache: ContextCache,
        adapter_factory: Callable[..., ModelAdapter] = create_model_adapter,
        tasks: PostCompletionTasks | None = None,
        billing: BillingGate | None = None,
        compressor: ContextCompressor | None = None,
        saver: MessageSaver | None = None,
    ):
        self.settings = settings
        self.db = db
        self.cache = cache
        self._adapter_factory = adapter_factory
        self.tasks = tasks or PostCompletionTasks()
        self.billing = billing or BillingGate(db, settings.billing)
        self.compressor = compressor or ContextCompressor(
            db,
            cache,
            llm_settings=settings.llm,
            threshold=settings.chat.compression_threshold,
            prefix_chars=settings.chat.compression_prefix_chars,
            adapter_factory=adapter_factory,
        )
        if saver is None:
            title_adapter = adapter_factory(default_model_config(settings.llm), settings.llm)
            saver = MessageSaver(db, TitleGenerator(title_adapter))
        self.saver = saver
        self._system_template = load_system_template()

    # --- storage lookups (worker thread) ---

    def _find_user_model(self, user_id: str, model_id: str) -> ModelConfig | None:
        stmt = (
            select(DiscoveredModel, Provider)
            .join(Provider, DiscoveredModel.provider_id == Provider.id)
            .where(
                DiscoveredModel.model_id == model_id,
                DiscoveredModel.is_enabled.is_(True),
                Provider.user_id == user_id,
                Provider.status == ProviderStatus.ACTIVE.value,
            )
            .limit(1)
        )
        with self.db.session() as session:
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

    def _conversation_exists(self, user_id: str, conversation_id: str) -> bool:
        with self.db.session() as session:
            conversation = session.get(Conversation, conversation_id)
            return (
                conversation is not None
                and not conversation.is_deleted
                and conversation.user_id == user_id
            )

    # --- pipeline ---

    async def resolve_model(self, user_id: str, model_id: str | None) -> ModelConfig:
        """The user's enabled model on an active provider, or the preset default."""
        if not model_id:
            return default_model_config(self.settings.llm)

        config = await self.db.run(self._find_user_model, user_id, model_id)
        if config is None:
            raise ModelNotFoundError()
        return config

    async def prepare(self, user_id: str | None, request: ChatRequest, lightweight: bool = False) -> PreparedChat:
        """
        Run every check that must pass before a model call.

        Raises:
            UnauthorizedError: No user id
            ChatValidationError: The request cannot be answered as sent
            ConversationNotFoundError: Unknown conversation for this user
            ModelNotFoundError: modelId does not resolve to a usable model
            BillingLimitError: The pre-flight billing check rejected the request
        """
        if not user_id:
            raise UnauthorizedError("User ID is required for billing tracking")
        if request.messages[-1].role != "user":
            raise ChatValidationError("The last message must be a user message")

        conversation_id = request.conversation_id
        if conversation_id and not await self.db.run(self._conversation_exists, user_id, conversation_id):
            raise ConversationNotFoundError()

        model_config = await self.resolve_model(user_id, request.model_id)

        image_prompt = None
        if is_image_model(model_config.name):
            image_prompt = first_text(request.messages[-1])
            if not image_prompt:
                raise ChatValidationError("No prompt found in message")

        if not model_config.is_preset:
            check = await self.billing.estimate_and_check(
                user_id, request.messages, model_config.provider, model_config.name
            )
            if not check.can_proceed:
                raise BillingLimitError(check.reason or "Usage limit exceeded", check.state.to_payload())

        adapter = self._adapter_factory(model_config, self.settings.llm)
        max_steps = (
            self.settings.chat.lightweight_max_steps if lightweight else self.settings.chat.max_steps
        )

        if image_prompt is not None:
            return PreparedChat(
                user_id=user_id,
                request=request,
                model_config=model_config,
                adapter=adapter,
                messages=request.messages,
                last_user_message=request.messages[-1],
                max_steps=max_steps,
                image_prompt=image_prompt,
            )

        messages = attach_files_to_last_message(request.messages, request.uploaded_attachments)
        summary = await self.compressor.load_summary(conversation_id)
        if summary:
            messages = truncate_messages(messages, self.settings.chat.keep_last_messages)

        return PreparedChat(
            user_id=user_id,
            request=request,
            model_config=model_config,
            adapter=adapter,
            messages=messages,
            last_user_message=messages[-1],
            max_steps=max_steps,
            system_prompt=build_system_prompt(self._system_template, request.web_search, summary),
            tools=build_tools(
                web_search=request.web_search,
                enable_thinking=request.enable_thinking,
                search_settings=self.settings.search,
            ),
        )

    def _elapsed_ms(self, prepared: PreparedChat) -> int:
        return int((time.monotonic() - prepared.started_at) * 1000)

    def _schedule_post_completion(self, prepared: PreparedChat, result: OrchestratorResult) -> None:
        """Spawn compression, billing and persistence as independent tasks."""
        conversation_id = prepared.conversation_id
        config = prepared.model_config

        if conversation_id and self.compressor.should_compress(result.usage.total_tokens):
            history = [
                *prepared.messages,
                ChatMessage(role="assistant", parts=[TextPart(text=result.text)]),
            ]
            self.tasks.spawn(
                "compression",
                self.compressor.maybe_compress(
                    history, conversation_id, prepared.user_id, result.usage.total_tokens
                ),
            )

        if not config.is_preset:
            self.tasks.spawn(
                "billing",
                self.billing.record_usage(
                    user_id=prepared.user_id,
                    provider=config.provider,
                    model_name=config.name,
                    input_tokens=result.usage.input_tokens,
                    output_tokens=result.usage.output_tokens,
                    conversation_id=conversation_id,
                    request_duration_ms=self._elapsed_ms(prepared),
                    request_metadata={
                        "messageCount": len(prepared.messages),
                        "hasTools": prepared.tools is not None and len(prepared.tools) > 0,
                        "finishReason": result.finish_reason,
                        "steps": len(result.steps),
                        "usage": result.usage.model_dump(),
                    },
                ),
            )

        if conversation_id:
            self.tasks.spawn(
                "persistence",
                self.saver.save(
                    conversation_id,
                    prepared.user_id,
                    prepared.last_user_message,
                    result.text,
                    citations=result.citations,
                    attachments=prepared.attachments,
                ),
            )

    def orchestrator_for(self, prepared: PreparedChat, abort_event: asyncio.Event | None = None) -> StreamingOrchestrator:
        async def on_finish(result: OrchestratorResult) -> None:
            self._schedule_post_completion(prepared, result)

        return StreamingOrchestrator(
            adapter=prepared.adapter,
            tools=prepared.tools,
            system_prompt=prepared.system_prompt,
            max_steps=prepared.max_steps,
            timeout=self.settings.chat.stream_timeout_seconds,
            abort_event=abort_event,
            citations=CitationAggregator(),
            max_tokens=self.settings.chat.max_tokens,
            on_finish=on_finish,
        )

    async def stream(
        self, prepared: PreparedChat, abort_event: asyncio.Event | None = None
    ) -> AsyncIterator[StreamEvent]:
        """Run the step loop for a prepared (non-image) request."""
        if prepared.is_image:
            raise ChatValidationError("Image models do not stream; use generate_image()")

        orchestrator = self.orchestrator_for(prepared, abort_event)
        async for event in orchestrator.run(to_model_messages(prepared.messages)):
            yield event

    async def generate_image(self, prepared: PreparedChat) -> dict[str, Any]:
        """
        Generate an image for a prepared image-model request.

        Raises:
            ImageGenerationError: If the provider fails or times out
        """
        prompt = prepared.image_prompt
        if prompt is None:
            raise ChatValidationError("Not an image-generation request")

        config = prepared.model_config
        try:
            image = await asyncio.wait_for(
                prepared.adapter.generate_image(prompt),
                timeout=self.settings.chat.image_timeout_seconds,
            )
        except (LLMError, asyncio.TimeoutError) as e:
            logger.error(f"Image generation with {config.provider}/{config.name} failed: {e}")
            raise ImageGenerationError(str(e) or "Image generation timed out")

        if not config.is_preset:
            estimated_input = math.ceil(len(prompt) / 4)
            self.tasks.spawn(
                "billing",
                self.billing.record_usage(
                    user_id=prepared.user_id,
                    provider=config.provider,
                    model_name=config.name,
                    input_tokens=estimated_input,
                    output_tokens=IMAGE_OUTPUT_TOKENS,
                    conversation_id=prepared.conversation_id,
                    request_duration_ms=self._elapsed_ms(prepared),
                    request_metadata={"messageCount": len(prepared.messages), "finishReason": "stop"},
                ),
            )

        if prepared.conversation_id:
            self.tasks.spawn(
                "persistence",
                self.saver.save(
                    prepared.conversation_id,
                    prepared.user_id,
                    prepared.last_user_message,
                    f"![Generated Image]({image})",
                ),
            )

        return {
            "role": "assistant",
            "content": [
                {"type": "image", "image": image},
                {"type": "text", "text": f'Generated image for: "{prompt}"'},
            ],
            "metadata": {
                "createdAt": int(time.time() * 1000),
                "model": config.name,
                "provider": config.provider,
            },
        }

    async def close(self) -> None:
        await self.tasks.drain(timeout=30)
        await self.cache.close()
