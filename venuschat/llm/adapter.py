"""
Model Adapter: a uniform "stream / generate / generate image" capability.

The orchestrator never talks to a vendor API directly. It drives a
ModelAdapter, which streams one model call at a time:

    async for item in adapter.stream_step(system_prompt, messages, tools):
        str          → a text token, forwarded to the caller immediately
        StepOutcome  → the last item: full text, tool calls, usage, finish reason

LiteLLMAdapter is the only concrete adapter; LiteLLM already normalises the
wire formats of DeepSeek, OpenAI and OpenAI-compatible providers. The
factory picks credentials based on whether the model is a preset.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

import litellm
from litellm import acompletion, aimage_generation

from venuschat.config.logging import get_logger
from venuschat.config.settings import LLMSettings
from venuschat.llm.models import LLMError, ModelConfig, StepOutcome, TokenUsage, ToolCall

logger = get_logger(__name__)

IMAGE_MODEL_MARKERS = ("dall-e", "gpt-image", "imagen", "flux", "stable-diffusion")

# OpenAI finish reasons → the names used in stream metadata
_FINISH_REASONS = {
    "stop": "stop",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "length": "length",
    "content_filter": "content-filter",
}


def is_image_model(model_name: str) -> bool:
    """Return True if the model name marks an image-generation model."""
    lowered = model_name.lower()
    return any(marker in lowered for marker in IMAGE_MODEL_MARKERS)


class ModelAdapter(ABC):
    """
    Abstract base class for language-model providers.

    Attributes:
        provider: Provider identifier reported in stream metadata
        model: Model name reported in stream metadata
    """

    provider: str
    model: str

    @abstractmethod
    def stream_step(
        self,
        system_prompt: str | None,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str = "auto",
    ) -> AsyncIterator[str | StepOutcome]:
        """
        Stream a single model call.

        Yields text tokens as they arrive and finishes with exactly one
        StepOutcome describing the completed call.

        Raises:
            LLMError: If the provider call fails
        """

    @abstractmethod
    async def generate(self, prompt: str, system: str | None = None) -> str:
        """
        Run a single non-streaming completion and return its text.

        Raises:
            LLMError: If the provider call fails
        """

    async def generate_image(self, prompt: str) -> str:
        """
        Generate an image and return it as a data URL or hosted URL.

        Raises:
            LLMError: If the adapter does not support images or the call fails
        """
        raise LLMError(f"Model {self.model!r} does not support image generation")


class LiteLLMAdapter(ModelAdapter):
    """
    ModelAdapter backed by LiteLLM.

    Args:
        provider: Provider identifier (for metadata and billing)
        model: Model name (for metadata and billing)
        litellm_model: Provider-prefixed LiteLLM model string, e.g. 'deepseek/deepseek-chat'
        api_key: Provider credential
        api_base: Base URL override (None = LiteLLM default for the provider)
        temperature: Sampling temperature
        max_tokens: Per-call output cap (None = provider default)
    """

    def __init__(
        self,
        provider: str,
        model: str,
        litellm_model: str,
        api_key: str,
        api_base: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        self.provider = provider
        self.model = model
        self._litellm_model = litellm_model
        self._api_key = api_key
        self._api_base = api_base
        self._temperature = temperature
        self._max_tokens = max_tokens

    def _call_kwargs(self, messages: list[dict[str, Any]]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._litellm_model,
            "messages": messages,
            "api_key": self._api_key,
        }
        if self._api_base:
            kwargs["api_base"] = self._api_base
        if self._temperature is not None:
            kwargs["temperature"] = self._temperature
        if self._max_tokens is not None:
            kwargs["max_tokens"] = self._max_tokens
        return kwargs

    async def stream_step(
        self,
        system_prompt: str | None,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str = "auto",
    ) -> AsyncIterator[str | StepOutcome]:
        if not self._api_key:
            raise LLMError(f"API key not configured for provider {self.provider!r}")

        full_messages = list(messages)
        if system_prompt:
            full_messages.insert(0, {"role": "system", "content": system_prompt})

        call_kwargs = self._call_kwargs(full_messages)
        call_kwargs["stream"] = True
        call_kwargs["stream_options"] = {"include_usage": True}
        if tools:
            call_kwargs["tools"] = tools
            call_kwargs["tool_choice"] = tool_choice

        try:
            response = await acompletion(**call_kwargs)
        except Exception as e:
            raise LLMError(f"LLM API call failed: {e}", cause=e)

        chunks = []
        try:
            async for chunk in response:
                chunks.append(chunk)
                if not chunk.choices:
                    continue
                content = getattr(chunk.choices[0].delta, "content", None)
                if content:
                    yield content
        except Exception as e:
            raise LLMError(f"LLM stream failed: {e}", cause=e)

        if not chunks:
            raise LLMError("LLM stream ended without any chunks")

        # LiteLLM reassembles partial tool-call deltas and the usage chunk
        try:
            built = litellm.stream_chunk_builder(chunks, messages=full_messages)
            outcome = _outcome_from_response(built, fallback_model=self.model)
        except Exception as e:
            raise LLMError(f"Could not assemble LLM stream: {e}", cause=e)
        yield outcome

    async def generate(self, prompt: str, system: str | None = None) -> str:
        if not self._api_key:
            raise LLMError(f"API key not configured for provider {self.provider!r}")

        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await acompletion(**self._call_kwargs(messages))
        except Exception as e:
            raise LLMError(f"LLM API call failed: {e}", cause=e)

        try:
            return response.choices[0].message.content or ""
        except (AttributeError, IndexError) as e:
            raise LLMError(f"Malformed LLM response: {e}", cause=e)

    async def generate_image(self, prompt: str) -> str:
        kwargs: dict[str, Any] = {
            "model": self._litellm_model,
            "prompt": prompt,
            "api_key": self._api_key,
            "response_format": "b64_json",
        }
        if self._api_base:
            kwargs["api_base"] = self._api_base

        try:
            response = await aimage_generation(**kwargs)
        except Exception as e:
            raise LLMError(f"Image generation failed: {e}", cause=e)

        if not response.data:
            raise LLMError("Image generation returned no images")
        image = response.data[0]
        b64 = getattr(image, "b64_json", None)
        if b64:
            return f"data:image/png;base64,{b64}"
        url = getattr(image, "url", None)
        if url:
            return url
        raise LLMError("Image generation returned neither base64 data nor a URL")


def _outcome_from_response(response: Any, fallback_model: str) -> StepOutcome:
    """Convert a (rebuilt) LiteLLM ModelResponse into a StepOutcome."""
    choice = response.choices[0]
    message = choice.message

    tool_calls: list[ToolCall] = []
    for raw in message.tool_calls or []:
        try:
            arguments = json.loads(raw.function.arguments or "{}")
        except json.JSONDecodeError:
            logger.warning(f"Tool call {raw.function.name!r} sent malformed arguments")
            arguments = {}
        tool_calls.append(ToolCall(id=raw.id, name=raw.function.name, arguments=arguments))

    usage = getattr(response, "usage", None)
    cached = 0
    reasoning = 0
    if usage is not None:
        prompt_details = getattr(usage, "prompt_tokens_details", None)
        completion_details = getattr(usage, "completion_tokens_details", None)
        cached = getattr(prompt_details, "cached_tokens", 0) or 0
        reasoning = getattr(completion_details, "reasoning_tokens", 0) or 0

    finish_reason = choice.finish_reason or ("tool_calls" if tool_calls else "stop")
    return StepOutcome(
        text=message.content or "",
        tool_calls=tool_calls,
        usage=TokenUsage(
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            cached_input_tokens=cached,
            reasoning_tokens=reasoning,
        ),
        finish_reason=_FINISH_REASONS.get(finish_reason, finish_reason),
        model=getattr(response, "model", None) or fallback_model,
    )


def default_model_config(settings: LLMSettings) -> ModelConfig:
    """The preset model configured for the platform."""
    return ModelConfig(
        provider=settings.provider,
        name=settings.model,
        api_key=settings.api_key,
        api_endpoint=settings.base_url,
        is_preset=True,
    )


def create_model_adapter(config: ModelConfig, settings: LLMSettings) -> ModelAdapter:
    """
    Build the adapter for a model configuration.

    Preset models use the platform credentials from settings; user models use
    the credentials stored with their provider. Providers other than DeepSeek
    and OpenAI are treated as OpenAI-compatible endpoints.
    """
    provider = config.provider.lower()

    if config.is_preset:
        api_key = settings.api_key
        api_base = settings.base_url
    else:
        api_key = config.api_key
        api_base = config.api_endpoint

    if provider == "deepseek":
        litellm_model = f"deepseek/{config.name}"
    else:
        # OpenAI and OpenAI-compatible providers share the OpenAI wire format
        litellm_model = f"openai/{config.name}"

    return LiteLLMAdapter(
        provider=config.provider,
        model=config.name,
        litellm_model=litellm_model,
        api_key=api_key,
        api_base=api_base,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
    )
