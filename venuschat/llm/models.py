"""
Data models shared by the Model Adapter and the Streaming Orchestrator.

- ModelConfig: which provider/model to talk to and with which credentials
- TokenUsage: token accounting for one model call or a whole turn
- ToolCall: a tool invocation requested by the model (and, once run, its output)
- StepOutcome: the terminal item of one streamed model call
- LLMError: the single error type raised out of a Model Adapter
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field


class LLMError(Exception):
    """Raised when the model provider call fails or is misconfigured."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class ModelConfig(BaseModel):
    """
    Provider selection for one request.

    Preset models are platform-subsidized: their credentials come from settings
    and they are exempt from per-user billing checks.
    """

    provider: str = Field(description="Provider identifier, e.g. 'deepseek', 'openai'")
    name: str = Field(description="Model name as the provider knows it")
    api_key: str = Field(default="", description="Credential for user-supplied providers")
    api_endpoint: str | None = Field(default=None, description="Base URL override")
    is_preset: bool = Field(default=False, description="Platform-subsidized model")

    model_config = ConfigDict(frozen=True)


class TokenUsage(BaseModel):
    """Token usage reported by the provider."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cached_input_tokens: int = Field(default=0, ge=0)
    reasoning_tokens: int = Field(default=0, ge=0)

    @computed_field
    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cached_input_tokens=self.cached_input_tokens + other.cached_input_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
        )


class ToolCall(BaseModel):
    """A tool call requested by the model; `output` is filled after execution."""

    id: str = Field(description="Provider-assigned tool call id")
    name: str = Field(description="Tool name")
    arguments: dict[str, Any] = Field(default_factory=dict)
    output: Any = Field(default=None, description="Tool output (or error string)")


class StepOutcome(BaseModel):
    """Everything one model call produced once its stream is exhausted."""

    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finish_reason: str = "stop"
    model: str = ""
