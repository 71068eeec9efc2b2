"""
LLM layer: model adapters and the streaming step loop.

    ChatService builds a ModelAdapter via create_model_adapter(config)
                                        ↓
    StreamingOrchestrator.run(messages) ←→ ToolSet (tool calls per step)
                                        ↓
    StreamEvents → HTTP stream;  OrchestratorResult → on_finish handler

The adapter hides the vendor API (LiteLLM underneath); the orchestrator owns
the step limit, abort/timeout handling and citation collection for one turn.
"""

from venuschat.llm.adapter import LiteLLMAdapter, ModelAdapter, create_model_adapter, is_image_model
from venuschat.llm.models import LLMError, ModelConfig, StepOutcome, TokenUsage, ToolCall
from venuschat.llm.orchestrator import (
    OrchestratorResult,
    OrchestratorState,
    StepResult,
    StreamingOrchestrator,
)

__all__ = [
    "LiteLLMAdapter",
    "LLMError",
    "ModelAdapter",
    "ModelConfig",
    "OrchestratorResult",
    "OrchestratorState",
    "StepOutcome",
    "StepResult",
    "StreamingOrchestrator",
    "TokenUsage",
    "ToolCall",
    "create_model_adapter",
    "is_image_model",
]
