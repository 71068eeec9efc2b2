"""
Thinking-step tool.

Lets the model surface its reasoning progress (a chain-of-thought step or a
task item) to the caller. It has no side effects: the step is validated and
echoed back, and the caller renders it from the tool-call/tool-result events.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from venuschat.tools.base import Tool


class StepSearchResult(BaseModel):
    title: str
    url: str | None = None


class ThinkingStepInput(BaseModel):
    type: Literal["chain-of-thought", "task"] = Field(
        description="'chain-of-thought' for a reasoning step, 'task' for a task item"
    )
    step_id: str = Field(min_length=1, description="Unique id of this step within the turn")
    label: str = Field(min_length=1, description="Short label shown to the user")
    status: Literal["pending", "active", "complete"] = Field(description="Step status")
    description: str | None = Field(default=None, description="Optional longer description")
    search_results: list[StepSearchResult] | None = Field(
        default=None, description="Search results consulted in this step"
    )
    files: list[str] | None = Field(default=None, description="Files touched by this task")


class ThinkingStepTool(Tool):
    name = "thinkingStep"
    description = (
        "Report the progress of your reasoning to the user. Call this when you start, "
        "advance or complete a reasoning step or task. It does not perform any action."
    )
    input_model = ThinkingStepInput

    async def _run(self, params: ThinkingStepInput) -> dict[str, Any]:
        return {"acknowledged": True, "step": params.model_dump(exclude_none=True)}
