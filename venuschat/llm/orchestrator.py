"""
Streaming Orchestrator: the bounded multi-step tool-calling loop.

One StreamingOrchestrator handles one request and is single-use. It moves
through explicit states:

    IDLE ──run()──► STREAMING(step 1..N) ──► FINISHED
                              │
                              └──────────► ABORTED  (abort signal, timeout,
                                                     provider error, caller gone)

A step is one model call plus the tool calls it requested. Each step sends
the full context (history + results of earlier steps) to the Model Adapter,
forwards text tokens as they arrive, runs the requested tools concurrently,
appends their results to the context and moves on. The loop ends when the
model finishes without tool calls, when max_steps is reached, or when the
abort/timeout signal fires.

Transition handlers:
    on_step_finish(StepResult)        after every completed step
    on_finish(OrchestratorResult)     once, on entering FINISHED

on_finish is the only place a turn should be persisted from: an aborted
stream never reaches it.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import suppress
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from venuschat.chat.citations import Citation, CitationAggregator
from venuschat.config.logging import get_logger
from venuschat.llm.adapter import ModelAdapter
from venuschat.llm.models import LLMError, StepOutcome, TokenUsage, ToolCall
from venuschat.tools.base import ToolAdapter
from venuschat.tools.web_search import SearchToolOutput

logger = get_logger(__name__)


class OrchestratorState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINISHED = "finished"
    ABORTED = "aborted"


# --- Stream events ---------------------------------------------------------


class _Event(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict with camelCase keys, optional fields omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StartMetadata(_Event):
    created_at: datetime
    model: str
    provider: str
    is_finished: bool = False


class FinishMetadata(_Event):
    total_tokens: int
    input_tokens: int
    output_tokens: int
    reasoning_tokens: int
    cached_input_tokens: int
    max_tokens: int
    citations: list[Citation] | None = None
    is_finished: bool = True


class StartEvent(_Event):
    type: Literal["start"] = "start"
    message_metadata: StartMetadata


class TextDeltaEvent(_Event):
    type: Literal["text-delta"] = "text-delta"
    delta: str


class ToolCallEvent(_Event):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: dict[str, Any]


class ToolResultEvent(_Event):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: Any


class FinishStepEvent(_Event):
    type: Literal["finish-step"] = "finish-step"
    step: int
    finish_reason: str


class FinishEvent(_Event):
    type: Literal["finish"] = "finish"
    finish_reason: str
    message_metadata: FinishMetadata


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    error_text: str


StreamEvent = Annotated[
    Union[
        StartEvent,
        TextDeltaEvent,
        ToolCallEvent,
        ToolResultEvent,
        FinishStepEvent,
        FinishEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]


# --- Results ---------------------------------------------------------------


class StepResult(BaseModel):
    """One completed step: the model call and the tools it ran."""

    number: int
    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finish_reason: str = "stop"


class OrchestratorResult(BaseModel):
    """What the orchestrator exposes once it reaches FINISHED."""

    text: str
    usage: TokenUsage
    finish_reason: str
    steps: list[StepResult]
    response_messages: list[dict[str, Any]] = Field(
        description="Assistant and tool messages produced this turn, in context format"
    )
    citations: list[Citation] = Field(default_factory=list)
    model: str
    provider: str


class _Aborted(Exception):
    """Internal signal: the abort event fired or the deadline passed."""


StepHandler = Callable[[StepResult], Awaitable[None]]
FinishHandler = Callable[[OrchestratorResult], Awaitable[None]]


class StreamingOrchestrator:
    """
    Drives the step loop for one request.

    Args:
        adapter: Model Adapter to stream from
        tools: Tools available this turn (None = no tools)
        system_prompt: System prompt sent with every step
        max_steps: Upper bound on steps for this call site
        timeout: Seconds before the whole loop is aborted (None = no deadline)
        abort_event: External abort signal, e.g. set on client disconnect
        citations: Aggregator for search citations (a fresh one by default)
        max_tokens: Context budget reported in the finish metadata
        on_step_finish: Called after each completed step
        on_finish: Called once when the loop finishes normally
    """

    def __init__(
        self,
        adapter: ModelAdapter,
        tools: ToolAdapter | None = None,
        system_prompt: str | None = None,
        max_steps: int = 20,
        timeout: float | None = None,
        abort_event: asyncio.Event | None = None,
        citations: CitationAggregator | None = None,
        max_tokens: int = 32000,
        on_step_finish: StepHandler | None = None,
        on_finish: FinishHandler | None = None,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")

        self._adapter = adapter
        self._tools = tools
        self._system_prompt = system_prompt
        self._max_steps = max_steps
        self._timeout = timeout
        self._abort_event = abort_event or asyncio.Event()
        self._citations = citations if citations is not None else CitationAggregator()
        self._max_tokens = max_tokens
        self._on_step_finish = on_step_finish
        self._on_finish = on_finish

        self.state = OrchestratorState.IDLE
        self.steps: list[StepResult] = []
        self.result: OrchestratorResult | None = None
        self.error: str | None = None
        self._deadline: float | None = None

    @property
    def citations(self) -> list[Citation]:
        return self._citations.all()

    def abort(self) -> None:
        """Fire the abort signal; the loop stops at its next suspension point."""
        self._abort_event.set()

    async def _tool_definitions(self) -> list[dict[str, Any]] | None:
        """Wrap the flat tool schemas in the OpenAI function-tool format."""
        if self._tools is None:
            return None

        raw_tools = await self._tools.list_tools()
        if not raw_tools:
            return None
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool["description"],
                    "parameters": tool["input_schema"],
                },
            }
            for tool in raw_tools
        ]

    async def _guarded(self, awaitable: Awaitable[Any]) -> Any:
        """
        Await something, racing it against the abort event and the deadline.

        Raises:
            _Aborted: If the abort event fires or the deadline passes first
        """
        loop = asyncio.get_running_loop()
        remaining = None if self._deadline is None else self._deadline - loop.time()

        work = asyncio.ensure_future(awaitable)
        if self._abort_event.is_set() or (remaining is not None and remaining <= 0):
            work.cancel()
            with suppress(asyncio.CancelledError):
                await work
            raise _Aborted()

        aborted = asyncio.ensure_future(self._abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, aborted}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            aborted.cancel()

        if work in done:
            return work.result()

        work.cancel()
        with suppress(asyncio.CancelledError):
            await work
        raise _Aborted()

    async def _stream_model_step(
        self,
        context: list[dict[str, Any]],
        tool_definitions: list[dict[str, Any]] | None,
    ) -> AsyncIterator[str | StepOutcome]:
        """Stream one model call with every item read under the abort guard."""
        iterator = self._adapter.stream_step(self._system_prompt, context, tool_definitions).__aiter__()
        try:
            while True:
                try:
                    item = await self._guarded(iterator.__anext__())
                except StopAsyncIteration:
                    return
                yield item
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                with suppress(Exception):
                    await aclose()

    async def _run_tools(self, tool_calls: list[ToolCall]) -> None:
        """Execute one step's tool calls concurrently, keeping request order."""
        if self._tools is None:
            for call in tool_calls:
                call.output = f"Error: Tool '{call.name}' is not available"
            return

        outputs = await self._guarded(
            asyncio.gather(*(self._tools.call(call.name, call.arguments) for call in tool_calls))
        )
        for call, output in zip(tool_calls, outputs):
            call.output = output

    def _collect_citations(self, tool_calls: list[ToolCall]) -> None:
        for call in tool_calls:
            if isinstance(call.output, SearchToolOutput):
                self._citations.extend(call.output.citations)

    async def run(self, messages: list[dict[str, Any]]) -> AsyncIterator[StreamEvent]:
        """
        Run the step loop over a conversation and stream its events.

        Args:
            messages: Conversation history in OpenAI chat format (no system message)

        Yields:
            StartEvent, then text/tool/step events, then a FinishEvent or ErrorEvent
        """
        if self.state is not OrchestratorState.IDLE:
            raise RuntimeError("StreamingOrchestrator instances are single-use")

        self.state = OrchestratorState.STREAMING
        if self._timeout is not None:
            self._deadline = asyncio.get_running_loop().time() + self._timeout

        context = list(messages)
        response_messages: list[dict[str, Any]] = []
        usage = TokenUsage()
        finish_reason = "stop"

        yield StartEvent(
            message_metadata=StartMetadata(
                created_at=datetime.now(timezone.utc),
                model=self._adapter.model,
                provider=self._adapter.provider,
            )
        )

        try:
            tool_definitions = await self._tool_definitions()

            while True:
                number = len(self.steps) + 1
                outcome: StepOutcome | None = None

                async for item in self._stream_model_step(context, tool_definitions):
                    if isinstance(item, StepOutcome):
                        outcome = item
                    elif item:
                        yield TextDeltaEvent(delta=item)

                if outcome is None:
                    raise LLMError("Model stream ended without a result")

                usage = usage + outcome.usage

                assistant_message: dict[str, Any] = {"role": "assistant", "content": outcome.text or None}
                if outcome.tool_calls:
                    assistant_message["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                        }
                        for call in outcome.tool_calls
                    ]
                step_messages = [assistant_message]

                if outcome.tool_calls:
                    for call in outcome.tool_calls:
                        yield ToolCallEvent(
                            tool_call_id=call.id, tool_name=call.name, input=call.arguments
                        )

                    await self._run_tools(outcome.tool_calls)
                    self._collect_citations(outcome.tool_calls)

                    for call in outcome.tool_calls:
                        yield ToolResultEvent(
                            tool_call_id=call.id, tool_name=call.name, output=call.output
                        )
                        step_messages.append({
                            "role": "tool",
                            "tool_call_id": call.id,
                            "content": tool_result_content(call.output),
                        })

                # Tool results join the context before the next model call starts
                context.extend(step_messages)
                response_messages.extend(step_messages)

                step = StepResult(
                    number=number,
                    text=outcome.text,
                    tool_calls=outcome.tool_calls,
                    usage=outcome.usage,
                    finish_reason=outcome.finish_reason,
                )
                self.steps.append(step)
                logger.debug(
                    f"Step {number} finished ({step.finish_reason}, "
                    f"{len(step.tool_calls)} tool calls)"
                )
                yield FinishStepEvent(step=number, finish_reason=step.finish_reason)

                if self._on_step_finish is not None:
                    await self._on_step_finish(step)

                if not outcome.tool_calls:
                    finish_reason = outcome.finish_reason
                    break
                if number >= self._max_steps:
                    logger.info(f"Step limit of {self._max_steps} reached with tool calls pending")
                    finish_reason = "tool-calls"
                    break

        except _Aborted:
            self.state = OrchestratorState.ABORTED
            self.error = "Request aborted or timed out"
            logger.warning(f"Stream aborted after {len(self.steps)} steps")
            yield ErrorEvent(error_text=self.error)
            return
        except LLMError as e:
            self.state = OrchestratorState.ABORTED
            self.error = str(e)
            logger.error(f"Model call failed during step {len(self.steps) + 1}: {e}")
            yield ErrorEvent(error_text=self.error)
            return
        except Exception as e:
            self.state = OrchestratorState.ABORTED
            self.error = f"Unexpected error: {e}"
            logger.exception(f"Step loop failed during step {len(self.steps) + 1}")
            yield ErrorEvent(error_text=self.error)
            return
        except (GeneratorExit, asyncio.CancelledError):
            # Caller stopped consuming mid-stream
            self.state = OrchestratorState.ABORTED
            self.error = "Stream closed by caller"
            raise

        self.result = OrchestratorResult(
            text="\n\n".join(step.text for step in self.steps if step.text.strip()),
            usage=usage,
            finish_reason=finish_reason,
            steps=self.steps,
            response_messages=response_messages,
            citations=self._citations.all(),
            model=self._adapter.model,
            provider=self._adapter.provider,
        )
        self.state = OrchestratorState.FINISHED

        if self._on_finish is not None:
            try:
                await self._on_finish(self.result)
            except Exception:
                logger.exception("Finish handler failed")

        yield FinishEvent(
            finish_reason=finish_reason,
            message_metadata=FinishMetadata(
                total_tokens=usage.total_tokens,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                reasoning_tokens=usage.reasoning_tokens,
                cached_input_tokens=usage.cached_input_tokens,
                max_tokens=self._max_tokens,
                citations=self.result.citations or None,
            ),
        )


def tool_result_content(output: Any) -> str:
    """Render a tool output as the text the model sees in a tool message."""
    if isinstance(output, str):
        return output
    if isinstance(output, BaseModel):
        return output.model_dump_json(exclude_none=True)
    return json.dumps(output, default=str, ensure_ascii=False)
