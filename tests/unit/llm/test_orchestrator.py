"""
Unit tests for the Streaming Orchestrator.

Tests cover:
- Construction and state transitions
- Event order for a plain answer
- The tool-calling loop and context threading
- Step limits
- Concurrent tool execution
- Citation aggregation
- Abort, timeout, provider errors and caller disconnects
- Finish handlers
"""

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock

import pytest

from fakes import FakeAdapter, text_step, tool_step
from venuschat.chat.citations import Citation
from venuschat.llm.models import LLMError, TokenUsage
from venuschat.llm.orchestrator import (
    ErrorEvent,
    FinishEvent,
    OrchestratorState,
    StreamingOrchestrator,
    TextDeltaEvent,
    ToolCallEvent,
    ToolResultEvent,
    tool_result_content,
)
from venuschat.tools.base import ToolAdapter
from venuschat.tools.web_search import SearchToolOutput

USER_MESSAGES = [{"role": "user", "content": "What's the weather in Paris?"}]


async def collect(orchestrator: StreamingOrchestrator, messages=None) -> list:
    return [event async for event in orchestrator.run(messages or USER_MESSAGES)]


def types_of(events: list) -> list[str]:
    return [event.type for event in events]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def weather_tools():
    """Mock ToolAdapter that exposes a weather tool."""
    adapter = AsyncMock()
    adapter.list_tools.return_value = [
        {
            "name": "weather",
            "description": "Get the current weather for a location",
            "input_schema": {
                "type": "object",
                "properties": {"location": {"type": "string"}},
                "required": ["location"],
            },
        }
    ]
    adapter.call.return_value = {"location": "Paris", "temperature": 70, "condition": "sunny", "humidity": 65}
    return adapter


class SearchTools(ToolAdapter):
    """Returns a fixed SearchToolOutput per query."""

    def __init__(self, results: dict[str, list[Citation]]):
        self._results = results

    async def call(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        citations = self._results[arguments["query"]]
        return SearchToolOutput(text=f"{len(citations)} results", citations=citations)

    async def list_tools(self) -> list[dict[str, Any]]:
        return [{"name": "webSearch", "description": "Search", "input_schema": {"type": "object"}}]


# ---------------------------------------------------------------------------
# Test Classes
# ---------------------------------------------------------------------------

class TestOrchestratorInitialization:
    """Tests for StreamingOrchestrator construction."""

    def test_starts_idle(self):
        orchestrator = StreamingOrchestrator(FakeAdapter())
        assert orchestrator.state is OrchestratorState.IDLE
        assert orchestrator.steps == []
        assert orchestrator.result is None

    def test_rejects_zero_max_steps(self):
        with pytest.raises(ValueError, match="max_steps"):
            StreamingOrchestrator(FakeAdapter(), max_steps=0)

    @pytest.mark.asyncio
    async def test_is_single_use(self):
        orchestrator = StreamingOrchestrator(FakeAdapter([text_step("Hi")]))
        await collect(orchestrator)

        with pytest.raises(RuntimeError, match="single-use"):
            await collect(orchestrator)


class TestPlainAnswer:
    """A single step with no tool calls."""

    @pytest.mark.asyncio
    async def test_event_order(self):
        orchestrator = StreamingOrchestrator(FakeAdapter([text_step("Hello there friend")]))

        events = await collect(orchestrator)

        assert types_of(events) == [
            "start", "text-delta", "text-delta", "text-delta", "finish-step", "finish",
        ]
        assert orchestrator.state is OrchestratorState.FINISHED

    @pytest.mark.asyncio
    async def test_deltas_concatenate_to_result_text(self):
        orchestrator = StreamingOrchestrator(FakeAdapter([text_step("Hello there friend")]))

        events = await collect(orchestrator)

        streamed = "".join(e.delta for e in events if isinstance(e, TextDeltaEvent))
        assert streamed == "Hello there friend"
        assert orchestrator.result.text == "Hello there friend"

    @pytest.mark.asyncio
    async def test_start_metadata(self):
        adapter = FakeAdapter([text_step("Hi")], provider="deepseek", model="deepseek-chat")
        events = await collect(StreamingOrchestrator(adapter))

        payload = events[0].to_payload()
        assert payload["type"] == "start"
        assert payload["messageMetadata"]["model"] == "deepseek-chat"
        assert payload["messageMetadata"]["provider"] == "deepseek"
        assert payload["messageMetadata"]["isFinished"] is False
        assert "createdAt" in payload["messageMetadata"]

    @pytest.mark.asyncio
    async def test_finish_metadata(self):
        adapter = FakeAdapter([text_step("Hi", input_tokens=120, output_tokens=30)])
        events = await collect(StreamingOrchestrator(adapter, max_tokens=32000))

        finish = events[-1]
        assert isinstance(finish, FinishEvent)
        assert finish.finish_reason == "stop"
        payload = finish.to_payload()["messageMetadata"]
        assert payload["totalTokens"] == 150
        assert payload["inputTokens"] == 120
        assert payload["outputTokens"] == 30
        assert payload["maxTokens"] == 32000
        assert payload["isFinished"] is True
        # No search ran: the key is omitted, not null
        assert "citations" not in payload

    @pytest.mark.asyncio
    async def test_sends_system_prompt_and_history(self):
        adapter = FakeAdapter([text_step("Hi")])
        await collect(StreamingOrchestrator(adapter, system_prompt="Be brief."))

        call = adapter.stream_calls[0]
        assert call["system"] == "Be brief."
        assert call["messages"] == USER_MESSAGES
        assert call["tools"] is None


class TestToolLoop:
    """Tests for the step loop with tool calls."""

    @pytest.mark.asyncio
    async def test_weather_tool_round_trip(self, weather_tools):
        adapter = FakeAdapter([
            tool_step(("call_1", "weather", {"location": "Paris"})),
            text_step("It is sunny in Paris."),
        ])
        orchestrator = StreamingOrchestrator(adapter, tools=weather_tools)

        events = await collect(orchestrator)

        assert types_of(events) == [
            "start", "tool-call", "tool-result", "finish-step",
            "text-delta", "text-delta", "text-delta", "text-delta", "text-delta",
            "finish-step", "finish",
        ]
        call_event = next(e for e in events if isinstance(e, ToolCallEvent))
        assert call_event.tool_name == "weather"
        assert call_event.input == {"location": "Paris"}
        weather_tools.call.assert_awaited_once_with("weather", {"location": "Paris"})

    @pytest.mark.asyncio
    async def test_tool_results_join_next_step_context(self, weather_tools):
        adapter = FakeAdapter([
            tool_step(("call_1", "weather", {"location": "Paris"})),
            text_step("Sunny."),
        ])
        await collect(StreamingOrchestrator(adapter, tools=weather_tools))

        second_context = adapter.stream_calls[1]["messages"]
        assistant, tool = second_context[-2], second_context[-1]
        assert assistant["role"] == "assistant"
        assert assistant["tool_calls"][0]["id"] == "call_1"
        assert json.loads(assistant["tool_calls"][0]["function"]["arguments"]) == {"location": "Paris"}
        assert tool["role"] == "tool"
        assert tool["tool_call_id"] == "call_1"
        assert json.loads(tool["content"])["condition"] == "sunny"

    @pytest.mark.asyncio
    async def test_tool_definitions_are_wrapped_as_functions(self, weather_tools):
        adapter = FakeAdapter([text_step("Hi")])
        await collect(StreamingOrchestrator(adapter, tools=weather_tools))

        tools = adapter.stream_calls[0]["tools"]
        assert tools[0]["type"] == "function"
        assert tools[0]["function"]["name"] == "weather"
        assert tools[0]["function"]["parameters"]["required"] == ["location"]

    @pytest.mark.asyncio
    async def test_usage_sums_across_steps(self, weather_tools):
        adapter = FakeAdapter([
            tool_step(("call_1", "weather", {"location": "Paris"}), input_tokens=100, output_tokens=10),
            text_step("Sunny.", input_tokens=200, output_tokens=20),
        ])
        orchestrator = StreamingOrchestrator(adapter, tools=weather_tools)
        await collect(orchestrator)

        assert orchestrator.result.usage == TokenUsage(input_tokens=300, output_tokens=30)
        assert len(orchestrator.result.steps) == 2

    @pytest.mark.asyncio
    async def test_result_text_joins_step_texts(self, weather_tools):
        adapter = FakeAdapter([
            tool_step(("call_1", "weather", {"location": "Paris"}), text="Let me check."),
            text_step("It is sunny."),
        ])
        orchestrator = StreamingOrchestrator(adapter, tools=weather_tools)
        await collect(orchestrator)

        assert orchestrator.result.text == "Let me check.\n\nIt is sunny."

    @pytest.mark.asyncio
    async def test_response_messages_cover_the_turn(self, weather_tools):
        adapter = FakeAdapter([
            tool_step(("call_1", "weather", {"location": "Paris"})),
            text_step("Sunny."),
        ])
        orchestrator = StreamingOrchestrator(adapter, tools=weather_tools)
        await collect(orchestrator)

        roles = [m["role"] for m in orchestrator.result.response_messages]
        assert roles == ["assistant", "tool", "assistant"]

    @pytest.mark.asyncio
    async def test_missing_tool_adapter_reports_error_to_model(self):
        adapter = FakeAdapter([
            tool_step(("call_1", "weather", {"location": "Paris"})),
            text_step("Sorry."),
        ])
        events = await collect(StreamingOrchestrator(adapter))

        result = next(e for e in events if isinstance(e, ToolResultEvent))
        assert result.output == "Error: Tool 'weather' is not available"
        assert isinstance(events[-1], FinishEvent)


class TestStepLimit:
    """Tests for max_steps enforcement."""

    @pytest.mark.asyncio
    async def test_never_exceeds_max_steps(self, weather_tools):
        adapter = FakeAdapter([
            tool_step(("call_1", "weather", {"location": "Paris"})),
            tool_step(("call_2", "weather", {"location": "Lyon"})),
            tool_step(("call_3", "weather", {"location": "Nice"})),
        ])
        orchestrator = StreamingOrchestrator(adapter, tools=weather_tools, max_steps=2)

        events = await collect(orchestrator)

        assert len(adapter.stream_calls) == 2
        assert len(orchestrator.steps) == 2
        assert isinstance(events[-1], FinishEvent)
        assert events[-1].finish_reason == "tool-calls"

    @pytest.mark.asyncio
    async def test_single_step_limit_still_runs_tools(self, weather_tools):
        adapter = FakeAdapter([tool_step(("call_1", "weather", {"location": "Paris"}))])
        orchestrator = StreamingOrchestrator(adapter, tools=weather_tools, max_steps=1)

        events = await collect(orchestrator)

        assert "tool-result" in types_of(events)
        assert orchestrator.result.finish_reason == "tool-calls"

    @pytest.mark.asyncio
    async def test_stops_early_without_tool_calls(self, weather_tools):
        adapter = FakeAdapter([text_step("Hi"), text_step("never used")])
        orchestrator = StreamingOrchestrator(adapter, tools=weather_tools, max_steps=20)

        await collect(orchestrator)

        assert len(adapter.stream_calls) == 1


class TestConcurrentTools:
    """Tool calls within one step run concurrently and keep request order."""

    @pytest.mark.asyncio
    async def test_tools_in_a_step_overlap(self):
        second_started = asyncio.Event()

        class Tools(ToolAdapter):
            async def call(self, tool_name, arguments):
                if arguments["location"] == "Paris":
                    # Only completes if the Lyon call is already running
                    await second_started.wait()
                else:
                    second_started.set()
                return {"location": arguments["location"]}

            async def list_tools(self):
                return [{"name": "weather", "description": "w", "input_schema": {"type": "object"}}]

        adapter = FakeAdapter([
            tool_step(("call_1", "weather", {"location": "Paris"}), ("call_2", "weather", {"location": "Lyon"})),
            text_step("Both sunny."),
        ])
        orchestrator = StreamingOrchestrator(adapter, tools=Tools(), timeout=2.0)

        events = await collect(orchestrator)

        results = [e for e in events if isinstance(e, ToolResultEvent)]
        assert [r.tool_call_id for r in results] == ["call_1", "call_2"]
        assert [r.output["location"] for r in results] == ["Paris", "Lyon"]
        assert orchestrator.state is OrchestratorState.FINISHED


class TestCitations:
    """Citations from search outputs are aggregated across steps."""

    @pytest.mark.asyncio
    async def test_citations_deduplicated_by_url(self):
        a = Citation(id=1, url="https://a.example", title="A")
        b = Citation(id=2, url="https://b.example", title="B")
        a_again = Citation(id=1, url="https://a.example", title="A (second search)")
        tools = SearchTools({"first": [a, b], "second": [a_again]})

        adapter = FakeAdapter([
            tool_step(("s1", "webSearch", {"query": "first"})),
            tool_step(("s2", "webSearch", {"query": "second"})),
            text_step("Answer [citation:1]."),
        ])
        orchestrator = StreamingOrchestrator(adapter, tools=tools)

        events = await collect(orchestrator)

        assert [c.url for c in orchestrator.citations] == ["https://a.example", "https://b.example"]
        assert orchestrator.citations[0].title == "A"
        metadata = events[-1].to_payload()["messageMetadata"]
        assert metadata["citations"] == [
            {"id": 1, "url": "https://a.example", "title": "A"},
            {"id": 2, "url": "https://b.example", "title": "B"},
        ]

    @pytest.mark.asyncio
    async def test_search_output_serialized_for_model(self):
        tools = SearchTools({"q": [Citation(id=1, url="https://a.example", title="A")]})
        adapter = FakeAdapter([tool_step(("s1", "webSearch", {"query": "q"})), text_step("Done.")])

        await collect(StreamingOrchestrator(adapter, tools=tools))

        tool_message = adapter.stream_calls[1]["messages"][-1]
        assert json.loads(tool_message["content"])["text"] == "1 results"


class TestAbortAndErrors:
    """Tests for the ABORTED state."""

    @pytest.mark.asyncio
    async def test_abort_event_stops_stream(self):
        abort = asyncio.Event()
        on_finish = AsyncMock()
        adapter = FakeAdapter([text_step("one two three four five")], token_delay=0.05)
        orchestrator = StreamingOrchestrator(adapter, abort_event=abort, on_finish=on_finish)

        events = []
        async for event in orchestrator.run(USER_MESSAGES):
            events.append(event)
            if isinstance(event, TextDeltaEvent):
                abort.set()

        assert isinstance(events[-1], ErrorEvent)
        assert "finish" not in types_of(events)
        assert orchestrator.state is OrchestratorState.ABORTED
        assert orchestrator.result is None
        on_finish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_abort_method_sets_signal(self):
        orchestrator = StreamingOrchestrator(FakeAdapter([text_step("a b c")], token_delay=0.05))

        events = []
        async for event in orchestrator.run(USER_MESSAGES):
            events.append(event)
            if event.type == "start":
                orchestrator.abort()

        assert types_of(events) == ["start", "error"]
        assert orchestrator.error == "Request aborted or timed out"

    @pytest.mark.asyncio
    async def test_timeout_aborts(self):
        on_finish = AsyncMock()
        adapter = FakeAdapter([text_step("slow answer")], token_delay=1.0)
        orchestrator = StreamingOrchestrator(adapter, timeout=0.05, on_finish=on_finish)

        events = await collect(orchestrator)

        assert isinstance(events[-1], ErrorEvent)
        assert orchestrator.state is OrchestratorState.ABORTED
        on_finish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_error_becomes_error_event(self):
        on_finish = AsyncMock()
        adapter = FakeAdapter(fail_with=LLMError("LLM API call failed: rate limited"))
        orchestrator = StreamingOrchestrator(adapter, on_finish=on_finish)

        events = await collect(orchestrator)

        assert types_of(events) == ["start", "error"]
        assert events[-1].to_payload() == {"type": "error", "errorText": "LLM API call failed: rate limited"}
        assert orchestrator.state is OrchestratorState.ABORTED
        on_finish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_error_in_second_step_keeps_completed_steps(self, weather_tools):
        adapter = FakeAdapter([tool_step(("call_1", "weather", {"location": "Paris"}))])
        orchestrator = StreamingOrchestrator(adapter, tools=weather_tools)

        events = await collect(orchestrator)

        assert isinstance(events[-1], ErrorEvent)
        assert len(orchestrator.steps) == 1
        assert orchestrator.result is None

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_error_event(self):
        on_finish = AsyncMock()
        orchestrator = StreamingOrchestrator(FakeAdapter(fail_with=ValueError("bad chunk")), on_finish=on_finish)

        events = await collect(orchestrator)

        assert types_of(events) == ["start", "error"]
        assert "bad chunk" in events[-1].error_text
        assert orchestrator.state is OrchestratorState.ABORTED
        on_finish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failing_step_handler_ends_with_error(self):
        on_step_finish = AsyncMock(side_effect=RuntimeError("handler broke"))
        orchestrator = StreamingOrchestrator(FakeAdapter([text_step("Done")]), on_step_finish=on_step_finish)

        events = await collect(orchestrator)

        assert isinstance(events[-1], ErrorEvent)
        assert orchestrator.state is OrchestratorState.ABORTED
        assert orchestrator.result is None

    @pytest.mark.asyncio
    async def test_caller_closing_stream_aborts(self):
        on_finish = AsyncMock()
        adapter = FakeAdapter([text_step("one two three")])
        orchestrator = StreamingOrchestrator(adapter, on_finish=on_finish)

        stream = orchestrator.run(USER_MESSAGES)
        assert (await stream.__anext__()).type == "start"
        assert (await stream.__anext__()).type == "text-delta"
        await stream.aclose()

        assert orchestrator.state is OrchestratorState.ABORTED
        on_finish.assert_not_awaited()


class TestHandlers:
    """Tests for on_step_finish and on_finish."""

    @pytest.mark.asyncio
    async def test_on_step_finish_called_per_step(self, weather_tools):
        on_step_finish = AsyncMock()
        adapter = FakeAdapter([
            tool_step(("call_1", "weather", {"location": "Paris"})),
            text_step("Sunny."),
        ])
        await collect(StreamingOrchestrator(adapter, tools=weather_tools, on_step_finish=on_step_finish))

        assert on_step_finish.await_count == 2
        numbers = [call.args[0].number for call in on_step_finish.await_args_list]
        assert numbers == [1, 2]

    @pytest.mark.asyncio
    async def test_on_finish_receives_result_once(self):
        on_finish = AsyncMock()
        orchestrator = StreamingOrchestrator(FakeAdapter([text_step("Done")]), on_finish=on_finish)

        await collect(orchestrator)

        on_finish.assert_awaited_once_with(orchestrator.result)

    @pytest.mark.asyncio
    async def test_failing_on_finish_does_not_break_stream(self):
        on_finish = AsyncMock(side_effect=RuntimeError("db down"))
        orchestrator = StreamingOrchestrator(FakeAdapter([text_step("Done")]), on_finish=on_finish)

        events = await collect(orchestrator)

        assert isinstance(events[-1], FinishEvent)
        assert orchestrator.state is OrchestratorState.FINISHED


class TestToolResultContent:
    """Tests for tool_result_content."""

    def test_string_passes_through(self):
        assert tool_result_content("Error: boom") == "Error: boom"

    def test_dict_is_json(self):
        assert json.loads(tool_result_content({"a": 1})) == {"a": 1}

    def test_model_omits_none(self):
        content = tool_result_content(SearchToolOutput(text="t"))
        assert json.loads(content) == {"text": "t", "citations": []}
