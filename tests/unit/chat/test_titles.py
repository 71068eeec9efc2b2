"""Unit tests for conversation title generation."""

import pytest

from fakes import FakeAdapter
from venuschat.chat.messages import TextPart, serialize_parts
from venuschat.chat.titles import TITLE_SYSTEM_PROMPT, TitleGenerator, should_generate_title
from venuschat.llm.models import LLMError


def stored(text: str) -> str:
    return serialize_parts([TextPart(text=text)])


class TestShouldGenerateTitle:

    @pytest.mark.parametrize("count,expected", [(0, False), (1, False), (2, True), (3, False), (4, False)])
    def test_only_after_first_exchange(self, count, expected):
        assert should_generate_title(count) is expected


class TestTitleGenerator:

    @pytest.mark.asyncio
    async def test_strips_quotes_and_whitespace(self):
        adapter = FakeAdapter(generate_text='  "React Hooks Usage Guide"\n')

        title = await TitleGenerator(adapter).generate([("user", stored("How do hooks work?"))])

        assert title == "React Hooks Usage Guide"

    @pytest.mark.asyncio
    async def test_sends_transcript_and_system_prompt(self):
        adapter = FakeAdapter(generate_text="Paris Weather")

        await TitleGenerator(adapter).generate([
            ("user", stored("Weather in Paris?")),
            ("assistant", stored("Sunny and 21°C.")),
        ])

        call = adapter.generate_calls[0]
        assert call["system"] == TITLE_SYSTEM_PROMPT
        assert "User: Weather in Paris?\n\nAssistant: Sunny and 21°C." in call["prompt"]

    @pytest.mark.asyncio
    async def test_transcript_is_capped(self):
        adapter = FakeAdapter(generate_text="Long")

        await TitleGenerator(adapter).generate([("user", stored("y" * 5000))])

        assert adapter.generate_calls[0]["prompt"].count("y") < 2100

    @pytest.mark.asyncio
    async def test_failure_returns_default(self):
        adapter = FakeAdapter(fail_with=LLMError("down"))

        assert await TitleGenerator(adapter).generate([("user", stored("hi"))]) == "New Chat"

    @pytest.mark.asyncio
    async def test_empty_output_returns_default(self):
        adapter = FakeAdapter(generate_text='""')

        assert await TitleGenerator(adapter).generate([("user", stored("hi"))]) == "New Chat"

    @pytest.mark.asyncio
    async def test_no_messages_returns_default_without_calling_model(self):
        adapter = FakeAdapter()

        assert await TitleGenerator(adapter).generate([]) == "New Chat"
        assert adapter.generate_calls == []
