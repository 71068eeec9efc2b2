"""Unit tests for post-completion task handling."""

import asyncio
from unittest.mock import patch

import pytest

from venuschat.chat.tasks import PostCompletionTasks


class TestPostCompletionTasks:

    @pytest.mark.asyncio
    async def test_runs_spawned_work(self):
        tasks = PostCompletionTasks()
        done = []

        async def work():
            done.append("billing")

        tasks.spawn("billing", work())
        await tasks.drain()

        assert done == ["billing"]
        assert len(tasks) == 0

    @pytest.mark.asyncio
    async def test_failure_is_logged_and_isolated(self):
        tasks = PostCompletionTasks()
        done = []

        async def failing():
            raise RuntimeError("db down")

        async def succeeding():
            await asyncio.sleep(0)
            done.append("persistence")

        with patch("venuschat.chat.tasks.logger") as mock_logger:
            failed = tasks.spawn("billing", failing())
            tasks.spawn("persistence", succeeding())
            await tasks.drain()

        assert done == ["persistence"]
        assert failed.result() is None
        mock_logger.exception.assert_called_once()
        assert "billing" in mock_logger.exception.call_args.args[0]

    @pytest.mark.asyncio
    async def test_tasks_are_named(self):
        tasks = PostCompletionTasks()

        async def work():
            return 1

        task = tasks.spawn("compression", work())
        assert task.get_name() == "post-completion:compression"
        await tasks.drain()

    @pytest.mark.asyncio
    async def test_drain_timeout(self):
        tasks = PostCompletionTasks()
        release = asyncio.Event()

        async def slow():
            await release.wait()

        tasks.spawn("slow", slow())
        with patch("venuschat.chat.tasks.logger") as mock_logger:
            await tasks.drain(timeout=0.01)

        assert len(tasks) == 1
        mock_logger.warning.assert_called_once()
        release.set()
        await tasks.drain()

    @pytest.mark.asyncio
    async def test_drain_with_nothing_pending(self):
        await PostCompletionTasks().drain()
