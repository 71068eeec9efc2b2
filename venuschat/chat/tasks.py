"""
Post-completion tasks.

Billing records, persistence and compression run after the stream has been
delivered. Each is its own task with its own failure handling, so one
failing never stops the others and never reaches the client.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

from venuschat.config.logging import get_logger

logger = get_logger(__name__)


class PostCompletionTasks:
    """Spawns named fire-and-forget tasks and keeps them referenced until done."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(self._guard(name, coro), name=f"post-completion:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, name: str, coro: Coroutine[Any, Any, Any]) -> Any:
        try:
            return await coro
        except Exception:
            logger.exception(f"Post-completion task '{name}' failed")
            return None

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every pending task (used at shutdown and in tests)."""
        pending = set(self._tasks)
        if not pending:
            return
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning(f"{len(still_pending)} post-completion tasks still running after {timeout}s")

    def __len__(self) -> int:
        return len(self._tasks)
