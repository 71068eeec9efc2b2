"""
Tool Registry: assembles the tools available to one request.
"""

from __future__ import annotations

from typing import Any

import httpx

from venuschat.config.logging import get_logger
from venuschat.config.settings import SearchSettings
from venuschat.tools.base import Tool, ToolAdapter
from venuschat.tools.thinking import ThinkingStepTool
from venuschat.tools.weather import WeatherTool
from venuschat.tools.web_search import WebSearchTool

logger = get_logger(__name__)


class ToolSet(ToolAdapter):
    """
    A named collection of local tools.

    Calling an unknown tool returns an error string instead of raising, the
    same way a failing tool does.
    """

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.add(tool)

    def add(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Duplicate tool name: {tool.name!r}")
        self._tools[tool.name] = tool

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def call(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        tool = self._tools.get(tool_name)
        if tool is None:
            logger.warning(f"Model requested unknown tool {tool_name!r}")
            return f"Error: Tool '{tool_name}' is not available"
        return await tool.execute(arguments)

    async def list_tools(self) -> list[dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]


def build_tools(
    web_search: bool = False,
    enable_thinking: bool = True,
    search_settings: SearchSettings | None = None,
    search_transport: httpx.AsyncBaseTransport | None = None,
) -> ToolSet:
    """
    Build the tool set for a request.

    The weather tool is always present; webSearch and thinkingStep are added
    when the request enables them.
    """
    tools: list[Tool] = [WeatherTool()]
    if web_search:
        tools.append(WebSearchTool(search_settings or SearchSettings(), transport=search_transport))
    if enable_thinking:
        tools.append(ThinkingStepTool())

    toolset = ToolSet(tools)
    logger.debug(f"Built tools: {toolset.names}")
    return toolset
