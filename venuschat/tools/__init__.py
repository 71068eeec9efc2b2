"""Tools the model can call during the step loop."""

from venuschat.tools.base import Tool, ToolAdapter
from venuschat.tools.registry import ToolSet, build_tools
from venuschat.tools.web_search import SearchToolOutput

__all__ = ["Tool", "ToolAdapter", "ToolSet", "build_tools", "SearchToolOutput"]
