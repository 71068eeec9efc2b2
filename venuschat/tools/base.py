"""
Base classes for tools the model can call.

- Tool: one callable tool with a pydantic input model. `execute()` validates
  the arguments and never raises; failures come back as an error string the
  model can read.
- ToolAdapter: a uniform interface over a collection of tools, as consumed by
  the Streaming Orchestrator.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, ValidationError

from venuschat.config.logging import get_logger

logger = get_logger(__name__)


class Tool(ABC):
    """
    Abstract base class for a single tool.

    Subclasses set `name`, `description` and `input_model`, and implement
    `_run()`. Any exception escaping `_run()` is converted to an error string.
    """

    name: str
    description: str
    input_model: type[BaseModel]

    def definition(self) -> dict[str, Any]:
        """Tool schema in the flat {name, description, input_schema} format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_model.model_json_schema(),
        }

    async def execute(self, arguments: dict[str, Any]) -> Any:
        """
        Validate arguments and run the tool.

        Returns:
            The tool output, or a user-facing error string on failure.
        """
        try:
            params = self.input_model.model_validate(arguments)
        except ValidationError as e:
            logger.warning(f"Tool '{self.name}' received invalid input: {e}")
            return f"Error: invalid input for tool '{self.name}': {e}"

        try:
            return await self._run(params)
        except Exception as e:
            logger.warning(f"Tool '{self.name}' failed: {e}")
            return f"Error: Tool '{self.name}' failed: {e}"

    @abstractmethod
    async def _run(self, params: Any) -> Any:
        """Do the actual work with validated parameters."""


class ToolAdapter(ABC):
    """
    Abstract base class for tool adapters.

    Tool adapters provide a uniform interface for calling tools, whether they
    are local functions or remote services.
    """

    @abstractmethod
    async def call(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        """
        Call a tool with the given arguments.

        Args:
            tool_name: Name of the tool to invoke
            arguments: Tool-specific arguments

        Returns:
            Tool execution result (JSON-serializable or a pydantic model)
        """

    @abstractmethod
    async def list_tools(self) -> list[dict[str, Any]]:
        """
        List all available tools from this adapter.

        Returns:
            List of tool schemas, each with name, description and input_schema.

        Example:
            [
                {
                    "name": "weather",
                    "description": "Get the current weather for a location",
                    "input_schema": {
                        "type": "object",
                        "properties": {"location": {"type": "string"}},
                        "required": ["location"]
                    }
                }
            ]
        """
