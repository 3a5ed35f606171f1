"""Tool Registry: the boundary between the agent loop and executable tools."""

import inspect
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..models.core import ToolResult
from .exceptions import ToolRegistryError, NexaflowError
from .logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ToolContext:
    """Per-invocation context handed to a tool alongside its arguments."""
    workspace_id: str
    workspace_root: Path
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RegisteredTool:
    name: str
    function: Callable[[Dict[str, Any], ToolContext], Any]
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def spec(self) -> Dict[str, Any]:
        """Tool description in the shape reasoning backends expect."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """Registry of named tools callable by the agent loop and by workflow ``tool`` nodes.

    A tool is a callable ``fn(args, context)``. ``invoke`` never raises for a
    tool failure; every outcome comes back as a ``ToolResult``.
    """

    def __init__(self):
        self._tools: Dict[str, RegisteredTool] = {}
        self._lock = threading.RLock()

    def register_tool(
        self,
        name: str,
        function: Callable,
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
        replace: bool = False,
    ) -> None:
        """Register a callable as a tool.

        Raises:
            ToolRegistryError: If the name is taken or the function is invalid
        """
        if not name or not name.strip():
            raise ToolRegistryError("Tool name cannot be empty")

        name = name.strip()

        if not callable(function):
            raise ToolRegistryError(f"Tool '{name}' must be a callable function", tool_name=name)

        try:
            sig = inspect.signature(function)
        except (ValueError, TypeError) as e:
            raise ToolRegistryError(f"Cannot inspect function signature for tool '{name}': {e}", tool_name=name)
        if len(sig.parameters) < 2:
            raise ToolRegistryError(
                f"Tool '{name}' must accept (args, context)", tool_name=name, operation="register"
            )

        with self._lock:
            if name in self._tools and not replace:
                raise ToolRegistryError(f"Tool '{name}' is already registered", tool_name=name)
            self._tools[name] = RegisteredTool(
                name=name,
                function=function,
                description=description.strip() if description else "",
                input_schema=input_schema or {"type": "object", "properties": {}},
            )

        logger.info(f"Registered tool '{name}'")

    def unregister_tool(self, name: str) -> bool:
        with self._lock:
            removed = self._tools.pop(name, None) is not None
        if removed:
            logger.info(f"Unregistered tool '{name}'")
        return removed

    def get_tool(self, name: str) -> RegisteredTool:
        """Retrieve a registered tool by name.

        Raises:
            ToolRegistryError: If tool is not found
        """
        with self._lock:
            tool = self._tools.get(name)
        if tool is None:
            raise ToolRegistryError(f"Tool '{name}' is not registered", tool_name=name)
        return tool

    def tool_exists(self, name: str) -> bool:
        with self._lock:
            return name in self._tools

    def list_tools(self) -> Dict[str, str]:
        """Map of tool names to their descriptions."""
        with self._lock:
            return {name: tool.description for name, tool in self._tools.items()}

    def tool_specs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [tool.spec() for tool in self._tools.values()]

    def invoke(self, name: str, args: Optional[Dict[str, Any]], context: ToolContext) -> ToolResult:
        """Run a tool and report the outcome as a ``ToolResult``."""
        start = time.time()
        try:
            tool = self.get_tool(name)
        except ToolRegistryError as e:
            logger.warning(f"Unknown tool requested: {name}")
            return ToolResult(success=False, error=e.message, metadata={"tool": name})

        try:
            data = tool.function(dict(args or {}), context)
        except NexaflowError as e:
            logger.info(f"Tool '{name}' failed: {e.message}")
            return ToolResult(
                success=False,
                error=e.message,
                metadata={"tool": name, "duration_ms": _elapsed_ms(start)},
            )
        except Exception as e:
            logger.warning(f"Tool '{name}' raised {type(e).__name__}: {e}")
            return ToolResult(
                success=False,
                error=f"{type(e).__name__}: {e}",
                metadata={"tool": name, "duration_ms": _elapsed_ms(start)},
            )

        logger.debug(f"Tool '{name}' completed in {_elapsed_ms(start)}ms")
        return ToolResult(success=True, data=data, metadata={"tool": name, "duration_ms": _elapsed_ms(start)})


def _elapsed_ms(start: float) -> float:
    return round((time.time() - start) * 1000, 2)
