"""Built-in node kinds for workflow graphs.

A handler is a callable ``handler(node, context) -> output``. It raises to
fail the node; the returned output must be JSON-serializable.
"""

import copy
import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from ..models.core import NodeDefinition
from .exceptions import NodeExecutionError
from .logging import get_logger
from .tool_registry import ToolContext, ToolRegistry

logger = get_logger(__name__)

NodeHandler = Callable[[NodeDefinition, "NodeContext"], Any]


@dataclass(frozen=True)
class NodeContext:
    """Read-only inputs for one node run.

    ``upstream`` maps dependency node ids to their recorded outputs and
    ``data`` combines them with the trigger payload under ``trigger``.
    """
    execution_id: str
    workflow_id: str
    trigger_data: Mapping[str, Any]
    upstream: Mapping[str, Any]
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def data(self) -> Mapping[str, Any]:
        return MappingProxyType({"trigger": self.trigger_data, **self.upstream})

    def resolve(self, path: Optional[str]) -> Any:
        """Resolve a dotted path such as ``fetch.body.items`` or ``trigger.body.id``."""
        if not path:
            return None
        current: Any = self.data
        for key in str(path).split("."):
            if isinstance(current, Mapping):
                current = current.get(key)
            elif isinstance(current, (list, tuple)) and key.isdigit() and int(key) < len(current):
                current = current[int(key)]
            else:
                return None
            if current is None:
                return None
        return current


def freeze(value: Any) -> Any:
    """Deep-copy ``value`` into a structure whose mappings cannot be mutated."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return copy.deepcopy(value)


def thaw(value: Any) -> Any:
    """Turn a frozen structure back into plain dicts and lists."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    return value


def api_call_handler(node: NodeDefinition, context: NodeContext) -> Dict[str, Any]:
    config = node.config
    url = config.get("url")
    if not url:
        raise NodeExecutionError("api_call node requires 'url'", node_id=node.id)

    method = str(config.get("method", "GET")).upper()
    headers = {"Content-Type": "application/json", **(config.get("headers") or {})}
    body = config.get("body")
    if body is None and config.get("body_from"):
        body = thaw(context.resolve(config["body_from"]))
    timeout = config.get("timeout", node.timeout or 30)

    try:
        response = requests.request(method, url, headers=headers, json=body, timeout=timeout)
    except requests.RequestException as e:
        raise NodeExecutionError(f"API call failed: {e}", node_id=node.id)

    try:
        data = response.json()
    except ValueError:
        data = response.text

    if response.status_code >= 400:
        raise NodeExecutionError(
            f"API call to {url} returned status {response.status_code}",
            node_id=node.id,
            details={"status_code": response.status_code},
        )

    logger.debug(f"API call to {url} completed with status {response.status_code}")
    return {"status": response.status_code, "data": data}


def delay_handler(node: NodeDefinition, context: NodeContext) -> Dict[str, Any]:
    """Wait ``duration`` milliseconds; returns early if the execution is cancelled."""
    duration = node.config.get("duration", 1000)
    try:
        duration = float(duration)
    except (TypeError, ValueError):
        raise NodeExecutionError(f"Invalid delay duration: {duration!r}", node_id=node.id)
    if duration < 0:
        raise NodeExecutionError("Delay duration cannot be negative", node_id=node.id)

    interrupted = context.cancel_event.wait(duration / 1000.0)
    return {"delayed": duration, "interrupted": interrupted}


def transform_handler(node: NodeDefinition, context: NodeContext) -> Any:
    """Project fields out of ``source`` using a ``mapping`` of output key to dotted path."""
    source = node.config.get("source")
    mapping = node.config.get("mapping")

    if mapping:
        result = {}
        for key, path in mapping.items():
            full_path = f"{source}.{path}" if source else path
            result[key] = thaw(context.resolve(full_path))
        return result

    if source:
        return thaw(context.resolve(source))
    return thaw(context.upstream)


_OPERATORS = {
    "equals": lambda a, b: a == b,
    "not_equals": lambda a, b: a != b,
    "greater_than": lambda a, b: float(a) > float(b),
    "less_than": lambda a, b: float(a) < float(b),
    "exists": lambda a, b: a is not None,
}


def conditional_handler(node: NodeDefinition, context: NodeContext) -> Dict[str, Any]:
    """Evaluate ``{field, operator, value}``.

    With ``require: true`` a false condition fails the node, which skips
    everything downstream of it.
    """
    condition = node.config.get("condition") or {}
    operator = condition.get("operator", "exists")
    if operator not in _OPERATORS:
        raise NodeExecutionError(f"Unknown operator '{operator}'", node_id=node.id)

    actual = thaw(context.resolve(condition.get("field")))
    try:
        passed = bool(_OPERATORS[operator](actual, condition.get("value")))
    except (TypeError, ValueError):
        passed = False

    if node.config.get("require") and not passed:
        raise NodeExecutionError(
            f"Condition {condition.get('field')} {operator} {condition.get('value')!r} not met",
            node_id=node.id,
        )
    return {"condition": passed, "field": condition.get("field"), "operator": operator}


def email_handler(node: NodeDefinition, context: NodeContext) -> Dict[str, Any]:
    to = node.config.get("to")
    subject = node.config.get("subject", "")
    if not to:
        raise NodeExecutionError("email node requires 'to'", node_id=node.id)
    # No mail transport is configured; the send is recorded only.
    logger.info(f"Email step executed for execution {context.execution_id}: to={to} subject={subject!r}")
    return {"sent": True, "to": to, "subject": subject}


def custom_handler(node: NodeDefinition, context: NodeContext) -> Dict[str, Any]:
    inputs = node.config.get("inputs", {})
    logger.info(f"Custom step {node.id} executed")
    return {"executed": True, "inputs": json.loads(json.dumps(inputs, default=str))}


def make_tool_handler(tool_registry: ToolRegistry, workspace_root: Path) -> NodeHandler:
    """Handler that runs a registered tool; the tool's failure fails the node."""

    def tool_handler(node: NodeDefinition, context: NodeContext) -> Any:
        name = node.config.get("tool")
        if not name:
            raise NodeExecutionError("tool node requires 'tool'", node_id=node.id)
        args = dict(node.config.get("args") or {})
        for key, path in (node.config.get("args_from") or {}).items():
            args[key] = thaw(context.resolve(path))

        tool_context = ToolContext(
            workspace_id=node.config.get("workspace_id", context.workflow_id),
            workspace_root=workspace_root,
            extra={"execution_id": context.execution_id},
        )
        result = tool_registry.invoke(name, args, tool_context)
        if not result.success:
            raise NodeExecutionError(f"Tool '{name}' failed: {result.error}", node_id=node.id)
        return result.data

    return tool_handler


def default_node_handlers(
    tool_registry: Optional[ToolRegistry] = None,
    workspace_root: Optional[Path] = None,
) -> Dict[str, NodeHandler]:
    handlers: Dict[str, NodeHandler] = {
        "api_call": api_call_handler,
        "webhook": api_call_handler,
        "delay": delay_handler,
        "transform": transform_handler,
        "conditional": conditional_handler,
        "email": email_handler,
        "custom": custom_handler,
    }
    if tool_registry is not None:
        handlers["tool"] = make_tool_handler(tool_registry, Path(workspace_root or "./generated-projects"))
    return handlers
