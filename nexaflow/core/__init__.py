"""Core components: agent loop, graph runner, triggers and their supporting services."""

from .exceptions import (
    NexaflowError,
    ValidationError,
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ConflictError,
    ExecutionError,
    NodeExecutionError,
    NodeTimeoutError,
    ToolExecutionError,
    ReasoningBackendError,
    StorageError,
    ToolRegistryError,
    StreamClosedError,
    InternalError,
)
from .logging import setup_logging, get_logger
from .step_stream import StepStream
from .tool_registry import ToolContext, ToolRegistry
from .reasoning import (
    ReasoningBackend,
    AnthropicReasoningBackend,
    ScriptedReasoningBackend,
)
from .agent_executor import AgentExecutor
from .workflow_store import WorkflowStore
from .execution_store import ExecutionStore
from .graph_runner import WorkflowGraphRunner
from .webhook_registry import WebhookRegistry
from .trigger_manager import TriggerManager
from .identity import IdentityResolver

__all__ = [
    "NexaflowError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "ExecutionError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "ToolExecutionError",
    "ReasoningBackendError",
    "StorageError",
    "ToolRegistryError",
    "StreamClosedError",
    "InternalError",
    "setup_logging",
    "get_logger",
    "StepStream",
    "ToolContext",
    "ToolRegistry",
    "ReasoningBackend",
    "AnthropicReasoningBackend",
    "ScriptedReasoningBackend",
    "AgentExecutor",
    "WorkflowStore",
    "ExecutionStore",
    "WorkflowGraphRunner",
    "WebhookRegistry",
    "TriggerManager",
    "IdentityResolver",
]
