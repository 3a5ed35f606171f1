"""Data models for the Nexaflow service."""

from .core import (
    ConversationMessage,
    StepType,
    StepProgress,
    Step,
    ToolCall,
    AgentDecision,
    ToolResult,
    AgentExecutionResult,
    NodeStatusEnum,
    ExecutionStatusEnum,
    LogEventType,
    ValidationResult,
    NodeDefinition,
    WorkflowDefinition,
    NodeState,
    WorkflowExecution,
    ExecutionLogEntry,
    WebhookAuthType,
    WebhookAuthConfig,
    WebhookRegistration,
    WebhookPayload,
    WebhookTriggerResult,
)

__all__ = [
    "ConversationMessage",
    "StepType",
    "StepProgress",
    "Step",
    "ToolCall",
    "AgentDecision",
    "ToolResult",
    "AgentExecutionResult",
    "NodeStatusEnum",
    "ExecutionStatusEnum",
    "LogEventType",
    "ValidationResult",
    "NodeDefinition",
    "WorkflowDefinition",
    "NodeState",
    "WorkflowExecution",
    "ExecutionLogEntry",
    "WebhookAuthType",
    "WebhookAuthConfig",
    "WebhookRegistration",
    "WebhookPayload",
    "WebhookTriggerResult",
]
