"""Core Pydantic models for the agent executor and the workflow engine."""

import re
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


_NODE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')
_ENDPOINT_PATTERN = re.compile(r'^[a-zA-Z0-9_.-]+$')


def utcnow() -> datetime:
    return datetime.utcnow()


# ---------------------------------------------------------------------------
# Agent models
# ---------------------------------------------------------------------------

class ConversationMessage(BaseModel):
    """One turn of a conversation."""
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"] = Field(..., description="Speaker of the message")
    content: str = Field(..., description="Message text")


class StepType(str, Enum):
    """Kinds of progress records emitted by the agent loop."""
    THOUGHT = "thought"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    FINAL = "final"
    ERROR = "error"


class StepProgress(BaseModel):
    """Iteration index against the iteration cap."""
    model_config = ConfigDict(frozen=True)

    current: int
    total: int
    percentage: int

    @classmethod
    def of(cls, current: int, total: int) -> 'StepProgress':
        percentage = round(current / total * 100) if total else 100
        return cls(current=current, total=total, percentage=percentage)


class Step(BaseModel):
    """An immutable record of one agent progress event."""
    model_config = ConfigDict(frozen=True)

    type: StepType = Field(..., description="Kind of step")
    content: str = Field(..., description="Human-readable description")
    tool_name: Optional[str] = Field(None, description="Tool involved, if any")
    tool_args: Optional[Dict[str, Any]] = Field(None, description="Arguments passed to the tool")
    tool_result: Optional[Any] = Field(None, description="Data returned by the tool")
    timestamp: datetime = Field(default_factory=utcnow, description="When the step was produced")
    progress: Optional[StepProgress] = Field(None, description="Iteration progress")

    def to_event(self) -> Dict[str, Any]:
        """JSON-ready representation used for streaming."""
        return self.model_dump(mode="json", exclude_none=True)


class ToolCall(BaseModel):
    """A tool invocation requested by the reasoning backend."""
    id: Optional[str] = Field(None, description="Backend-assigned call id")
    name: str = Field(..., description="Tool name")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Tool arguments")


class AgentDecision(BaseModel):
    """The next move chosen by the reasoning backend.

    With one or more tool calls the decision is a tool round; otherwise
    ``response`` is the final answer.
    """
    thought: Optional[str] = Field(None, description="Reasoning text accompanying tool calls")
    tool_calls: List[ToolCall] = Field(default_factory=list, description="Requested tool calls")
    response: Optional[str] = Field(None, description="Final answer when no tools are requested")

    @property
    def is_final(self) -> bool:
        return not self.tool_calls


class ToolResult(BaseModel):
    """Uniform outcome of a tool invocation."""
    success: bool = Field(..., description="Whether the tool completed")
    data: Optional[Any] = Field(None, description="Tool output on success")
    error: Optional[str] = Field(None, description="Failure description")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Timing and other details")


class AgentExecutionResult(BaseModel):
    """Outcome of one ``AgentExecutor.execute`` call."""
    success: bool
    steps: List[Step] = Field(default_factory=list)
    response: Optional[str] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Workflow models
# ---------------------------------------------------------------------------

class NodeStatusEnum(str, Enum):
    """Lifecycle states of a workflow node."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatusEnum.SUCCEEDED, NodeStatusEnum.FAILED, NodeStatusEnum.SKIPPED)


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatusEnum.SUCCEEDED, ExecutionStatusEnum.FAILED,
                        ExecutionStatusEnum.CANCELLED)


class LogEventType(str, Enum):
    """Enumeration of execution log event types."""
    WORKFLOW_START = "workflow_start"
    NODE_START = "node_start"
    NODE_RETRY = "node_retry"
    NODE_COMPLETE = "node_complete"
    NODE_ERROR = "node_error"
    NODE_SKIPPED = "node_skipped"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    WORKFLOW_COMPLETE = "workflow_complete"


class ValidationResult(BaseModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., description="Whether the workflow is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class NodeDefinition(BaseModel):
    """Definition of a workflow node."""
    id: str = Field(..., description="Unique identifier for the node")
    kind: str = Field(..., description="Handler kind that executes the node")
    depends_on: List[str] = Field(default_factory=list, description="Ids of prerequisite nodes")
    config: Dict[str, Any] = Field(default_factory=dict, description="Handler configuration")
    timeout: Optional[float] = Field(None, description="Timeout in seconds for node execution")
    retries: int = Field(0, description="Extra attempts after a failure")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        if not _NODE_ID_PATTERN.match(id_value.strip()):
            raise ValueError("Node ID must contain only alphanumeric characters, underscores, and hyphens")
        return id_value.strip()

    @field_validator('kind')
    @classmethod
    def validate_kind(cls, kind):
        if not kind or not kind.strip():
            raise ValueError("Node kind cannot be empty")
        return kind.strip().lower()

    @field_validator('depends_on')
    @classmethod
    def dedupe_dependencies(cls, depends_on):
        """A repeated dependency is the same edge; keep the first occurrence."""
        return list(dict.fromkeys(dep.strip() for dep in depends_on))

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, timeout):
        if timeout is not None and timeout <= 0:
            raise ValueError("Timeout must be positive")
        return timeout

    @field_validator('retries')
    @classmethod
    def validate_retries(cls, retries):
        if retries < 0:
            raise ValueError("Retries cannot be negative")
        return retries

    @model_validator(mode='after')
    def validate_no_self_dependency(self):
        if self.id in self.depends_on:
            raise ValueError(f"Node '{self.id}' cannot depend on itself")
        return self


class WorkflowDefinition(BaseModel):
    """A workflow: a directed acyclic graph of nodes linked by ``depends_on``."""
    id: Optional[str] = Field(None, description="Workflow id, assigned on creation")
    owner_id: Optional[str] = Field(None, description="Owning user id, assigned on creation")
    name: str = Field(..., description="Name of the workflow")
    description: str = Field("", description="Description of the workflow")
    is_active: bool = Field(True, description="Inactive workflows cannot be executed")
    nodes: List[NodeDefinition] = Field(..., description="Nodes in the workflow")

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @model_validator(mode='after')
    def validate_graph_structure(self):
        """Check references and acyclicity."""
        if not self.nodes:
            raise ValueError("Workflow must contain at least one node")

        node_ids = {node.id for node in self.nodes}
        for node in self.nodes:
            for dep in node.depends_on:
                if dep not in node_ids:
                    raise ValueError(f"Node '{node.id}' depends on unknown node '{dep}'")

        if self.topological_order() is None:
            raise ValueError("Workflow dependencies contain a cycle")

        return self

    def node(self, node_id: str) -> NodeDefinition:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(node_id)

    def dependents(self) -> Dict[str, List[str]]:
        """Map each node id to the ids of the nodes that depend on it directly."""
        result: Dict[str, List[str]] = {node.id: [] for node in self.nodes}
        for node in self.nodes:
            for dep in node.depends_on:
                result.setdefault(dep, []).append(node.id)
        return result

    def topological_order(self) -> Optional[List[str]]:
        """Kahn's algorithm. Returns None when the graph has a cycle."""
        indegree = {node.id: len(set(node.depends_on)) for node in self.nodes}
        children = self.dependents()
        queue = deque(node.id for node in self.nodes if indegree[node.id] == 0)
        order = []

        while queue:
            current = queue.popleft()
            order.append(current)
            for child in children.get(current, []):
                indegree[child] -= 1
                if indegree[child] == 0:
                    queue.append(child)

        if len(order) != len(indegree):
            return None
        return order

    def transitive_dependents(self, node_id: str) -> List[str]:
        """All nodes that depend on ``node_id`` directly or indirectly."""
        children = self.dependents()
        seen = []
        stack = list(children.get(node_id, []))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.append(current)
            stack.extend(children.get(current, []))
        return seen


class NodeState(BaseModel):
    """Status of one node within one execution."""
    status: NodeStatusEnum = NodeStatusEnum.PENDING
    output: Optional[Any] = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WorkflowExecution(BaseModel):
    """Authoritative status record of one workflow execution."""
    id: str = Field(..., description="Execution id (uuid4)")
    workflow_id: str = Field(..., description="Workflow being executed")
    triggered_by: str = Field("manual", description="Trigger source: manual, webhook, ...")
    trigger_data: Dict[str, Any] = Field(default_factory=dict, description="Input to the run")
    node_statuses: Dict[str, NodeState] = Field(default_factory=dict, description="Per-node state")
    status: ExecutionStatusEnum = Field(ExecutionStatusEnum.PENDING, description="Overall status")
    error: Optional[str] = Field(None, description="Failure summary")
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class ExecutionLogEntry(BaseModel):
    """Log entry for workflow execution events."""
    timestamp: datetime = Field(default_factory=utcnow, description="Timestamp of the log entry")
    execution_id: str = Field(..., description="ID of the execution")
    node_id: Optional[str] = Field(None, description="Node that generated the entry")
    event_type: LogEventType = Field(..., description="Type of event")
    message: str = Field(..., description="Log message")


# ---------------------------------------------------------------------------
# Webhook models
# ---------------------------------------------------------------------------

class WebhookAuthType(str, Enum):
    BEARER = "bearer"
    API_KEY = "api_key"
    SIGNATURE = "signature"


class WebhookAuthConfig(BaseModel):
    """Optional authentication required from webhook callers."""
    type: WebhookAuthType
    secret: str = Field(..., min_length=1)
    header_name: Optional[str] = Field(None, description="Header carrying the credential (bearer and api_key)")


class WebhookRegistration(BaseModel):
    """Mapping of a public endpoint name to exactly one workflow."""
    endpoint: str
    workflow_id: str
    auth: Optional[WebhookAuthConfig] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator('endpoint')
    @classmethod
    def validate_endpoint(cls, endpoint):
        if not endpoint or not _ENDPOINT_PATTERN.match(endpoint):
            raise ValueError("Endpoint must contain only alphanumeric characters, dots, underscores, and hyphens")
        return endpoint


class WebhookPayload(BaseModel):
    """A normalized inbound webhook request."""
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    raw_body: bytes = Field(b"", exclude=True)


class WebhookTriggerResult(BaseModel):
    success: bool
    execution_id: Optional[str] = None
    error: Optional[str] = None
