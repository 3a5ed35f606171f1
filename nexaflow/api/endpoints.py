"""FastAPI endpoints: agent chat stream, workflow management and webhook triggers."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..config import AppConfig
from ..core.agent_executor import AgentExecutor
from ..core.exceptions import (
    AuthorizationError,
    ConflictError,
    InternalError,
    NexaflowError,
    ValidationError,
    create_error_response,
    http_status_for_error,
)
from ..core.graph_runner import WorkflowGraphRunner
from ..core.identity import IdentityResolver
from ..core.logging import get_logger
from ..core.reasoning import ReasoningBackend
from ..core.step_stream import StepStream
from ..core.tool_registry import ToolRegistry
from ..core.trigger_manager import TriggerManager, normalize_webhook_payload
from ..core.workflow_store import WorkflowStore
from ..models.core import (
    ConversationMessage,
    ExecutionLogEntry,
    NodeDefinition,
    WebhookAuthConfig,
    WorkflowDefinition,
    WorkflowExecution,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["nexaflow"])

# Global instances (initialized by the application factory)
_config: Optional[AppConfig] = None
_tool_registry: Optional[ToolRegistry] = None
_workflow_store: Optional[WorkflowStore] = None
_graph_runner: Optional[WorkflowGraphRunner] = None
_trigger_manager: Optional[TriggerManager] = None
_identity: Optional[IdentityResolver] = None
_reasoning_backend_factory: Optional[Callable[[], ReasoningBackend]] = None


def init_dependencies(
    config: AppConfig,
    tool_registry: ToolRegistry,
    workflow_store: WorkflowStore,
    graph_runner: WorkflowGraphRunner,
    trigger_manager: TriggerManager,
    identity: IdentityResolver,
    reasoning_backend_factory: Callable[[], ReasoningBackend],
):
    """Initialize the global dependencies."""
    global _config, _tool_registry, _workflow_store, _graph_runner
    global _trigger_manager, _identity, _reasoning_backend_factory
    _config = config
    _tool_registry = tool_registry
    _workflow_store = workflow_store
    _graph_runner = graph_runner
    _trigger_manager = trigger_manager
    _identity = identity
    _reasoning_backend_factory = reasoning_backend_factory


def _require(component, name: str):
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{name} not initialized"
        )
    return component


def get_app_config() -> AppConfig:
    return _require(_config, "Configuration")


def get_tool_registry() -> ToolRegistry:
    return _require(_tool_registry, "Tool registry")


def get_workflow_store() -> WorkflowStore:
    return _require(_workflow_store, "Workflow store")


def get_graph_runner() -> WorkflowGraphRunner:
    return _require(_graph_runner, "Graph runner")


def get_trigger_manager() -> TriggerManager:
    return _require(_trigger_manager, "Trigger manager")


def get_identity() -> IdentityResolver:
    return _require(_identity, "Identity resolver")


def get_reasoning_backend() -> ReasoningBackend:
    return _require(_reasoning_backend_factory, "Reasoning backend")()


def get_current_user(
    authorization: Optional[str] = Header(None),
    identity: IdentityResolver = Depends(get_identity),
) -> str:
    """Resolve the bearer token to a user id, or answer 401."""
    try:
        return identity.require_user(authorization)
    except NexaflowError as e:
        raise _http_error(e)


def _http_error(error: NexaflowError) -> HTTPException:
    return HTTPException(status_code=http_status_for_error(error), detail=create_error_response(error))


# Request/Response models

class AgentRequest(BaseModel):
    """Request model for the agent chat stream."""
    message: Optional[str] = Field(None, description="User message")
    projectId: Optional[str] = Field(None, description="Workspace the agent operates in")
    conversationHistory: List[ConversationMessage] = Field(default_factory=list, description="Prior turns")


class ExecuteWorkflowRequest(BaseModel):
    workflowId: Optional[str] = Field(None, description="ID of the workflow to execute")
    triggerData: Dict[str, Any] = Field(default_factory=dict, description="Input for the execution")


class ExecuteWorkflowResponse(BaseModel):
    success: bool
    executionId: str
    message: str


class CreateWorkflowRequest(BaseModel):
    name: str
    description: str = ""
    is_active: bool = True
    nodes: List[NodeDefinition]


class CreateWorkflowResponse(BaseModel):
    success: bool
    workflow: WorkflowDefinition
    validation_warnings: List[str] = Field(default_factory=list)


class RegisterWebhookRequest(BaseModel):
    endpoint: str
    auth: Optional[WebhookAuthConfig] = None


class CancelExecutionResponse(BaseModel):
    success: bool
    executionId: str
    message: str


def _sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


# Agent

@router.post(
    "/agent",
    summary="Run the agent and stream its steps",
    description="Server-sent events: one event per step, then a final 'done' event"
)
async def agent_chat(
    request: AgentRequest,
    config: AppConfig = Depends(get_app_config),
    tool_registry: ToolRegistry = Depends(get_tool_registry),
    backend: ReasoningBackend = Depends(get_reasoning_backend),
) -> StreamingResponse:
    if not request.message or not request.message.strip():
        raise _http_error(ValidationError("Message is required"))

    workspace_id = request.projectId or "workspace"
    executor = AgentExecutor(
        workspace_id=workspace_id,
        reasoning_backend=backend,
        tool_registry=tool_registry,
        max_iterations=config.agent_max_iterations,
        workspace_root=config.workspace_root,
    )
    for message in request.conversationHistory:
        executor.add_to_history(message)

    logger.info(f"Agent request for workspace '{workspace_id}'")

    async def event_stream():
        stream = StepStream(maxsize=config.agent_stream_queue_size)
        loop = asyncio.get_running_loop()
        task = loop.run_in_executor(None, executor.execute, request.message, stream)
        try:
            async for step in stream.aiter(delay=config.agent_step_delay):
                yield _sse(step.to_event())
            result = await task
            yield _sse({
                "type": "done",
                "success": result.success,
                "response": result.response,
                "error": result.error,
            })
        except Exception as e:
            logger.error(f"Agent stream failed: {e}", exc_info=True)
            stream.cancel()
            yield _sse({"type": "error", "error": str(e)})
        finally:
            if not stream.closed:
                # consumer went away; stop the producer at its next step
                stream.cancel()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# Workflows

@router.post(
    "/workflows/execute",
    response_model=ExecuteWorkflowResponse,
    summary="Start a workflow execution"
)
async def execute_workflow(
    request: ExecuteWorkflowRequest,
    user_id: str = Depends(get_current_user),
    runner: WorkflowGraphRunner = Depends(get_graph_runner),
) -> ExecuteWorkflowResponse:
    if not request.workflowId:
        raise _http_error(ValidationError("Workflow ID is required"))

    try:
        execution_id = runner.execute_workflow(
            request.workflowId, request.triggerData, user_id, triggered_by="manual"
        )
    except NexaflowError as e:
        logger.warning(f"Workflow execution rejected: {e.message}")
        raise _http_error(e)

    return ExecuteWorkflowResponse(
        success=True,
        executionId=execution_id,
        message="Workflow execution started",
    )


@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow"
)
async def create_workflow(
    request: CreateWorkflowRequest,
    user_id: str = Depends(get_current_user),
    store: WorkflowStore = Depends(get_workflow_store),
) -> CreateWorkflowResponse:
    try:
        definition = WorkflowDefinition(
            name=request.name,
            description=request.description,
            is_active=request.is_active,
            nodes=request.nodes,
        )
    except ValueError as e:
        raise _http_error(ValidationError(f"Invalid workflow: {e}"))

    try:
        validation = store.validate_workflow(definition)
        workflow = store.create_workflow(definition, owner_id=user_id)
    except NexaflowError as e:
        raise _http_error(e)

    return CreateWorkflowResponse(success=True, workflow=workflow, validation_warnings=validation.warnings)


@router.get(
    "/workflows",
    response_model=List[WorkflowDefinition],
    summary="List the caller's workflows"
)
async def list_workflows(
    user_id: str = Depends(get_current_user),
    store: WorkflowStore = Depends(get_workflow_store),
) -> List[WorkflowDefinition]:
    return store.list_workflows(owner_id=user_id)


def _owned_workflow(store: WorkflowStore, workflow_id: str, user_id: str) -> WorkflowDefinition:
    workflow = store.require_workflow(workflow_id)
    if workflow.owner_id != user_id:
        raise AuthorizationError(user_id=user_id)
    return workflow


def _owned_execution(
    runner: WorkflowGraphRunner, store: WorkflowStore, execution_id: str, user_id: str
) -> WorkflowExecution:
    execution = runner.execution_store.require_execution(execution_id)
    _owned_workflow(store, execution.workflow_id, user_id)
    return execution


@router.get(
    "/workflows/executions/{execution_id}",
    response_model=WorkflowExecution,
    summary="Get execution status"
)
async def get_execution(
    execution_id: str,
    user_id: str = Depends(get_current_user),
    runner: WorkflowGraphRunner = Depends(get_graph_runner),
    store: WorkflowStore = Depends(get_workflow_store),
) -> WorkflowExecution:
    try:
        return _owned_execution(runner, store, execution_id, user_id)
    except NexaflowError as e:
        raise _http_error(e)


@router.get(
    "/workflows/executions/{execution_id}/logs",
    response_model=List[ExecutionLogEntry],
    summary="Get execution logs"
)
async def get_execution_logs(
    execution_id: str,
    user_id: str = Depends(get_current_user),
    runner: WorkflowGraphRunner = Depends(get_graph_runner),
    store: WorkflowStore = Depends(get_workflow_store),
) -> List[ExecutionLogEntry]:
    try:
        _owned_execution(runner, store, execution_id, user_id)
        return runner.get_execution_logs(execution_id)
    except NexaflowError as e:
        raise _http_error(e)


@router.post(
    "/workflows/executions/{execution_id}/cancel",
    response_model=CancelExecutionResponse,
    summary="Cancel a running execution"
)
async def cancel_execution(
    execution_id: str,
    user_id: str = Depends(get_current_user),
    runner: WorkflowGraphRunner = Depends(get_graph_runner),
    store: WorkflowStore = Depends(get_workflow_store),
) -> CancelExecutionResponse:
    try:
        _owned_execution(runner, store, execution_id, user_id)
        if not runner.cancel_execution(execution_id):
            raise ConflictError(f"Execution '{execution_id}' is not running")
    except NexaflowError as e:
        raise _http_error(e)

    return CancelExecutionResponse(success=True, executionId=execution_id, message="Cancellation requested")


@router.get(
    "/workflows/{workflow_id}",
    response_model=WorkflowDefinition,
    summary="Get a workflow"
)
async def get_workflow(
    workflow_id: str,
    user_id: str = Depends(get_current_user),
    store: WorkflowStore = Depends(get_workflow_store),
) -> WorkflowDefinition:
    try:
        return _owned_workflow(store, workflow_id, user_id)
    except NexaflowError as e:
        raise _http_error(e)


@router.post(
    "/workflows/{workflow_id}/webhooks",
    status_code=status.HTTP_201_CREATED,
    summary="Register a webhook endpoint for a workflow"
)
async def register_webhook(
    workflow_id: str,
    request: RegisterWebhookRequest,
    user_id: str = Depends(get_current_user),
    store: WorkflowStore = Depends(get_workflow_store),
    trigger_manager: TriggerManager = Depends(get_trigger_manager),
) -> Dict[str, Any]:
    try:
        _owned_workflow(store, workflow_id, user_id)
        registration = trigger_manager.register_webhook(request.endpoint, workflow_id, request.auth)
    except NexaflowError as e:
        raise _http_error(e)
    except ValueError as e:
        raise _http_error(ValidationError(str(e)))

    return {
        "success": True,
        "endpoint": registration.endpoint,
        "workflowId": registration.workflow_id,
        "url": f"{router.prefix}/webhooks/{registration.endpoint}",
    }


# Webhooks

@router.api_route(
    "/webhooks/{endpoint}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    summary="Trigger the workflow registered for an endpoint"
)
async def handle_webhook(
    endpoint: str,
    request: Request,
    trigger_manager: TriggerManager = Depends(get_trigger_manager),
) -> JSONResponse:
    try:
        payload = normalize_webhook_payload(
            request.method,
            request.headers.items(),
            request.query_params.multi_items(),
            await request.body(),
        )
        result = trigger_manager.handle_webhook_trigger(endpoint, payload)
    except Exception as e:
        logger.error(f"Webhook handling failed for '{endpoint}': {e}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": InternalError().message},
        )

    if not result.success:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": result.error},
        )

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "success": True,
            "executionId": result.execution_id,
            "message": "Workflow triggered successfully",
        },
    )
