"""Application factory: wires storage, engines and the HTTP API into a FastAPI app."""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api.endpoints import init_dependencies, router
from .config import AppConfig, get_config, validate_config
from .core.error_recovery import health_checker
from .core.execution_store import ExecutionStore
from .core.graph_runner import WorkflowGraphRunner
from .core.identity import IdentityResolver
from .core.logging import get_logger, setup_logging
from .core.middleware import RequestContextMiddleware
from .core.node_handlers import default_node_handlers
from .core.reasoning import AnthropicReasoningBackend, ReasoningBackend
from .core.tool_registry import ToolRegistry
from .core.trigger_manager import TriggerManager
from .core.webhook_registry import WebhookRegistry
from .core.workflow_store import WorkflowStore
from .storage.database import configure_database, create_tables, session_scope
from .storage.migrations import run_migrations
from .tools import register_command_tools, register_workspace_tools

logger = get_logger(__name__)

ReasoningBackendFactory = Callable[[], ReasoningBackend]


@dataclass
class ApplicationState:
    """The components behind one app instance."""
    config: AppConfig
    tool_registry: ToolRegistry
    workflow_store: WorkflowStore
    execution_store: ExecutionStore
    graph_runner: WorkflowGraphRunner
    webhook_registry: WebhookRegistry
    trigger_manager: TriggerManager
    identity: IdentityResolver
    reasoning_backend_factory: ReasoningBackendFactory


def anthropic_backend_factory(config: AppConfig) -> ReasoningBackendFactory:
    # one backend per agent request
    return lambda: AnthropicReasoningBackend(
        api_key=config.anthropic_api_key,
        model=config.anthropic_model,
        max_tokens=config.anthropic_max_tokens,
        temperature=config.anthropic_temperature,
    )


def initialize_database(config: AppConfig) -> None:
    configure_database(config.database_url, echo=config.database_echo)
    create_tables()
    try:
        run_migrations()
    except Exception as e:
        # indexes only; the service works without them
        logger.warning(f"Database migrations failed: {e}")


def build_components(
    config: AppConfig,
    reasoning_backend_factory: Optional[ReasoningBackendFactory] = None,
) -> ApplicationState:
    """Tool registry, stores, graph runner, webhook routing and identity."""
    tool_registry = ToolRegistry()
    register_workspace_tools(tool_registry)
    register_command_tools(tool_registry)

    node_handlers = default_node_handlers(tool_registry, Path(config.workspace_root))
    workflow_store = WorkflowStore(known_kinds=node_handlers.keys())
    execution_store = ExecutionStore()
    graph_runner = WorkflowGraphRunner(
        workflow_store=workflow_store,
        execution_store=execution_store,
        node_handlers=node_handlers,
        max_concurrent_executions=config.max_concurrent_executions,
        max_node_workers=config.max_node_workers,
        node_timeout=config.node_timeout,
        execution_timeout=config.execution_timeout,
        retry_base_delay=config.node_retry_base_delay,
        retry_max_delay=config.node_retry_max_delay,
    )
    webhook_registry = WebhookRegistry()

    state = ApplicationState(
        config=config,
        tool_registry=tool_registry,
        workflow_store=workflow_store,
        execution_store=execution_store,
        graph_runner=graph_runner,
        webhook_registry=webhook_registry,
        trigger_manager=TriggerManager(webhook_registry, graph_runner, workflow_store),
        identity=IdentityResolver(),
        reasoning_backend_factory=reasoning_backend_factory or anthropic_backend_factory(config),
    )
    logger.info(
        f"Components ready: {len(tool_registry.list_tools())} tools, "
        f"node kinds {sorted(node_handlers)}"
    )
    return state


def register_health_checks(state: ApplicationState) -> None:
    def database():
        with session_scope() as db:
            db.execute(text("SELECT 1"))
        return "Database connection successful"

    def graph_runner():
        return {
            "active_executions": len(state.graph_runner.active_executions()),
            "node_kinds": sorted(state.graph_runner.known_kinds),
        }

    def tool_registry():
        return {"registered_tools": len(state.tool_registry.list_tools())}

    health_checker.clear()
    health_checker.register_check("database", database, timeout=5.0)
    health_checker.register_check("graph_runner", graph_runner, timeout=3.0)
    health_checker.register_check("tool_registry", tool_registry, timeout=2.0)


def create_lifespan_handler(state: ApplicationState):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {state.config.app_name} v{state.config.app_version}")
        yield
        logger.info(f"Shutting down {state.config.app_name}")
        try:
            state.graph_runner.shutdown(wait_for_completion=False)
        except Exception as e:
            logger.error(f"Graph runner shutdown failed: {e}")

    return lifespan


def create_app(
    config: Optional[AppConfig] = None,
    reasoning_backend_factory: Optional[ReasoningBackendFactory] = None,
) -> FastAPI:
    """Create a ready-to-serve FastAPI application.

    Components are built here rather than in the lifespan handler, so the
    app works with clients that skip startup events; the lifespan handler
    only shuts them down.
    """
    config = config or get_config()
    validate_config(config)
    setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        log_format=config.log_format,
        structured=config.structured_logging,
        max_size=config.log_max_size,
        backup_count=config.log_backup_count,
    )

    initialize_database(config)
    state = build_components(config, reasoning_backend_factory)
    init_dependencies(
        config=config,
        tool_registry=state.tool_registry,
        workflow_store=state.workflow_store,
        graph_runner=state.graph_runner,
        trigger_manager=state.trigger_manager,
        identity=state.identity,
        reasoning_backend_factory=state.reasoning_backend_factory,
    )
    register_health_checks(state)

    app = FastAPI(
        title=config.app_name,
        description="Streaming coding agent and DAG workflow engine with webhook triggers",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(state),
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )
    app.add_middleware(
        RequestContextMiddleware,
        slow_request_threshold=config.slow_request_threshold if config.enable_performance_monitoring else None,
    )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
            for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content={
            "error": "ValidationError",
            "message": "Request validation failed",
            "details": {"validation_errors": errors},
        })

    app.include_router(router)
    add_health_endpoints(app, config)
    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    service = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": service, "version": config.app_version}

    @app.get("/health/detailed")
    async def detailed_health():
        """Runs every registered component check; 503 when any of them is not healthy."""
        try:
            results = await health_checker.run_all_checks()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return JSONResponse(status_code=503, content={
                "service": service,
                "overall_status": "unhealthy",
                "error": str(e),
                "timestamp": datetime.utcnow().isoformat(),
            })

        return JSONResponse(
            status_code=200 if results["overall_status"] == "healthy" else 503,
            content={"service": service, "version": config.app_version, **results},
        )
