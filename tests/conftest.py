"""Pytest configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient

from nexaflow.config import get_testing_config
from nexaflow.core.execution_store import ExecutionStore
from nexaflow.core.graph_runner import WorkflowGraphRunner
from nexaflow.core.identity import IdentityResolver
from nexaflow.core.reasoning import ScriptedReasoningBackend
from nexaflow.core.tool_registry import ToolContext, ToolRegistry
from nexaflow.core.webhook_registry import WebhookRegistry
from nexaflow.core.trigger_manager import TriggerManager
from nexaflow.core.workflow_store import WorkflowStore
from nexaflow.models.core import NodeDefinition, WorkflowDefinition
from nexaflow.storage.database import configure_database, create_tables, reset_database_engine


@pytest.fixture
def temp_db(tmp_path):
    """Bind the storage layer to a fresh SQLite file."""
    db_path = tmp_path / "nexaflow-test.db"
    configure_database(f"sqlite:///{db_path}")
    create_tables()
    yield db_path
    reset_database_engine()


@pytest.fixture
def workspace_root(tmp_path):
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def tool_context(workspace_root):
    return ToolContext(workspace_id="project-1", workspace_root=workspace_root)


@pytest.fixture
def tool_registry():
    return ToolRegistry()


@pytest.fixture
def workflow_store(temp_db):
    return WorkflowStore()


@pytest.fixture
def execution_store(temp_db):
    return ExecutionStore()


@pytest.fixture
def node_handlers():
    """Test handlers: ``succeed`` echoes its config, ``fail`` always raises."""
    def succeed(node, context):
        return {"node": node.id, "value": node.config.get("value")}

    def fail(node, context):
        raise RuntimeError(node.config.get("message", "boom"))

    def sleep(node, context):
        context.cancel_event.wait(node.config.get("seconds", 5))
        return {"slept": True}

    return {"succeed": succeed, "fail": fail, "sleep": sleep}


@pytest.fixture
def graph_runner(workflow_store, execution_store, node_handlers):
    runner = WorkflowGraphRunner(
        workflow_store=workflow_store,
        execution_store=execution_store,
        node_handlers=node_handlers,
        max_concurrent_executions=4,
        max_node_workers=8,
        node_timeout=10,
        execution_timeout=30,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
    )
    yield runner
    runner.shutdown(wait_for_completion=False)


@pytest.fixture
def trigger_manager(workflow_store, graph_runner):
    return TriggerManager(WebhookRegistry(), graph_runner, workflow_store)


@pytest.fixture
def create_workflow(workflow_store):
    """Factory storing a workflow built from ``(id, kind, depends_on, config)`` tuples."""
    def _create(nodes, owner_id="user-1", is_active=True, name="Test workflow"):
        definition = WorkflowDefinition(
            name=name,
            is_active=is_active,
            nodes=[
                NodeDefinition(id=node_id, kind=kind, depends_on=deps, config=config or {})
                for node_id, kind, deps, config in nodes
            ],
        )
        return workflow_store.create_workflow(definition, owner_id=owner_id)
    return _create


@pytest.fixture
def test_config(tmp_path):
    config = get_testing_config()
    config.database_url = f"sqlite:///{tmp_path / 'nexaflow-app.db'}"
    config.workspace_root = str(tmp_path / "generated-projects")
    return config


@pytest.fixture
def scripted_decisions():
    """Decisions replayed by the reasoning backend of the ``client`` fixture; tests may extend it."""
    return []


@pytest.fixture
def client(test_config, scripted_decisions):
    """Test client whose agent uses a scripted reasoning backend."""
    from nexaflow.factory import create_app

    app = create_app(test_config, reasoning_backend_factory=lambda: ScriptedReasoningBackend(
        list(scripted_decisions), final_response="All done"
    ))
    with TestClient(app) as test_client:
        yield test_client
    reset_database_engine()


@pytest.fixture
def auth_headers(client):
    """Bearer token for ``user-1``."""
    token = IdentityResolver().create_session("user-1")
    return {"Authorization": f"Bearer {token}"}
