"""Database models and storage layer."""

from .database import (
    Base,
    configure_database,
    get_database_engine,
    get_db,
    session_scope,
    create_tables,
    drop_tables,
)
from .models import (
    WorkflowModel,
    WorkflowExecutionModel,
    ExecutionLogModel,
    WebhookEndpointModel,
    UserSessionModel,
)

__all__ = [
    "Base",
    "configure_database",
    "get_database_engine",
    "get_db",
    "session_scope",
    "create_tables",
    "drop_tables",
    "WorkflowModel",
    "WorkflowExecutionModel",
    "ExecutionLogModel",
    "WebhookEndpointModel",
    "UserSessionModel",
]
