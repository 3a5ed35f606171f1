"""Database migrations for execution queries."""

from sqlalchemy import text
from .database import get_database_engine
from ..core.logging import get_logger

logger = get_logger(__name__)


_INDEXES = [
    # executions by workflow, newest first
    """CREATE INDEX IF NOT EXISTS idx_workflow_executions_workflow_started
       ON workflow_executions(workflow_id, started_at)""",
    """CREATE INDEX IF NOT EXISTS idx_workflow_executions_status_completed
       ON workflow_executions(status, completed_at)""",
    """CREATE INDEX IF NOT EXISTS idx_execution_logs_execution_timestamp
       ON execution_logs(execution_id, timestamp)""",
    """CREATE INDEX IF NOT EXISTS idx_webhook_endpoints_workflow
       ON webhook_endpoints(workflow_id)""",
]


def create_execution_indexes():
    """Create indexes used by execution status and log queries."""
    engine = get_database_engine()
    try:
        with engine.connect() as connection:
            for statement in _INDEXES:
                connection.execute(text(statement))
            connection.commit()
            logger.info("Created database indexes for execution queries")
    except Exception as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise


def optimize_sqlite():
    """Enable WAL mode on file-backed SQLite databases."""
    engine = get_database_engine()
    if engine.dialect.name != "sqlite" or ":memory:" in str(engine.url):
        return
    with engine.connect() as connection:
        connection.execute(text("PRAGMA journal_mode=WAL"))
        connection.commit()
    logger.info("Applied SQLite optimizations")


def run_migrations():
    """Run all migrations."""
    logger.info("Starting database migrations")
    create_execution_indexes()
    optimize_sqlite()
    logger.info("Database migrations completed")
