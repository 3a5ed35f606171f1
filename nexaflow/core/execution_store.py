"""Execution Store: authoritative status records for workflow executions.

Live executions are held in memory, each behind its own lock, and every
transition is written through to the database so status queries work
after the run finishes or the process restarts.
"""

import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..models.core import (
    ExecutionLogEntry,
    ExecutionStatusEnum,
    LogEventType,
    NodeState,
    NodeStatusEnum,
    WorkflowExecution,
)
from ..storage.database import session_scope
from ..storage.models import ExecutionLogModel, WorkflowExecutionModel
from .exceptions import ConflictError, NotFoundError, StorageError
from .error_recovery import with_retry, RetryConfig
from .logging import get_logger

logger = get_logger(__name__)


class ExecutionStore:
    """Holds execution state with per-execution isolation and database write-through."""

    def __init__(self):
        self._active: Dict[str, WorkflowExecution] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.RLock()
        self._db_lock = threading.Lock()
        logger.info("ExecutionStore initialized")

    # ------------------------------------------------------------------
    # creation

    @with_retry(RetryConfig(max_attempts=3, base_delay=0.1))
    def create_execution(
        self,
        execution_id: str,
        workflow_id: str,
        node_ids: Iterable[str],
        trigger_data: Optional[Dict[str, Any]] = None,
        triggered_by: str = "manual",
    ) -> WorkflowExecution:
        """Create an execution record with every node pending.

        Raises:
            ConflictError: If the id is already in use
            StorageError: If the record cannot be persisted
        """
        execution = WorkflowExecution(
            id=execution_id,
            workflow_id=workflow_id,
            triggered_by=triggered_by,
            trigger_data=dict(trigger_data or {}),
            node_statuses={node_id: NodeState() for node_id in node_ids},
        )

        with self._registry_lock:
            if execution_id in self._active:
                raise ConflictError(f"Execution {execution_id} already exists")
            self._active[execution_id] = execution
            self._locks[execution_id] = threading.RLock()

        try:
            with self._db_lock, session_scope() as db:
                if db.get(WorkflowExecutionModel, execution_id) is not None:
                    raise ConflictError(f"Execution {execution_id} already exists")
                db.add(WorkflowExecutionModel(
                    id=execution_id,
                    workflow_id=workflow_id,
                    status=execution.status.value,
                    triggered_by=triggered_by,
                    trigger_data=execution.trigger_data,
                    node_statuses=self._dump_nodes(execution),
                    started_at=execution.started_at,
                ))
        except (SQLAlchemyError, ConflictError) as e:
            with self._registry_lock:
                self._active.pop(execution_id, None)
                self._locks.pop(execution_id, None)
            if isinstance(e, ConflictError):
                raise
            raise StorageError(
                f"Failed to persist execution: {str(e)}",
                operation="create_execution",
                table="workflow_executions",
            )

        logger.info(f"Created execution {execution_id} for workflow {workflow_id}")
        return execution.model_copy(deep=True)

    # ------------------------------------------------------------------
    # transitions

    def mark_execution_running(self, execution_id: str) -> None:
        with self._lock_for(execution_id):
            execution = self._require_active(execution_id)
            if execution.status != ExecutionStatusEnum.PENDING:
                return
            execution.status = ExecutionStatusEnum.RUNNING
            self._write_through(execution)

    def start_node(self, execution_id: str, node_id: str) -> bool:
        """Move a pending node to running as its first attempt. False for any other status."""
        with self._lock_for(execution_id):
            execution = self._require_active(execution_id)
            state = execution.node_statuses[node_id]
            if state.status != NodeStatusEnum.PENDING:
                return False
            state.status = NodeStatusEnum.RUNNING
            state.started_at = datetime.utcnow()
            state.attempts = 1
            self._write_through(execution)
            return True

    def count_retry(self, execution_id: str, node_id: str) -> bool:
        """Count another attempt of a running node. False once the node is terminal."""
        with self._lock_for(execution_id):
            execution = self._require_active(execution_id)
            state = execution.node_statuses[node_id]
            if state.status != NodeStatusEnum.RUNNING:
                return False
            state.attempts += 1
            self._write_through(execution)
            return True

    def record_node_result(
        self,
        execution_id: str,
        node_id: str,
        status: NodeStatusEnum,
        output: Any = None,
        error: Optional[str] = None,
    ) -> bool:
        """Record a terminal node state. A node's first terminal state wins; later writes are ignored."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal node status")

        with self._lock_for(execution_id):
            execution = self._require_active(execution_id)
            state = execution.node_statuses[node_id]
            if state.status.is_terminal:
                logger.warning(
                    f"Ignoring {status.value} for node {node_id} in {execution_id}: already {state.status.value}"
                )
                return False
            if status == NodeStatusEnum.SKIPPED and state.status != NodeStatusEnum.PENDING:
                # a node that started is failed, never skipped
                return False
            state.status = status
            state.output = output if status == NodeStatusEnum.SUCCEEDED else None
            state.error = error
            state.completed_at = datetime.utcnow()
            self._write_through(execution)
            return True

    def finalize_execution(
        self,
        execution_id: str,
        status: ExecutionStatusEnum,
        error: Optional[str] = None,
    ) -> WorkflowExecution:
        """Set the overall terminal status, persist it, and release the in-memory record."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal execution status")

        with self._lock_for(execution_id):
            execution = self._require_active(execution_id)
            if not execution.status.is_terminal:
                execution.status = status
                execution.error = error
                execution.completed_at = datetime.utcnow()
            self._write_through(execution, raise_errors=True)
            final = execution.model_copy(deep=True)

        with self._registry_lock:
            self._active.pop(execution_id, None)
            self._locks.pop(execution_id, None)

        logger.info(f"Execution {execution_id} finalized as {final.status.value}")
        return final

    # ------------------------------------------------------------------
    # queries

    def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Return a snapshot of the execution, from memory if live, else from the database."""
        with self._registry_lock:
            lock = self._locks.get(execution_id)
        if lock is not None:
            with lock:
                execution = self._active.get(execution_id)
                if execution is not None:
                    return execution.model_copy(deep=True)

        try:
            with session_scope() as db:
                model = db.get(WorkflowExecutionModel, execution_id)
                return self._from_model(model) if model is not None else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load execution: {str(e)}", operation="get_execution")

    def require_execution(self, execution_id: str) -> WorkflowExecution:
        execution = self.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(
                f"Execution '{execution_id}' not found",
                resource_type="execution",
                resource_id=execution_id,
            )
        return execution

    def list_executions(self, workflow_id: Optional[str] = None, limit: int = 100) -> List[WorkflowExecution]:
        try:
            with session_scope() as db:
                query = db.query(WorkflowExecutionModel)
                if workflow_id is not None:
                    query = query.filter(WorkflowExecutionModel.workflow_id == workflow_id)
                models = query.order_by(WorkflowExecutionModel.started_at.desc()).limit(limit).all()
                ids = [m.id for m in models]
                persisted = {m.id: self._from_model(m) for m in models}
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list executions: {str(e)}", operation="list_executions")

        return [self.get_execution(i) or persisted[i] for i in ids]

    def is_active(self, execution_id: str) -> bool:
        with self._registry_lock:
            return execution_id in self._active

    def active_executions(self) -> List[str]:
        with self._registry_lock:
            return list(self._active)

    # ------------------------------------------------------------------
    # logs

    def log_event(
        self,
        execution_id: str,
        event_type: LogEventType,
        message: str,
        node_id: Optional[str] = None,
    ) -> None:
        """Append an execution log entry. Failures are logged, not raised."""
        try:
            with self._db_lock, session_scope() as db:
                db.add(ExecutionLogModel(
                    execution_id=execution_id,
                    node_id=node_id,
                    event_type=event_type.value,
                    message=message,
                    timestamp=datetime.utcnow(),
                ))
        except SQLAlchemyError as e:
            logger.error(f"Failed to write execution log for {execution_id}: {str(e)}")

    def get_execution_logs(self, execution_id: str) -> List[ExecutionLogEntry]:
        try:
            with session_scope() as db:
                rows = (
                    db.query(ExecutionLogModel)
                    .filter(ExecutionLogModel.execution_id == execution_id)
                    .order_by(ExecutionLogModel.id)
                    .all()
                )
                return [
                    ExecutionLogEntry(
                        timestamp=row.timestamp,
                        execution_id=row.execution_id,
                        node_id=row.node_id,
                        event_type=LogEventType(row.event_type),
                        message=row.message,
                    )
                    for row in rows
                ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load execution logs: {str(e)}", operation="get_execution_logs")

    # ------------------------------------------------------------------
    # internals

    def _lock_for(self, execution_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(execution_id)
        if lock is None:
            raise NotFoundError(
                f"Execution '{execution_id}' is not active",
                resource_type="execution",
                resource_id=execution_id,
            )
        return lock

    def _require_active(self, execution_id: str) -> WorkflowExecution:
        execution = self._active.get(execution_id)
        if execution is None:
            raise NotFoundError(
                f"Execution '{execution_id}' is not active",
                resource_type="execution",
                resource_id=execution_id,
            )
        return execution

    def _write_through(self, execution: WorkflowExecution, raise_errors: bool = False) -> None:
        try:
            with self._db_lock, session_scope() as db:
                model = db.get(WorkflowExecutionModel, execution.id)
                if model is None:
                    raise StorageError(f"Execution {execution.id} missing from database")
                model.status = execution.status.value
                model.node_statuses = self._dump_nodes(execution)
                model.error_message = execution.error
                model.completed_at = execution.completed_at
        except (SQLAlchemyError, StorageError) as e:
            logger.error(f"Failed to persist execution {execution.id}: {str(e)}")
            if raise_errors:
                raise StorageError(
                    f"Failed to persist execution: {str(e)}",
                    operation="write_through",
                    table="workflow_executions",
                )

    @staticmethod
    def _dump_nodes(execution: WorkflowExecution) -> Dict[str, Any]:
        return {
            node_id: state.model_dump(mode="json")
            for node_id, state in execution.node_statuses.items()
        }

    @staticmethod
    def _from_model(model: WorkflowExecutionModel) -> WorkflowExecution:
        return WorkflowExecution(
            id=model.id,
            workflow_id=model.workflow_id,
            triggered_by=model.triggered_by or "manual",
            trigger_data=model.trigger_data or {},
            node_statuses={k: NodeState(**v) for k, v in (model.node_statuses or {}).items()},
            status=ExecutionStatusEnum(model.status),
            error=model.error_message,
            started_at=model.started_at,
            completed_at=model.completed_at,
        )
