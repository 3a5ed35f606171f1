"""Workflow Graph Runner: concurrent execution of dependency graphs."""

import threading
import time
import uuid
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from ..models.core import (
    ExecutionLogEntry,
    ExecutionStatusEnum,
    LogEventType,
    NodeDefinition,
    NodeStatusEnum,
    WorkflowDefinition,
    WorkflowExecution,
)
from .error_recovery import RetryConfig
from .exceptions import (
    AuthorizationError,
    NexaflowError,
    NodeExecutionError,
    NodeTimeoutError,
    NotFoundError,
    ValidationError,
)
from .execution_store import ExecutionStore
from .logging import get_logger, set_logging_context, clear_logging_context
from .node_handlers import NodeContext, NodeHandler, freeze
from .workflow_store import WorkflowStore

logger = get_logger(__name__)

# Upper bound on how long the scheduler sleeps before re-checking cancellation.
_POLL_INTERVAL = 0.1


class _NotStarted(Exception):
    """The node was cancelled or finished before a worker picked it up."""


@dataclass
class _NodeRun:
    """Scheduler-side record of a submitted node; ``started_at`` is set by the worker."""
    node_id: str
    timeout: float
    cancel_event: threading.Event = field(default_factory=threading.Event)
    started_at: Optional[float] = None

    @property
    def deadline(self) -> Optional[float]:
        return None if self.started_at is None else self.started_at + self.timeout


class WorkflowGraphRunner:
    """Runs workflow DAGs: ready nodes run concurrently, failures skip their dependents.

    ``execute_workflow`` only validates and enqueues; a coordinator thread
    per execution schedules nodes onto a shared worker pool.
    """

    def __init__(
        self,
        workflow_store: WorkflowStore,
        execution_store: ExecutionStore,
        node_handlers: Dict[str, NodeHandler],
        max_concurrent_executions: int = 10,
        max_node_workers: int = 16,
        node_timeout: float = 300,
        execution_timeout: float = 3600,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
    ):
        self.workflow_store = workflow_store
        self.execution_store = execution_store
        self.node_handlers = dict(node_handlers)
        self.node_timeout = node_timeout
        self.execution_timeout = execution_timeout
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

        self._coordinator = ThreadPoolExecutor(
            max_workers=max_concurrent_executions, thread_name_prefix="nexaflow-exec"
        )
        self._node_pool = ThreadPoolExecutor(
            max_workers=max_node_workers, thread_name_prefix="nexaflow-node"
        )
        self._cancel_events: Dict[str, threading.Event] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = threading.RLock()
        self._shutdown = False

        logger.info(
            f"WorkflowGraphRunner initialized with {max_concurrent_executions} coordinators "
            f"and {max_node_workers} node workers"
        )

    @property
    def known_kinds(self) -> Set[str]:
        return set(self.node_handlers)

    # ------------------------------------------------------------------
    # public API

    def execute_workflow(
        self,
        workflow_id: str,
        trigger_data: Optional[Dict[str, Any]],
        requester_id: str,
        triggered_by: str = "manual",
    ) -> str:
        """
        Start an execution of ``workflow_id`` and return its id without waiting.

        Raises:
            NotFoundError: If the workflow does not exist
            AuthorizationError: If ``requester_id`` does not own the workflow
            ValidationError: If the workflow is inactive or the runner is shut down
        """
        if self._shutdown:
            raise ValidationError("Runner is shut down")

        workflow = self.workflow_store.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError(
                f"Workflow '{workflow_id}' not found", resource_type="workflow", resource_id=workflow_id
            )
        if workflow.owner_id != requester_id:
            raise AuthorizationError(user_id=requester_id).add_context(workflow_id=workflow_id)
        if not workflow.is_active:
            raise ValidationError(f"Workflow '{workflow_id}' is not active")

        execution_id = str(uuid.uuid4())
        self.execution_store.create_execution(
            execution_id,
            workflow_id,
            [node.id for node in workflow.nodes],
            trigger_data=trigger_data,
            triggered_by=triggered_by,
        )

        cancel_event = threading.Event()
        with self._lock:
            self._cancel_events[execution_id] = cancel_event
            self._futures[execution_id] = self._coordinator.submit(
                self._run_execution, execution_id, workflow, dict(trigger_data or {}), cancel_event
            )

        logger.info(f"Queued execution {execution_id} of workflow {workflow_id} ({triggered_by})")
        return execution_id

    def cancel_execution(self, execution_id: str) -> bool:
        """Request cancellation. Returns False if the execution is not running."""
        with self._lock:
            event = self._cancel_events.get(execution_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        return self.execution_store.get_execution(execution_id)

    def get_execution_logs(self, execution_id: str) -> List[ExecutionLogEntry]:
        return self.execution_store.get_execution_logs(execution_id)

    def wait_for_execution(self, execution_id: str, timeout: Optional[float] = None) -> Optional[WorkflowExecution]:
        """Block until the execution finishes (or ``timeout``) and return its record."""
        with self._lock:
            future = self._futures.get(execution_id)
        if future is not None:
            wait([future], timeout=timeout)
        return self.execution_store.get_execution(execution_id)

    def active_executions(self) -> List[str]:
        with self._lock:
            return list(self._cancel_events)

    def shutdown(self, wait_for_completion: bool = True) -> None:
        """Stop accepting work; cancel running executions unless waiting for them."""
        self._shutdown = True
        if not wait_for_completion:
            with self._lock:
                for event in self._cancel_events.values():
                    event.set()
        self._coordinator.shutdown(wait=True)
        self._node_pool.shutdown(wait=wait_for_completion, cancel_futures=not wait_for_completion)
        logger.info("WorkflowGraphRunner shutdown completed")

    # ------------------------------------------------------------------
    # scheduling

    def _run_execution(
        self,
        execution_id: str,
        workflow: WorkflowDefinition,
        trigger_data: Dict[str, Any],
        cancel_event: threading.Event,
    ) -> None:
        set_logging_context(execution_id=execution_id, workflow_id=workflow.id)
        try:
            self._schedule(execution_id, workflow, trigger_data, cancel_event)
        except Exception as e:
            logger.error(f"Execution {execution_id} aborted: {e}", exc_info=True)
            self._skip_pending(execution_id, workflow, "execution aborted")
            self._fail_running(execution_id, "execution aborted")
            if self.execution_store.is_active(execution_id):
                self.execution_store.finalize_execution(
                    execution_id, ExecutionStatusEnum.FAILED, f"Internal error: {e}"
                )
        finally:
            with self._lock:
                self._cancel_events.pop(execution_id, None)
                self._futures.pop(execution_id, None)
            clear_logging_context()

    def _schedule(
        self,
        execution_id: str,
        workflow: WorkflowDefinition,
        trigger_data: Dict[str, Any],
        cancel_event: threading.Event,
    ) -> None:
        store = self.execution_store
        store.mark_execution_running(execution_id)
        store.log_event(execution_id, LogEventType.WORKFLOW_START, f"Workflow '{workflow.name}' started")
        logger.info(f"Execution {execution_id} started with {len(workflow.nodes)} nodes")

        frozen_trigger = freeze(trigger_data)
        outputs: Dict[str, Any] = {}
        waiting_on = {node.id: set(node.depends_on) for node in workflow.nodes}
        children = workflow.dependents()
        order = workflow.topological_order() or []
        ready = deque(node_id for node_id in order if not waiting_on[node_id])
        submitted: Set[str] = set()
        running: Dict[Future, _NodeRun] = {}
        failed: List[str] = []

        deadline = time.monotonic() + self.execution_timeout
        timed_out = False
        cancelled = False

        while ready or running:
            if cancel_event.is_set():
                cancelled = True
                break

            while ready:
                node = workflow.node(ready.popleft())
                if node.id in submitted:
                    continue
                submitted.add(node.id)
                run = _NodeRun(node.id, node.timeout or self.node_timeout)
                context = NodeContext(
                    execution_id=execution_id,
                    workflow_id=workflow.id,
                    trigger_data=frozen_trigger,
                    upstream=freeze({dep: outputs[dep] for dep in node.depends_on}),
                    cancel_event=run.cancel_event,
                )
                running[self._node_pool.submit(self._run_node, execution_id, node, context, run)] = run

            now = time.monotonic()
            next_deadline = min([run.deadline for run in running.values() if run.deadline] + [deadline])
            done, _ = wait(
                list(running),
                timeout=max(0.0, min(next_deadline - now, _POLL_INTERVAL)),
                return_when=FIRST_COMPLETED,
            )

            for future in done:
                node_id = running.pop(future).node_id
                try:
                    output = future.result()
                except _NotStarted:
                    continue
                except Exception as e:
                    failed.append(node_id)
                    self._fail_node(execution_id, workflow, node_id, _describe(e))
                    continue

                if store.record_node_result(execution_id, node_id, NodeStatusEnum.SUCCEEDED, output=output):
                    outputs[node_id] = output
                    store.log_event(execution_id, LogEventType.NODE_COMPLETE, f"Node '{node_id}' succeeded", node_id)
                    logger.debug(f"Node {node_id} succeeded in execution {execution_id}")
                    for child in children.get(node_id, []):
                        waiting_on[child].discard(node_id)
                        if not waiting_on[child]:
                            ready.append(child)

            # node clocks start when a worker picks the node up, not while it waits for a thread
            now = time.monotonic()
            for future, run in list(running.items()):
                if run.deadline and now >= run.deadline:
                    running.pop(future)
                    run.cancel_event.set()
                    failed.append(run.node_id)
                    error = NodeTimeoutError(run.node_id, run.timeout, execution_id=execution_id)
                    self._fail_node(execution_id, workflow, run.node_id, error.message)

            if now >= deadline and (running or ready):
                timed_out = True
                break

        if cancelled or timed_out:
            # late results of running workers are discarded
            cancel_event.set()
            reason = "execution cancelled" if cancelled else (
                f"execution timed out after {self.execution_timeout:g}s"
            )
            for future, run in running.items():
                future.cancel()
                run.cancel_event.set()
            self._skip_pending(execution_id, workflow, reason)
            stopped = self._fail_running(execution_id, reason)
            if not cancelled:
                failed.extend(stopped)

        if cancelled:
            status, error = ExecutionStatusEnum.CANCELLED, "Execution cancelled"
            store.log_event(execution_id, LogEventType.WORKFLOW_CANCELLED, "Workflow cancelled")
        elif timed_out:
            error = f"Execution timed out after {self.execution_timeout:g}s"
            if failed:
                error = f"{error}; Nodes failed: {', '.join(failed)}"
            status = ExecutionStatusEnum.FAILED
        elif failed:
            status, error = ExecutionStatusEnum.FAILED, f"Nodes failed: {', '.join(failed)}"
        else:
            status, error = ExecutionStatusEnum.SUCCEEDED, None

        # logged first so the log is complete once the status turns terminal
        store.log_event(
            execution_id, LogEventType.WORKFLOW_COMPLETE, f"Workflow finished with status {status.value}"
        )
        final = store.finalize_execution(execution_id, status, error)
        logger.info(f"Execution {execution_id} finished: {final.status.value}")

    def _run_node(self, execution_id: str, node: NodeDefinition, context: NodeContext, run: _NodeRun) -> Any:
        """Run a node's handler in a worker thread, retrying up to ``node.retries`` times."""
        store = self.execution_store
        if context.cancel_event.is_set() or not store.start_node(execution_id, node.id):
            raise _NotStarted(node.id)
        run.started_at = time.monotonic()
        store.log_event(execution_id, LogEventType.NODE_START, f"Node '{node.id}' started", node.id)

        handler = self.node_handlers.get(node.kind)
        if handler is None:
            raise NodeExecutionError(f"No handler for node kind '{node.kind}'", node_id=node.id)

        set_logging_context(execution_id=execution_id, node_id=node.id)
        retry = RetryConfig(
            max_attempts=node.retries + 1,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter=False,
        )
        try:
            attempt = 1
            while True:
                try:
                    return handler(node, context)
                except Exception as e:
                    if attempt > node.retries or context.cancel_event.is_set():
                        raise
                    delay = retry.get_delay(attempt)
                    logger.warning(f"Node {node.id} attempt {attempt} failed ({e}); retrying in {delay:.2f}s")
                    store.log_event(
                        execution_id, LogEventType.NODE_RETRY,
                        f"Node '{node.id}' attempt {attempt} failed: {_describe(e)}", node.id,
                    )
                    if context.cancel_event.wait(delay):
                        raise
                    if not store.count_retry(execution_id, node.id):
                        # already timed out by the scheduler
                        raise
                    attempt += 1
        finally:
            clear_logging_context()

    def _fail_node(self, execution_id: str, workflow: WorkflowDefinition, node_id: str, error: str) -> None:
        store = self.execution_store
        if store.record_node_result(execution_id, node_id, NodeStatusEnum.FAILED, error=error):
            store.log_event(execution_id, LogEventType.NODE_ERROR, f"Node '{node_id}' failed: {error}", node_id)
            logger.warning(f"Node {node_id} failed in execution {execution_id}: {error}")

        for dependent in workflow.transitive_dependents(node_id):
            if store.record_node_result(
                execution_id, dependent, NodeStatusEnum.SKIPPED, error=f"upstream node '{node_id}' failed"
            ):
                store.log_event(
                    execution_id, LogEventType.NODE_SKIPPED,
                    f"Node '{dependent}' skipped: upstream node '{node_id}' failed", dependent,
                )

    def _skip_pending(self, execution_id: str, workflow: WorkflowDefinition, reason: str) -> None:
        store = self.execution_store
        if not store.is_active(execution_id):
            return
        execution = store.get_execution(execution_id)
        for node_id, state in execution.node_statuses.items():
            if state.status == NodeStatusEnum.PENDING:
                if store.record_node_result(execution_id, node_id, NodeStatusEnum.SKIPPED, error=reason):
                    store.log_event(execution_id, LogEventType.NODE_SKIPPED, f"Node '{node_id}' skipped: {reason}", node_id)

    def _fail_running(self, execution_id: str, reason: str) -> List[str]:
        """Fail every node still marked running; returns their ids."""
        store = self.execution_store
        if not store.is_active(execution_id):
            return []
        stopped = []
        for node_id, state in store.get_execution(execution_id).node_statuses.items():
            if state.status == NodeStatusEnum.RUNNING:
                if store.record_node_result(execution_id, node_id, NodeStatusEnum.FAILED, error=reason):
                    store.log_event(execution_id, LogEventType.NODE_ERROR, f"Node '{node_id}' failed: {reason}", node_id)
                    stopped.append(node_id)
        return stopped


def _describe(error: Exception) -> str:
    if isinstance(error, NexaflowError):
        return error.message
    return f"{type(error).__name__}: {error}"
