"""Agent Executor: the reason, act, observe loop for one conversation scope."""

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..models.core import (
    AgentExecutionResult,
    ConversationMessage,
    Step,
    StepProgress,
    StepType,
)
from .exceptions import ReasoningBackendError, StreamClosedError
from .logging import get_logger, set_logging_context, clear_logging_context
from .reasoning import ReasoningBackend
from .step_stream import StepStream
from .tool_registry import ToolContext, ToolRegistry

logger = get_logger(__name__)

MAX_ITERATIONS_MESSAGE = "Reached maximum iterations. Task may be incomplete."


class _Cancelled(Exception):
    """Internal signal: the consumer cancelled the stream."""


class AgentExecutor:
    """Runs a bounded loop of reasoning rounds and tool calls for one workspace.

    Each instance owns its conversation history; create one per
    conversation or request. Steps are streamed into an optional
    ``StepStream`` as they happen and also returned in the result.
    """

    def __init__(
        self,
        workspace_id: str,
        reasoning_backend: ReasoningBackend,
        tool_registry: ToolRegistry,
        max_iterations: int = 30,
        system_prompt: Optional[str] = None,
        workspace_root: Optional[Union[str, Path]] = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.workspace_id = workspace_id
        self.reasoning_backend = reasoning_backend
        self.tool_registry = tool_registry
        self.max_iterations = max_iterations
        self.system_prompt = system_prompt
        self.workspace_root = Path(workspace_root or "./generated-projects")
        self._history: List[ConversationMessage] = []
        self._history_lock = threading.Lock()

    def add_to_history(self, message: Union[ConversationMessage, Dict[str, Any]]) -> None:
        """Append a message to this executor's conversation history."""
        if not isinstance(message, ConversationMessage):
            message = ConversationMessage(**message)
        with self._history_lock:
            self._history.append(message)

    def get_history(self) -> List[ConversationMessage]:
        with self._history_lock:
            return list(self._history)

    def reset_history(self) -> None:
        with self._history_lock:
            self._history.clear()

    def execute(self, user_message: str, stream: Optional[StepStream] = None) -> AgentExecutionResult:
        """Run the loop for ``user_message`` until a final answer or the iteration cap.

        Tool failures are reported as ``error`` steps and the loop goes on;
        a reasoning backend failure ends the call with ``success=False``.
        The stream, if given, is closed on return.
        """
        steps: List[Step] = []
        context = ToolContext(workspace_id=self.workspace_id, workspace_root=self.workspace_root)
        tools = self.tool_registry.tool_specs()

        def record(step: Step) -> None:
            if stream is not None:
                try:
                    step = stream.emit(step)
                except StreamClosedError:
                    raise _Cancelled()
            steps.append(step)

        self.add_to_history(ConversationMessage(role="user", content=user_message))
        set_logging_context(workspace_id=self.workspace_id)
        logger.info(f"Agent execution started for workspace '{self.workspace_id}'")

        try:
            for iteration in range(1, self.max_iterations + 1):
                if stream is not None and stream.is_cancelled:
                    raise _Cancelled()

                progress = StepProgress.of(iteration, self.max_iterations)
                try:
                    decision = self.reasoning_backend.decide(
                        self.get_history(), list(steps), tools, self.system_prompt
                    )
                except ReasoningBackendError as e:
                    logger.error(f"Reasoning backend failed on iteration {iteration}: {e.message}")
                    record(Step(type=StepType.ERROR, content=f"Error: {e.message}", progress=progress))
                    return AgentExecutionResult(success=False, steps=steps, error=e.message)

                if decision.is_final:
                    response = decision.response or "Task completed"
                    record(Step(type=StepType.FINAL, content=response, progress=progress))
                    self.add_to_history(ConversationMessage(role="assistant", content=response))
                    logger.info(f"Agent execution finished after {iteration} iteration(s)")
                    return AgentExecutionResult(success=True, steps=steps, response=response)

                if decision.thought:
                    record(Step(type=StepType.THOUGHT, content=decision.thought, progress=progress))

                for call in decision.tool_calls:
                    record(Step(
                        type=StepType.TOOL_CALL,
                        content=f"Calling {call.name}",
                        tool_name=call.name,
                        tool_args=call.arguments,
                        progress=progress,
                    ))
                    result = self.tool_registry.invoke(call.name, call.arguments, context)
                    if result.success:
                        record(Step(
                            type=StepType.TOOL_RESULT,
                            content="Success",
                            tool_name=call.name,
                            tool_result=result.model_dump(mode="json"),
                            progress=progress,
                        ))
                    else:
                        record(Step(
                            type=StepType.ERROR,
                            content=f"Error: {result.error}",
                            tool_name=call.name,
                            tool_result=result.model_dump(mode="json"),
                            progress=progress,
                        ))

            logger.warning(f"Agent hit the iteration cap ({self.max_iterations})")
            record(Step(
                type=StepType.FINAL,
                content=MAX_ITERATIONS_MESSAGE,
                progress=StepProgress.of(self.max_iterations, self.max_iterations),
            ))
            return AgentExecutionResult(
                success=False,
                steps=steps,
                response=MAX_ITERATIONS_MESSAGE,
                error="maximum iterations reached",
            )

        except _Cancelled:
            logger.info("Agent execution cancelled by consumer")
            return AgentExecutionResult(success=False, steps=steps, error="cancelled")

        finally:
            if stream is not None:
                stream.close()
            clear_logging_context()
