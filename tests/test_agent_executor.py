"""Tests for the agent executor loop."""

import threading

import pytest

from nexaflow.core.agent_executor import AgentExecutor, MAX_ITERATIONS_MESSAGE
from nexaflow.core.exceptions import ReasoningBackendError
from nexaflow.core.reasoning import ScriptedReasoningBackend, render_messages
from nexaflow.core.step_stream import StepStream
from nexaflow.models.core import (
    AgentDecision,
    ConversationMessage,
    Step,
    StepType,
    ToolCall,
)
from nexaflow.tools import register_workspace_tools


def tool_round(name, thought=None, **arguments):
    return AgentDecision(thought=thought, tool_calls=[ToolCall(id=f"call-{name}", name=name, arguments=arguments)])


@pytest.fixture
def registry(tool_registry):
    register_workspace_tools(tool_registry)
    return tool_registry


def make_executor(registry, workspace_root, decisions, **kwargs):
    backend = ScriptedReasoningBackend(decisions, final_response="Done")
    executor = AgentExecutor(
        workspace_id="project-1",
        reasoning_backend=backend,
        tool_registry=registry,
        workspace_root=workspace_root,
        **kwargs,
    )
    return executor, backend


class TestConversationHistory:
    """History is per executor and keeps insertion order."""

    def test_history_preserves_order(self, registry, workspace_root):
        executor, _ = make_executor(registry, workspace_root, [])
        executor.add_to_history(ConversationMessage(role="user", content="m1"))
        executor.add_to_history({"role": "assistant", "content": "m2"})
        executor.add_to_history(ConversationMessage(role="user", content="m3"))

        assert [m.content for m in executor.get_history()] == ["m1", "m2", "m3"]

    def test_history_is_isolated_between_executors(self, registry, workspace_root):
        first, _ = make_executor(registry, workspace_root, [])
        second, _ = make_executor(registry, workspace_root, [])
        first.add_to_history({"role": "user", "content": "only in first"})

        assert second.get_history() == []

    def test_execute_appends_user_and_assistant_turns(self, registry, workspace_root):
        executor, _ = make_executor(registry, workspace_root, [AgentDecision(response="Hello back")])
        executor.execute("Hello")

        history = executor.get_history()
        assert [(m.role, m.content) for m in history] == [("user", "Hello"), ("assistant", "Hello back")]

    def test_invalid_role_rejected(self, registry, workspace_root):
        executor, _ = make_executor(registry, workspace_root, [])
        with pytest.raises(ValueError):
            executor.add_to_history({"role": "system", "content": "nope"})


class TestAgentLoop:
    """Test cases for AgentExecutor.execute."""

    def test_tool_free_answer_yields_single_final_step(self, registry, workspace_root):
        executor, _ = make_executor(registry, workspace_root, [AgentDecision(response="42")])
        result = executor.execute("What is the answer?")

        assert result.success is True
        assert result.response == "42"
        assert len(result.steps) == 1
        assert result.steps[0].type == StepType.FINAL
        assert result.steps[0].content == "42"

    def test_tool_round_then_final(self, registry, workspace_root):
        decisions = [
            tool_round("write_file", thought="Creating the file", path="hello.py", content="print('hi')\n"),
            AgentDecision(response="Created hello.py"),
        ]
        executor, backend = make_executor(registry, workspace_root, decisions)
        result = executor.execute("Create hello.py")

        assert result.success is True
        assert [s.type for s in result.steps] == [
            StepType.THOUGHT, StepType.TOOL_CALL, StepType.TOOL_RESULT, StepType.FINAL,
        ]
        call_step = result.steps[1]
        assert call_step.content == "Calling write_file"
        assert call_step.tool_args["path"] == "hello.py"
        assert result.steps[2].content == "Success"
        assert (workspace_root / "project-1" / "hello.py").read_text() == "print('hi')\n"

        # the second round sees the first round's steps
        assert len(backend.calls) == 2
        assert len(backend.calls[1]["steps"]) == 3

    def test_tool_failure_is_reported_and_loop_continues(self, registry, workspace_root):
        decisions = [
            tool_round("read_file", path="missing.txt"),
            AgentDecision(response="The file does not exist"),
        ]
        executor, _ = make_executor(registry, workspace_root, decisions)
        result = executor.execute("Read missing.txt")

        assert result.success is True
        error_step = result.steps[1]
        assert error_step.type == StepType.ERROR
        assert error_step.content.startswith("Error: ")
        assert "File not found" in error_step.content
        assert result.steps[-1].type == StepType.FINAL

    def test_unknown_tool_is_a_step_error(self, registry, workspace_root):
        executor, _ = make_executor(registry, workspace_root, [tool_round("launch_rockets")])
        result = executor.execute("Do something odd")

        assert result.steps[1].type == StepType.ERROR
        assert "not registered" in result.steps[1].content
        assert result.success is True

    def test_path_escape_is_rejected(self, registry, workspace_root):
        executor, _ = make_executor(registry, workspace_root, [tool_round("read_file", path="../../etc/passwd")])
        result = executor.execute("Read outside")

        assert result.steps[1].type == StepType.ERROR
        assert "outside workspace" in result.steps[1].content

    def test_backend_failure_ends_call(self, registry, workspace_root):
        decisions = [ReasoningBackendError("rate limited", model="test-model")]
        executor, _ = make_executor(registry, workspace_root, decisions)
        result = executor.execute("Anything")

        assert result.success is False
        assert result.error == "rate limited"
        assert result.steps[-1].type == StepType.ERROR
        assert result.steps[-1].content == "Error: rate limited"

    def test_iteration_cap(self, registry, workspace_root):
        decisions = [tool_round("list_files") for _ in range(10)]
        executor, backend = make_executor(registry, workspace_root, decisions, max_iterations=3)
        result = executor.execute("Loop forever")

        assert result.success is False
        assert result.error == "maximum iterations reached"
        assert result.steps[-1].type == StepType.FINAL
        assert result.steps[-1].content == MAX_ITERATIONS_MESSAGE
        assert len(backend.calls) == 3

    def test_progress_tracks_iterations(self, registry, workspace_root):
        decisions = [tool_round("list_files"), AgentDecision(response="ok")]
        executor, _ = make_executor(registry, workspace_root, decisions, max_iterations=4)
        result = executor.execute("List")

        assert result.steps[0].progress.current == 1
        assert result.steps[-1].progress.current == 2
        assert result.steps[-1].progress.total == 4
        assert result.steps[-1].progress.percentage == 50

    def test_max_iterations_must_be_positive(self, registry, workspace_root):
        with pytest.raises(ValueError):
            make_executor(registry, workspace_root, [], max_iterations=0)


class TestStreaming:
    """Steps stream live and the stream is closed when execute returns."""

    def test_streamed_steps_match_result(self, registry, workspace_root):
        decisions = [tool_round("list_files"), AgentDecision(response="Listed")]
        executor, _ = make_executor(registry, workspace_root, decisions)
        stream = StepStream()

        result = executor.execute("List files", stream=stream)

        assert stream.closed
        assert [s.content for s in stream] == [s.content for s in result.steps]

    def test_consumer_cancel_stops_loop(self, registry, workspace_root):
        decisions = [tool_round("list_files") for _ in range(50)]
        executor, backend = make_executor(registry, workspace_root, decisions, max_iterations=50)
        stream = StepStream(maxsize=1, poll_interval=0.01)
        results = []

        worker = threading.Thread(target=lambda: results.append(executor.execute("Busy", stream=stream)))
        worker.start()
        first = stream.get(timeout=2)
        stream.cancel()
        worker.join(timeout=5)

        assert first is not None
        assert not worker.is_alive()
        assert results[0].success is False
        assert results[0].error == "cancelled"
        assert len(backend.calls) < 50


class TestRenderMessages:
    """Conversion of history and steps into backend turns."""

    def test_tool_steps_render_as_alternating_turns(self):
        history = [ConversationMessage(role="user", content="Fix the bug")]
        steps = [
            Step(type=StepType.TOOL_CALL, content="Calling read_file", tool_name="read_file",
                 tool_args={"path": "a.py"}),
            Step(type=StepType.TOOL_RESULT, content="Success", tool_name="read_file",
                 tool_result={"success": True, "data": {"content": "x = 1"}}),
        ]
        messages = render_messages(history, steps)

        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[1]["content"].startswith("Calling read_file with ")
        assert messages[2]["content"].startswith("Tool result from read_file:\n")

    def test_consecutive_same_role_turns_merge(self):
        history = [
            ConversationMessage(role="user", content="first"),
            ConversationMessage(role="user", content="second"),
        ]
        messages = render_messages(history, [])

        assert len(messages) == 1
        assert messages[0]["content"] == "first\n\nsecond"
