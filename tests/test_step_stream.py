"""Tests for the agent step stream."""

import asyncio
import threading
from datetime import datetime, timedelta

import pytest

from nexaflow.core.exceptions import StreamClosedError
from nexaflow.core.step_stream import StepStream
from nexaflow.models.core import Step, StepType


def make_step(content, **kwargs):
    return Step(type=StepType.THOUGHT, content=content, **kwargs)


class TestStepStream:
    """Test cases for StepStream."""

    def test_steps_delivered_in_emission_order(self):
        stream = StepStream()
        for i in range(5):
            stream.emit(make_step(f"step {i}"))
        stream.close()

        assert [s.content for s in stream] == [f"step {i}" for i in range(5)]

    def test_emit_after_close_raises(self):
        stream = StepStream()
        stream.close()
        with pytest.raises(StreamClosedError):
            stream.emit(make_step("late"))

    def test_close_is_idempotent(self):
        stream = StepStream()
        stream.emit(make_step("only"))
        stream.close()
        stream.close()

        assert [s.content for s in stream] == ["only"]
        # end of stream stays visible to later readers
        assert stream.get(timeout=0.1) is None

    def test_timestamps_never_go_backwards(self):
        stream = StepStream()
        now = datetime.utcnow()
        stream.emit(make_step("first", timestamp=now))
        delivered = stream.emit(make_step("second", timestamp=now - timedelta(seconds=5)))
        stream.close()

        assert delivered.timestamp == now
        steps = list(stream)
        assert steps[0].timestamp <= steps[1].timestamp

    def test_cancel_stops_producer(self):
        stream = StepStream()
        stream.emit(make_step("before"))
        stream.cancel()

        assert stream.is_cancelled
        assert stream.closed
        with pytest.raises(StreamClosedError):
            stream.emit(make_step("after"))

    def test_cancel_unblocks_producer_on_full_stream(self):
        stream = StepStream(maxsize=1, poll_interval=0.01)
        stream.emit(make_step("fills the buffer"))
        errors = []

        def produce():
            try:
                stream.emit(make_step("blocked"))
            except StreamClosedError as e:
                errors.append(e)

        producer = threading.Thread(target=produce)
        producer.start()
        stream.cancel()
        producer.join(timeout=2)

        assert not producer.is_alive()
        assert len(errors) == 1

    def test_snapshot_returns_history(self):
        stream = StepStream()
        stream.emit(make_step("a"))
        stream.emit(make_step("b"))

        assert [s.content for s in stream.snapshot()] == ["a", "b"]

    def test_async_iteration_with_threaded_producer(self):
        stream = StepStream()

        def produce():
            for i in range(3):
                stream.emit(make_step(f"async {i}"))
            stream.close()

        async def consume():
            producer = threading.Thread(target=produce)
            producer.start()
            received = [step.content async for step in stream.aiter()]
            producer.join()
            return received

        assert asyncio.run(consume()) == ["async 0", "async 1", "async 2"]

    def test_step_event_is_json_ready(self):
        step = Step(type=StepType.TOOL_CALL, content="Calling read_file", tool_name="read_file",
                    tool_args={"path": "a.txt"})
        event = step.to_event()

        assert event["type"] == "tool_call"
        assert event["tool_args"] == {"path": "a.txt"}
        assert isinstance(event["timestamp"], str)
        assert "tool_result" not in event
