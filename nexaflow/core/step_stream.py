"""Ordered, cancellable channel of agent steps.

The producer (``AgentExecutor.execute``, usually on a worker thread) calls
``emit`` for each step; the consumer iterates either synchronously or with
``aiter`` from an event loop. Steps are delivered exactly once, in emission
order. A bounded stream applies backpressure: ``emit`` blocks while the
buffer is full until the consumer drains it or cancels.
"""

import asyncio
import queue
import threading
from typing import AsyncIterator, Iterator, List, Optional

from ..models.core import Step
from .exceptions import StreamClosedError
from .logging import get_logger


logger = get_logger(__name__)

_CLOSED = object()


class StepStream:
    """Single-producer, single-consumer stream of immutable ``Step`` records."""

    def __init__(self, maxsize: int = 0, poll_interval: float = 0.05):
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self._closed = False
        self._cancelled = threading.Event()
        self._last_timestamp = None
        self._history: List[Step] = []
        self._poll_interval = poll_interval

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def emit(self, step: Step) -> Step:
        """Append ``step`` to the stream and return the step as delivered.

        A step whose timestamp precedes the previous one is re-stamped with
        the previous timestamp so consumers always see non-decreasing times.
        """
        with self._lock:
            if self._closed or self._cancelled.is_set():
                raise StreamClosedError()
            if self._last_timestamp is not None and step.timestamp < self._last_timestamp:
                step = step.model_copy(update={"timestamp": self._last_timestamp})
            self._last_timestamp = step.timestamp
            self._history.append(step)

        self._put(step)
        return step

    def close(self):
        """Signal end of stream. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._put(_CLOSED, force=True)

    def cancel(self):
        """Consumer-side cancellation: the producer stops at its next emit."""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        logger.debug("Step stream cancelled by consumer")
        # Unblock a producer waiting on a full queue.
        self._drain()
        self.close()

    def snapshot(self) -> List[Step]:
        """All steps emitted so far, in order."""
        with self._lock:
            return list(self._history)

    def _put(self, item, force: bool = False):
        while True:
            if self._cancelled.is_set() and not force:
                raise StreamClosedError("Step stream was cancelled")
            try:
                self._queue.put(item, timeout=self._poll_interval)
            except queue.Full:
                if force:
                    self._drain()
                continue
            if self._cancelled.is_set() and not force:
                # slot freed by cancel's drain; the consumer is gone
                raise StreamClosedError("Step stream was cancelled")
            return

    def _drain(self):
        try:
            while True:
                self._queue.get_nowait()
        except queue.Empty:
            pass

    def get(self, block: bool = True, timeout: Optional[float] = None) -> Optional[Step]:
        """Next step, or None at end of stream. Raises ``queue.Empty`` when nothing is ready."""
        item = self._queue.get(block=block, timeout=timeout)
        if item is _CLOSED:
            # keep the sentinel visible to later readers
            self._queue.put(_CLOSED)
            return None
        return item

    def __iter__(self) -> Iterator[Step]:
        while True:
            step = self.get()
            if step is None:
                return
            yield step

    async def aiter(self, delay: float = 0.0) -> AsyncIterator[Step]:
        """Async iteration for event-loop consumers, pausing ``delay`` seconds after each step."""
        while True:
            try:
                step = self.get(block=False)
            except queue.Empty:
                await asyncio.sleep(self._poll_interval / 5)
                continue
            if step is None:
                return
            yield step
            if delay:
                await asyncio.sleep(delay)
