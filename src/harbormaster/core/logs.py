"""
Log multiplexing across the instances of a project.

Each instance's engine stream is drained by its own pump thread into one
shared queue, so records from different instances interleave in arrival order
while each instance's own order is preserved. Closing the stream (or
cancelling its context) closes every engine stream and joins the pumps.
"""

from __future__ import annotations

import queue
import threading
import time
from typing import Iterator, List, Optional, Sequence, Tuple

from harbormaster.core.context import OperationContext
from harbormaster.core.gateway import EngineLogStream
from harbormaster.core.models import LogLine, ServiceInstance
from harbormaster.utils.logger import logger

_END = object()
_POLL_INTERVAL = 0.1


class LogStream:
    def __init__(
        self,
        sources: Sequence[Tuple[ServiceInstance, EngineLogStream]],
        *,
        ctx: Optional[OperationContext] = None,
        close_grace: float = 2.0,
    ) -> None:
        self._ctx = ctx or OperationContext.background()
        self._close_grace = close_grace
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._closed = threading.Event()
        self._pending = len(sources)
        self._streams: List[EngineLogStream] = [stream for _, stream in sources]
        self._threads: List[threading.Thread] = []
        for instance, stream in sources:
            t = threading.Thread(
                target=self._pump,
                args=(instance, stream),
                name=f"logs-{instance.name}",
                daemon=True,
            )
            self._threads.append(t)
            t.start()

    def _pump(self, instance: ServiceInstance, stream: EngineLogStream) -> None:
        try:
            for ts, text in stream:
                if self._closed.is_set():
                    return
                self._queue.put(
                    LogLine(service=instance.service, instance_index=instance.index, timestamp=ts, text=text)
                )
        except Exception as e:
            if not self._closed.is_set():
                logger.warning(f"Log stream for {instance.name} ended with error: {e}")
        finally:
            if not self._closed.is_set():
                self._queue.put(LogLine(service=instance.service, instance_index=instance.index, final=True))
            self._queue.put(_END)

    # -------- consumer side --------

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def exhausted(self) -> bool:
        return self._closed.is_set() or (self._pending == 0 and self._queue.empty())

    @property
    def alive_pumps(self) -> int:
        return sum(1 for t in self._threads if t.is_alive())

    def _next(self, timeout: float) -> Optional[LogLine]:
        """Next record, None on timeout; StopIteration once exhausted or closed."""
        deadline = time.monotonic() + timeout
        while True:
            if self._ctx.done:
                self.close()
            if self._closed.is_set() or (self._pending == 0 and self._queue.empty()):
                raise StopIteration
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            try:
                item = self._queue.get(timeout=min(remaining, _POLL_INTERVAL))
            except queue.Empty:
                continue
            if item is _END:
                self._pending -= 1
                continue
            if self._closed.is_set():
                raise StopIteration
            return item  # type: ignore[return-value]

    def poll(self, timeout: float = _POLL_INTERVAL) -> Optional[LogLine]:
        """Non-raising variant of ``next``: None on timeout or exhaustion."""
        try:
            return self._next(timeout)
        except StopIteration:
            return None

    def __iter__(self) -> Iterator[LogLine]:
        return self

    def __next__(self) -> LogLine:
        while True:
            line = self._next(_POLL_INTERVAL)
            if line is not None:
                return line

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        for stream in self._streams:
            stream.close()
        deadline = time.monotonic() + self._close_grace
        for t in self._threads:
            if t is threading.current_thread():
                continue
            t.join(max(0.0, deadline - time.monotonic()))
        lingering = self.alive_pumps
        if lingering:
            logger.warning(f"{lingering} log pump(s) still running after {self._close_grace}s grace period")

    def __enter__(self) -> "LogStream":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
