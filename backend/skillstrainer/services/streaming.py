from __future__ import annotations

import json
import logging
import queue
import threading
from typing import Any, Callable, Iterator


log = logging.getLogger(__name__)

_TERMINAL = {"complete", "error"}
_CLOSE = object()


def format_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False, default=str)}\n\n"


class StreamChannel:
    """Ordered event sink with a soft deadline.

    When the deadline passes, one error event is sent and every later emission
    is dropped. The work feeding the channel is not interrupted. At most one
    terminal event (complete or error) ever reaches the sink.
    """

    def __init__(
        self,
        sink: Callable[[dict[str, Any]], None],
        *,
        timeout_seconds: float | None = None,
        timeout_message: str = "Request timed out. Please try again.",
    ) -> None:
        self._sink = sink
        self._timeout_seconds = timeout_seconds
        self._timeout_message = timeout_message
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._closed = False
        self.timed_out = False

    def __enter__(self) -> "StreamChannel":
        if self._timeout_seconds is not None and self._timeout_seconds > 0:
            self._timer = threading.Timer(float(self._timeout_seconds), self._on_deadline)
            self._timer.daemon = True
            self._timer.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _on_deadline(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.timed_out = True
            log.warning("stream deadline reached after %ss", self._timeout_seconds)
            self._sink({"type": "error", "message": self._timeout_message})

    def emit(self, event: dict[str, Any]) -> None:
        with self._lock:
            if self._closed:
                return
            if event.get("type") in _TERMINAL:
                self._closed = True
            self._sink(event)

    def progress(self, message: str) -> None:
        self.emit({"type": "progress", "message": message})

    def item(self, data: dict[str, Any]) -> None:
        self.emit({"type": "item", "data": data})

    def graded(self, data: dict[str, Any]) -> None:
        self.emit({"type": "graded", "data": data})

    def complete(self, data: dict[str, Any]) -> None:
        self.emit({"type": "complete", "data": data})

    def error(self, message: str) -> None:
        self.emit({"type": "error", "message": message})


class SseQueue:
    """Hands events from a worker thread to a streaming response generator."""

    def __init__(self) -> None:
        self._q: queue.Queue = queue.Queue()

    def put(self, event: dict[str, Any]) -> None:
        self._q.put(event)

    def close(self) -> None:
        self._q.put(_CLOSE)

    def frames(self) -> Iterator[str]:
        while True:
            item = self._q.get()
            if item is _CLOSE:
                return
            yield format_sse(item)
            if item.get("type") in _TERMINAL:
                return


def run_streaming(
    work: Callable[[StreamChannel], None],
    *,
    timeout_seconds: float | None,
    timeout_message: str,
    name: str = "quiz-stream",
) -> Iterator[str]:
    """Start `work` on its own thread and return the SSE frames it produces.

    The thread runs to completion even if nobody consumes the frames.
    """

    sse = SseQueue()

    def _run() -> None:
        channel = StreamChannel(sse.put, timeout_seconds=timeout_seconds, timeout_message=timeout_message)
        try:
            with channel:
                work(channel)
        except Exception:
            log.exception("stream worker crashed name=%s", name)
            channel.error("Something went wrong. Please try again.")
        finally:
            sse.close()

    t = threading.Thread(target=_run, name=name, daemon=True)
    t.start()
    return sse.frames()
