"""Merge a child process's stdout/stderr into ordered logs and live events."""

from __future__ import annotations

import json
import logging
import queue
import threading
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import IO, Any, Protocol

from agent_jobs.orchestrator.models import EventName, LogLevel

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"

_END_OF_STREAM = object()
_PUT_POLL_SECONDS = 0.5


class LineKind(str, Enum):
    ERROR = "error"
    STRUCTURED = "structured"
    TEXT = "text"


class LineSink(Protocol):
    """Destination for classified lines: durable log first, then live event."""

    def record(
        self,
        level: LogLevel,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> int | None:
        """Persist a log line and return its id."""

    def emit(self, name: EventName, data: dict[str, Any], log_id: int | None = None) -> None:
        """Publish a live event."""


@dataclass(slots=True)
class MultiplexResult:
    """Everything captured from one process's output."""

    output: str
    accumulated_response: str
    tool_session_id: str | None
    line_counts: dict[str, int] = field(default_factory=dict)


class OutputMultiplexer:
    """Read both pipes concurrently; classify and forward lines from one consumer.

    Each pipe has its own reader thread pushing decoded lines onto one bounded
    queue, so a stream that closes early never blocks the other. ``run``
    returns only after both readers reached end-of-stream.
    """

    def __init__(
        self,
        *,
        stdout: IO[bytes],
        stderr: IO[bytes],
        sink: LineSink,
        tool_session_id: str | None = None,
        buffer_size: int = 64,
    ) -> None:
        self._pipes = {STDOUT: stdout, STDERR: stderr}
        self._sink = sink
        self._queue: queue.Queue[object] = queue.Queue(maxsize=max(1, buffer_size))
        self._stopped = threading.Event()
        self._output: list[str] = []
        self._accumulated: list[str] = []
        self._tool_session_id = tool_session_id
        self._counts: Counter[str] = Counter()

    def run(self) -> MultiplexResult:
        readers = [
            threading.Thread(
                target=self._read,
                args=(name, pipe),
                name=f"multiplexer-{name}",
                daemon=True,
            )
            for name, pipe in self._pipes.items()
        ]
        for reader in readers:
            reader.start()

        remaining = len(readers)
        try:
            while remaining:
                item = self._queue.get()
                if item is _END_OF_STREAM:
                    remaining -= 1
                    continue
                stream, text = item  # type: ignore[misc]
                self._handle(stream, text)
        finally:
            self._stopped.set()
        for reader in readers:
            reader.join()

        return MultiplexResult(
            output="".join(self._output),
            accumulated_response="".join(self._accumulated),
            tool_session_id=self._tool_session_id,
            line_counts=dict(self._counts),
        )

    def _read(self, stream: str, pipe: IO[bytes]) -> None:
        try:
            for raw in iter(pipe.readline, b""):
                text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not self._put((stream, text)):
                    return
        except (OSError, ValueError) as error:
            logger.warning("Reader for %s stopped: %s", stream, error)
        finally:
            self._put(_END_OF_STREAM)

    def _put(self, item: object) -> bool:
        while not self._stopped.is_set():
            try:
                self._queue.put(item, timeout=_PUT_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def _handle(self, stream: str, text: str) -> None:
        self._output.append(text + "\n")
        if not text.strip():
            # Kept in the output and the log, but neither classified nor published.
            self._sink.record(LogLevel.ERROR if stream == STDERR else LogLevel.INFO, text)
            return

        if stream == STDERR:
            self._counts[LineKind.ERROR.value] += 1
            log_id = self._sink.record(LogLevel.ERROR, text)
            self._sink.emit(EventName.ERROR, {"error": text}, log_id)
            return

        payload = _parse_object(text)
        if payload is None:
            self._counts[LineKind.TEXT.value] += 1
            self._accumulated.append(text + "\n")
            log_id = self._sink.record(LogLevel.INFO, text)
            self._sink.emit(EventName.OUTPUT, {"data": text}, log_id)
            return

        self._counts[LineKind.STRUCTURED.value] += 1
        merged = extract_text(payload, accumulated=bool(self._accumulated))
        if merged:
            self._accumulated.append(merged)
        log_id = self._sink.record(LogLevel.INFO, text, payload)
        self._sink.emit(EventName.RESPONSE, payload, log_id)

        session_id = payload.get("session_id")
        if isinstance(session_id, str) and session_id and session_id != self._tool_session_id:
            self._tool_session_id = session_id
            log_id = self._sink.record(
                LogLevel.INFO,
                f"session identified: {session_id}",
                {"session_id": session_id},
            )
            self._sink.emit(EventName.SESSION_IDENTIFIED, {"session_id": session_id}, log_id)


def classify_line(stream: str, text: str) -> LineKind | None:
    """Return how a line would be treated, or ``None`` for ignored lines."""

    if not text.strip():
        return None
    if stream == STDERR:
        return LineKind.ERROR
    return LineKind.STRUCTURED if _parse_object(text) is not None else LineKind.TEXT


def extract_text(payload: dict[str, Any], *, accumulated: bool = False) -> str:
    """Pull human-readable text out of one structured agent event.

    ``result`` events repeat the final answer, so their text only counts when
    nothing was accumulated before.
    """

    text = payload.get("text")
    if isinstance(text, str):
        return text

    message = payload.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts = [
                part["text"]
                for part in content
                if isinstance(part, dict)
                and part.get("type", "text") == "text"
                and isinstance(part.get("text"), str)
            ]
            return "".join(parts)

    if payload.get("type") == "result" and not accumulated:
        result = payload.get("result")
        if isinstance(result, str):
            return result
    return ""


def _parse_object(text: str) -> dict[str, Any] | None:
    stripped = text.strip()
    if not stripped.startswith("{"):
        return None
    try:
        parsed = json.loads(stripped)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None
