from __future__ import annotations

import io
import json
import os
import threading
from typing import Any

import allure

from agent_jobs.orchestrator.models import EventName, LogLevel
from agent_jobs.orchestrator.multiplexer import (
    STDERR,
    STDOUT,
    LineKind,
    OutputMultiplexer,
    classify_line,
    extract_text,
)

pytestmark = [
    allure.epic("Job Runtime"),
    allure.feature("Output Multiplexing"),
]


class _RecordingSink:
    def __init__(self) -> None:
        self.records: list[tuple[LogLevel, str, dict[str, Any] | None]] = []
        self.events: list[tuple[EventName, dict[str, Any], int | None]] = []
        self._lock = threading.Lock()

    def record(
        self,
        level: LogLevel,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> int | None:
        with self._lock:
            self.records.append((level, message, metadata))
            return len(self.records)

    def emit(self, name: EventName, data: dict[str, Any], log_id: int | None = None) -> None:
        with self._lock:
            self.events.append((name, data, log_id))


def _pipe(*lines: str) -> io.BytesIO:
    return io.BytesIO("".join(f"{line}\n" for line in lines).encode("utf-8"))


def test_classify_line() -> None:
    assert classify_line(STDERR, "warning: x") is LineKind.ERROR
    assert classify_line(STDOUT, '{"type": "assistant"}') is LineKind.STRUCTURED
    assert classify_line(STDOUT, "[1, 2]") is LineKind.TEXT
    assert classify_line(STDOUT, "{broken") is LineKind.TEXT
    assert classify_line(STDOUT, "   ") is None


def test_extract_text_variants() -> None:
    assert extract_text({"text": "plain"}) == "plain"
    assert extract_text({"message": {"content": "direct"}}) == "direct"
    assert (
        extract_text(
            {
                "message": {
                    "content": [
                        {"type": "text", "text": "a"},
                        {"type": "tool_use", "name": "Read"},
                        {"type": "text", "text": "b"},
                    ],
                },
            },
        )
        == "ab"
    )
    assert extract_text({"type": "result", "result": "final"}) == "final"
    assert extract_text({"type": "result", "result": "final"}, accumulated=True) == ""
    assert extract_text({"type": "system", "subtype": "init"}) == ""


def test_multiplexer_classifies_and_persists_before_publishing() -> None:
    stdout = _pipe(
        json.dumps({"type": "system", "subtype": "init", "session_id": "sess-9"}),
        json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "hi"}]}}),
        "",
        "plain progress",
    )
    stderr = _pipe("npm WARN deprecated")
    sink = _RecordingSink()

    result = OutputMultiplexer(stdout=stdout, stderr=stderr, sink=sink).run()

    assert result.tool_session_id == "sess-9"
    assert result.accumulated_response == "hiplain progress\n"
    assert result.line_counts == {"structured": 2, "text": 1, "error": 1}
    assert "npm WARN deprecated\n" in result.output

    names = [name for name, _, _ in sink.events]
    assert names.count(EventName.RESPONSE) == 2
    assert names.count(EventName.SESSION_IDENTIFIED) == 1
    assert names.count(EventName.OUTPUT) == 1
    assert names.count(EventName.ERROR) == 1
    assert all(log_id is not None for _, _, log_id in sink.events)

    error_records = [record for record in sink.records if record[0] is LogLevel.ERROR]
    assert [message for _, message, _ in error_records] == ["npm WARN deprecated"]
    stdout_messages = [message for level, message, _ in sink.records if level is LogLevel.INFO]
    assert stdout_messages[-1] == "plain progress"


def test_known_session_is_not_announced_again() -> None:
    stdout = _pipe(json.dumps({"type": "system", "session_id": "resumed"}))
    sink = _RecordingSink()

    result = OutputMultiplexer(
        stdout=stdout,
        stderr=_pipe(),
        sink=sink,
        tool_session_id="resumed",
    ).run()

    assert result.tool_session_id == "resumed"
    assert EventName.SESSION_IDENTIFIED not in [name for name, _, _ in sink.events]


def test_early_closed_stream_does_not_block_the_other() -> None:
    read_fd, write_fd = os.pipe()
    stderr = os.fdopen(read_fd, "rb")
    stdout = _pipe(*[f"line {index}" for index in range(50)])
    sink = _RecordingSink()

    def _late_writer() -> None:
        with os.fdopen(write_fd, "wb") as writer:
            writer.write(b"late failure\n")

    multiplexer = OutputMultiplexer(stdout=stdout, stderr=stderr, sink=sink, buffer_size=2)
    writer = threading.Timer(0.2, _late_writer)
    writer.start()
    try:
        result = multiplexer.run()
    finally:
        writer.join()
        stderr.close()

    assert result.line_counts == {"text": 50, "error": 1}
    assert [message for level, message, _ in sink.records if level is LogLevel.ERROR] == [
        "late failure",
    ]


def test_blank_lines_are_kept_in_output_and_log_but_not_published() -> None:
    sink = _RecordingSink()

    result = OutputMultiplexer(
        stdout=_pipe("a", "", "b"),
        stderr=_pipe("   "),
        sink=sink,
    ).run()

    assert "   \n" in result.output
    assert result.output.replace("   \n", "", 1) == "a\n\nb\n"
    assert result.line_counts == {"text": 2}
    assert result.accumulated_response == "a\nb\n"
    assert [message for level, message, _ in sink.records if level is LogLevel.INFO] == [
        "a",
        "",
        "b",
    ]
    assert [message for level, message, _ in sink.records if level is LogLevel.ERROR] == ["   "]
    assert [data for _, data, _ in sink.events] == [{"data": "a"}, {"data": "b"}]
