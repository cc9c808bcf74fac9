"""Local stand-in for the agent CLI used by integration tests and local runs.

Accepts the same flags as the real agent, prints a short stream-json
transcript and writes ``agent_output.txt`` into the working directory.
Behaviour knobs: ``ECHO_AGENT_EXIT_CODE``, ``ECHO_AGENT_SLEEP_SECONDS``,
``ECHO_AGENT_STDERR``.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
import uuid
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Emit a deterministic agent transcript."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--resume", default=None)
    parser.add_argument("--model", default=None)
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--mcp-config", default=None)
    parser.add_argument("--permission-mode", default="default")
    parser.add_argument("--allowedTools", action="append", default=[])
    parser.add_argument("--disallowedTools", action="append", default=[])
    parser.add_argument("--dangerously-skip-permissions", action="store_true")
    parser.add_argument("--print", dest="print_mode", action="store_true")
    parser.add_argument("prompt", nargs="?", default="")
    args, _ = parser.parse_known_args(argv)

    session_id = args.resume or f"echo-{uuid.uuid4().hex[:12]}"
    prompt = args.prompt.strip()

    _emit(
        {
            "type": "system",
            "subtype": "init",
            "session_id": session_id,
            "model": args.model,
            "permission_mode": args.permission_mode,
        },
    )
    stderr_line = os.getenv("ECHO_AGENT_STDERR", "")
    if stderr_line:
        print(stderr_line, file=sys.stderr, flush=True)

    sleep_seconds = float(os.getenv("ECHO_AGENT_SLEEP_SECONDS", "0"))
    if sleep_seconds > 0:
        time.sleep(sleep_seconds)

    _emit(
        {
            "type": "assistant",
            "session_id": session_id,
            "message": {"role": "assistant", "content": [{"type": "text", "text": f"echo: {prompt}"}]},
        },
    )
    Path("agent_output.txt").write_text(f"{prompt}\n", "utf-8")
    _emit({"type": "result", "subtype": "success", "session_id": session_id, "is_error": False})
    print("echo agent finished", flush=True)
    return int(os.getenv("ECHO_AGENT_EXIT_CODE", "0"))


def _emit(payload: dict[str, object]) -> None:
    print(json.dumps(payload), flush=True)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
