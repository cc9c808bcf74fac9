"""Launcher interface for external tool processes."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Protocol


@dataclass(slots=True)
class LaunchRequest:
    """Inputs required to start one external process."""

    argv: list[str]
    cwd: Path
    owner_id: str
    scope_id: str
    job_id: str
    extra_env: dict[str, str] = field(default_factory=dict)


class ProcessHandle(Protocol):
    """Live handle over a spawned process, owned by the job registry."""

    pid: int
    stdout: IO[bytes]
    stderr: IO[bytes]

    def wait(self) -> int:
        """Block until exit and return the exit status."""

    def kill(self) -> None:
        """Forcefully terminate the process and its children."""


class ProcessLauncher(Protocol):
    def launch(self, request: LaunchRequest) -> ProcessHandle:
        """Spawn the process or raise ``SpawnError``."""
