"""In-memory table of live process handles."""

from __future__ import annotations

import threading

from agent_jobs.orchestrator.backend.base import ProcessHandle
from agent_jobs.orchestrator.errors import JobCancelled


class JobRegistry:
    """Maps job ids to live process handles.

    The single lock is held only for the map operation itself; killing or
    waiting on a handle always happens outside of it. A cancel requested
    before a job is running is parked here until the executor picks it up.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._live: dict[str, ProcessHandle] = {}
        self._deferred: dict[str, type[JobCancelled]] = {}

    def register(self, job_id: str, handle: ProcessHandle) -> None:
        with self._lock:
            if job_id in self._live:
                raise RuntimeError(f"Job already has a live process: {job_id}")
            self._live[job_id] = handle

    def unregister(self, job_id: str, handle: ProcessHandle | None = None) -> ProcessHandle | None:
        """Remove and return the handle; with ``handle`` given, only if it is still current."""

        with self._lock:
            current = self._live.get(job_id)
            if current is None or (handle is not None and current is not handle):
                return None
            return self._live.pop(job_id)

    def defer_cancel(self, job_id: str, cause: type[JobCancelled]) -> None:
        with self._lock:
            self._deferred[job_id] = cause

    def take_deferred(self, job_id: str) -> type[JobCancelled] | None:
        with self._lock:
            return self._deferred.pop(job_id, None)

    def get(self, job_id: str) -> ProcessHandle | None:
        with self._lock:
            return self._live.get(job_id)

    def is_live(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._live

    def live_job_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._live)
