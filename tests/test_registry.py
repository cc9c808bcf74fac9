from __future__ import annotations

import io

import allure
import pytest

from agent_jobs.orchestrator.errors import CancelledByDisconnect
from agent_jobs.orchestrator.registry import JobRegistry

pytestmark = [
    allure.epic("Job Runtime"),
    allure.feature("Live Handle Registry"),
]


class _Handle:
    pid = 1
    stdout = io.BytesIO()
    stderr = io.BytesIO()

    def wait(self) -> int:
        return 0

    def kill(self) -> None:
        return None


def test_register_and_unregister_only_current_handle() -> None:
    registry = JobRegistry()
    first, stale = _Handle(), _Handle()

    registry.register("j1", first)

    assert registry.is_live("j1")
    with pytest.raises(RuntimeError, match="already has a live process"):
        registry.register("j1", _Handle())
    assert registry.unregister("j1", stale) is None
    assert registry.unregister("j1", first) is first
    assert registry.live_job_ids() == []


def test_parked_cancel_is_taken_once() -> None:
    registry = JobRegistry()

    registry.defer_cancel("j1", CancelledByDisconnect)

    assert registry.take_deferred("j1") is CancelledByDisconnect
    assert registry.take_deferred("j1") is None
    assert not registry.is_live("j1")
