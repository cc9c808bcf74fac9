"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from dataclasses import replace
from pathlib import Path

import pytest

from agent_jobs.config import Settings
from agent_jobs.orchestrator.repository import JobRepository
from agent_jobs.orchestrator.services import OrchestratorService, build_service
from agent_jobs.sync.object_store import LocalObjectStore

ECHO_AGENT_COMMAND = (sys.executable, "-m", "agent_jobs.orchestrator.backend.echo_agent")


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings isolated under ``tmp_path`` with the echo agent as the agent CLI."""

    base = Settings.from_env(db_path=tmp_path / "jobs.db")
    execution = replace(
        base.execution,
        workdir_root=tmp_path / "workdirs",
        agent_command=ECHO_AGENT_COMMAND,
        discover_mcp_config=False,
        mcp_config_path=None,
        project_template_zip=None,
        keepalive_seconds=0.5,
    )
    storage = replace(base.storage, backend="local", local_root=tmp_path / "objects")
    return replace(base, execution=execution, storage=storage)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(tmp_path / "repo.db")
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def service(settings: Settings) -> Iterator[OrchestratorService]:
    service = build_service(settings, store=LocalObjectStore(settings.storage.local_root))
    yield service
    service.shutdown()
    service.repository.close()


@pytest.fixture()
def echo_agent_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Reset echo agent knobs so a developer's environment does not leak in."""

    for name in ("ECHO_AGENT_EXIT_CODE", "ECHO_AGENT_SLEEP_SECONDS", "ECHO_AGENT_STDERR"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
