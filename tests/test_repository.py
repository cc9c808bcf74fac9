from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import allure

from agent_jobs.orchestrator.models import (
    AgentOptions,
    JobCreate,
    JobKind,
    JobStatus,
    LogLevel,
    PermissionMode,
)
from agent_jobs.orchestrator.repository import JobRepository

pytestmark = [
    allure.epic("Job Runtime"),
    allure.feature("Durable Job State"),
]


def _shell_job(repository: JobRepository, *, owner_id: str = "u1", scope_id: str = "p1"):
    return repository.create_job(
        JobCreate(owner_id=owner_id, scope_id=scope_id, command="echo hi"),
    )


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    repository = JobRepository(db_path)
    repository.init_schema()
    repository.init_schema()
    repository.close()

    with sqlite3.connect(db_path) as connection:
        version = connection.execute("SELECT version_num FROM alembic_version").fetchall()
        tables = connection.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' "
            "AND name IN ('jobs', 'job_logs', 'scope_snapshots') ORDER BY name",
        ).fetchall()
    assert version == [("20261001_0001",)]
    assert [row[0] for row in tables] == ["job_logs", "jobs", "scope_snapshots"]


def test_create_job_persists_pending_agent_job_with_options(repository: JobRepository) -> None:
    job = repository.create_job(
        JobCreate(
            owner_id="u1",
            scope_id="p1",
            session_id="s1",
            user_input="add a README",
            options=AgentOptions(model="opus", permission_mode=PermissionMode.PLAN),
            metadata={"commit_message": "docs"},
        ),
    )

    loaded = repository.get_job(job_id=job.job_id)
    assert loaded is not None
    assert loaded.kind is JobKind.AGENT
    assert loaded.status is JobStatus.PENDING
    assert loaded.command == "add a README"
    assert loaded.options is not None
    assert loaded.options.model == "opus"
    assert loaded.options.permission_mode is PermissionMode.PLAN
    assert loaded.metadata == {"commit_message": "docs"}
    assert loaded.process_id is None
    assert loaded.started_at is None
    assert loaded.created_at.tzinfo is not None


def test_transitions_are_conditional_and_terminal_states_stick(
    repository: JobRepository,
) -> None:
    job = _shell_job(repository)

    assert repository.complete_job(job_id=job.job_id, exit_code=0, output="") is False
    assert repository.mark_running(job_id=job.job_id, process_id=4242) is True
    assert repository.mark_running(job_id=job.job_id, process_id=9999) is False
    assert repository.complete_job(job_id=job.job_id, exit_code=0, output="hi\n") is True

    assert repository.fail_job(job_id=job.job_id, error="late") is False
    assert repository.cancel_job(job_id=job.job_id, reason="user") is False

    loaded = repository.get_job(job_id=job.job_id)
    assert loaded is not None
    assert loaded.status is JobStatus.COMPLETED
    assert loaded.process_id == 4242
    assert loaded.exit_code == 0
    assert loaded.output == "hi\n"
    assert loaded.started_at is not None
    assert loaded.completed_at is not None
    assert loaded.error is None


def test_cancel_records_reason_and_late_output(repository: JobRepository) -> None:
    job = _shell_job(repository)
    repository.mark_running(job_id=job.job_id, process_id=1)

    assert repository.cancel_job(job_id=job.job_id, reason="disconnect") is True
    assert repository.complete_job(job_id=job.job_id, exit_code=0, output="x") is False
    assert repository.record_cancelled_output(
        job_id=job.job_id,
        exit_code=-9,
        output="partial\n",
    )
    assert not repository.record_cancelled_output(job_id=job.job_id, exit_code=0, output="")

    loaded = repository.get_job(job_id=job.job_id)
    assert loaded is not None
    assert loaded.status is JobStatus.CANCELLED
    assert loaded.error == "cancelled by disconnect"
    assert loaded.metadata["cancel_reason"] == "disconnect"
    assert loaded.exit_code == -9
    assert loaded.output == "partial\n"


def test_pending_job_cannot_be_cancelled(repository: JobRepository) -> None:
    job = _shell_job(repository)

    assert repository.cancel_job(job_id=job.job_id, reason="user") is False
    assert repository.cancel_job(job_id="missing", reason="user") is False
    assert repository.fail_job(job_id=job.job_id, error="spawn failed") is True


def test_list_jobs_filters_and_orders_most_recent_first(repository: JobRepository) -> None:
    first = _shell_job(repository, owner_id="u1", scope_id="p1")
    second = _shell_job(repository, owner_id="u1", scope_id="p2")
    _shell_job(repository, owner_id="u2", scope_id="p1")

    owned = repository.list_jobs(owner_id="u1")
    assert [job.job_id for job in owned] == [second.job_id, first.job_id]
    assert [job.job_id for job in repository.list_jobs(owner_id="u1", scope_id="p1")] == [
        first.job_id,
    ]
    assert len(repository.list_jobs(limit=2)) == 2
    assert {job.job_id for job in repository.list_non_terminal_jobs()} >= {
        first.job_id,
        second.job_id,
    }


def test_logs_are_ordered_and_support_cursor(repository: JobRepository) -> None:
    job = _shell_job(repository)
    entries = [
        repository.append_log(job_id=job.job_id, level=LogLevel.INFO, message=f"line {index}")
        for index in range(5)
    ]
    repository.append_log(
        job_id=job.job_id,
        level=LogLevel.ERROR,
        message="boom",
        metadata={"stream": "stderr"},
    )

    logs = repository.list_logs(job_id=job.job_id)
    assert [entry.message for entry in logs] == [f"line {i}" for i in range(5)] + ["boom"]
    assert [entry.timestamp for entry in logs] == sorted(entry.timestamp for entry in logs)
    assert logs[-1].metadata == {"stream": "stderr"}
    assert logs[-1].to_payload()["build_id"] == job.job_id

    tail = repository.list_logs(job_id=job.job_id, after_log_id=entries[2].log_id, limit=2)
    assert [entry.message for entry in tail] == ["line 3", "line 4"]


def test_concurrent_appends_keep_every_line(repository: JobRepository) -> None:
    job = _shell_job(repository)

    def _append(prefix: str) -> None:
        for index in range(20):
            repository.append_log(
                job_id=job.job_id,
                level=LogLevel.INFO,
                message=f"{prefix}-{index}",
            )

    threads = [threading.Thread(target=_append, args=(name,)) for name in ("out", "err")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    logs = repository.list_logs(job_id=job.job_id)
    assert len(logs) == 40
    for prefix in ("out", "err"):
        own = [entry.message for entry in logs if entry.message.startswith(prefix)]
        assert own == [f"{prefix}-{index}" for index in range(20)]


def test_snapshot_failure_does_not_clear_object_path(repository: JobRepository) -> None:
    assert repository.get_scope_snapshot(owner_id="u1", scope_id="p1") is None
    first = repository.record_snapshot_failure(
        owner_id="u1",
        scope_id="p1",
        job_id="j0",
        error="x",
    )
    assert first.object_path is None

    repository.record_snapshot_success(
        owner_id="u1",
        scope_id="p1",
        object_path="b/p1.zip",
        job_id="j1",
    )
    failed = repository.record_snapshot_failure(
        owner_id="u1",
        scope_id="p1",
        job_id="j2",
        error="timeout",
    )

    assert failed.object_path == "b/p1.zip"
    assert failed.last_job_id == "j1"
    assert failed.last_sync_status == "failed"
    assert failed.last_sync_error == "timeout"

    recovered = repository.record_snapshot_success(
        owner_id="u1",
        scope_id="p1",
        object_path="b/p1.zip",
        job_id="j3",
    )
    assert recovered.last_sync_status == "ok"
    assert recovered.last_sync_error is None


def test_snapshots_are_kept_per_owner(repository: JobRepository) -> None:
    repository.record_snapshot_success(
        owner_id="alice",
        scope_id="p1",
        object_path="b/users/alice/projects/p1.zip",
        job_id="j1",
    )

    assert repository.get_scope_snapshot(owner_id="bob", scope_id="p1") is None
    repository.record_snapshot_success(
        owner_id="bob",
        scope_id="p1",
        object_path="b/users/bob/projects/p1.zip",
        job_id="j2",
    )

    alice = repository.get_scope_snapshot(owner_id="alice", scope_id="p1")
    bob = repository.get_scope_snapshot(owner_id="bob", scope_id="p1")
    assert alice is not None
    assert bob is not None
    assert (alice.object_path, alice.last_job_id) == ("b/users/alice/projects/p1.zip", "j1")
    assert (bob.object_path, bob.last_job_id) == ("b/users/bob/projects/p1.zip", "j2")
