"""Controllers for job CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_jobs.config import Settings
from agent_jobs.orchestrator.models import AgentOptions, JobCreate, JobView, LogEntryView
from agent_jobs.orchestrator.repository import JobRepository
from agent_jobs.orchestrator.services import build_service


@dataclass(slots=True)
class JobsRunCommand:
    """CLI input for running one job in-process."""

    db_path: Path | None
    owner_id: str
    scope_id: str
    command: str | None
    user_input: str | None
    options_json: str | None
    session_id: str | None
    timeout_seconds: float | None


@dataclass(slots=True)
class JobsListCommand:
    db_path: Path | None
    owner_id: str | None
    scope_id: str | None
    limit: int


@dataclass(slots=True)
class JobsInspectCommand:
    db_path: Path | None
    job_id: str
    limit: int = 200


@dataclass(slots=True)
class JobsCliController:
    """Coordinates job execution and inspection CLI operations."""

    def run(self, command: JobsRunCommand) -> list[str]:
        """Create a job, wait for it and print its log."""

        settings = Settings.from_env(db_path=command.db_path)
        options = None
        if command.user_input is not None:
            options = AgentOptions.from_dict(
                json.loads(command.options_json) if command.options_json else None,
            )
        service = build_service(settings)
        lines: list[str] = []
        try:
            job = service.create_job(
                JobCreate(
                    owner_id=command.owner_id,
                    scope_id=command.scope_id,
                    session_id=command.session_id,
                    command=command.command,
                    user_input=command.user_input,
                    options=options,
                ),
            )
            lines.append(f"Job created: job_id={job.job_id} kind={job.kind.value}")
            service.wait_for(job.job_id, timeout=command.timeout_seconds)
            lines.extend(_render_log(entry) for entry in service.get_logs(job.job_id))
            lines.extend(_render_job(service.get_job(job.job_id)))
        finally:
            service.shutdown()
            service.repository.close()
        return lines

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                owner_id=command.owner_id,
                scope_id=command.scope_id,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} kind={job.kind.value} status={job.status.value} "
                f"owner={job.owner_id} scope={job.scope_id} "
                f"exit_code={job.exit_code if job.exit_code is not None else '-'} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def show_job(self, command: JobsInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.get_job(job_id=command.job_id)
            snapshot = (
                repository.get_scope_snapshot(owner_id=job.owner_id, scope_id=job.scope_id)
                if job is not None
                else None
            )
        if job is None:
            return [f"Job not found: {command.job_id}"]

        lines = _render_job(job)
        if snapshot is not None:
            lines.append(
                f"Snapshot: {snapshot.object_path or '-'} "
                f"last_sync={snapshot.last_sync_status or '-'}",
            )
            if snapshot.last_sync_error:
                lines.append(f"Last sync error: {snapshot.last_sync_error}")
        return lines

    def logs(self, command: JobsInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if repository.get_job(job_id=command.job_id) is None:
                return [f"Job not found: {command.job_id}"]
            entries = repository.list_logs(job_id=command.job_id, limit=command.limit)
        return [_render_log(entry) for entry in entries]


def _render_job(job: JobView) -> list[str]:
    lines = [
        f"Job: {job.job_id}",
        f"Kind: {job.kind.value}",
        f"Status: {job.status.value}",
        f"Owner/scope: {job.owner_id}/{job.scope_id}",
        f"Command: {job.command}",
        f"PID: {job.process_id if job.process_id is not None else '-'}",
        f"Exit code: {job.exit_code if job.exit_code is not None else '-'}",
        f"Error: {job.error or '-'}",
        f"Working dir: {job.working_dir or '-'}",
    ]
    if job.tool_session_id:
        lines.append(f"Tool session: {job.tool_session_id}")
    if job.accumulated_response:
        lines.append("Response:")
        lines.extend(f"  {line}" for line in job.accumulated_response.splitlines())
    return lines


def _render_log(entry: LogEntryView) -> str:
    return f"{entry.timestamp.isoformat()} {entry.level.value.upper():5} {entry.message}"


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
