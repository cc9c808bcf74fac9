"""Persistent job and log repository."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_jobs.orchestrator.models import (
    AgentOptions,
    JobCreate,
    JobKind,
    JobStatus,
    JobView,
    LogEntryView,
    LogLevel,
    ScopeSnapshotView,
)
from agent_jobs.storage.alembic_runner import upgrade_head
from agent_jobs.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_jobs.storage.sqlmodel_models import Job, JobLog, ScopeSnapshot

SYNC_STATUS_OK = "ok"
SYNC_STATUS_FAILED = "failed"


class JobRepository:
    """Job persistence facade backed by SQLModel + SQLite.

    Every state change is a conditional update on the expected source
    status, so a job leaves a terminal state never and each of
    ``process_id``/``started_at``/``completed_at`` is written once.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self._append_lock = threading.Lock()
        self._last_log_timestamp: datetime | None = None

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(self, payload: JobCreate, *, job_id: str | None = None) -> JobView:
        """Persist a new pending job."""

        now = to_db_datetime(utc_now())
        kind = payload.kind
        command = payload.user_input if kind is JobKind.AGENT else payload.command
        options_json = None
        if kind is JobKind.AGENT:
            options_json = _dump_json((payload.options or AgentOptions()).to_dict())
        with Session(self.engine) as session:
            row = Job(
                job_id=job_id or str(uuid4()),
                owner_id=payload.owner_id,
                scope_id=payload.scope_id,
                session_id=payload.session_id,
                kind=kind.value,
                command=command or "",
                options_json=options_json,
                status=JobStatus.PENDING.value,
                metadata_json=_dump_json(payload.metadata),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def set_working_dir(self, *, job_id: str, working_dir: Path) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Job)
                .where(col(Job.job_id) == job_id)
                .values(working_dir=str(working_dir), updated_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def mark_running(self, *, job_id: str, process_id: int) -> bool:
        """Transition pending -> running once the process has been spawned."""

        now = to_db_datetime(utc_now())
        return self._transition(
            job_id=job_id,
            expected=(JobStatus.PENDING,),
            values={
                "status": JobStatus.RUNNING.value,
                "process_id": process_id,
                "started_at": now,
                "updated_at": now,
            },
        )

    def complete_job(
        self,
        *,
        job_id: str,
        exit_code: int,
        output: str,
        accumulated_response: str | None = None,
        tool_session_id: str | None = None,
    ) -> bool:
        """Transition running -> completed."""

        now = to_db_datetime(utc_now())
        return self._transition(
            job_id=job_id,
            expected=(JobStatus.RUNNING,),
            values={
                "status": JobStatus.COMPLETED.value,
                "exit_code": exit_code,
                "output": output,
                "accumulated_response": accumulated_response,
                "tool_session_id": tool_session_id,
                "completed_at": now,
                "updated_at": now,
            },
        )

    def fail_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        error: str,
        exit_code: int | None = None,
        output: str | None = None,
        accumulated_response: str | None = None,
        tool_session_id: str | None = None,
        expected: Iterable[JobStatus] = (JobStatus.PENDING, JobStatus.RUNNING),
    ) -> bool:
        """Transition pending/running -> failed."""

        now = to_db_datetime(utc_now())
        return self._transition(
            job_id=job_id,
            expected=tuple(expected),
            values={
                "status": JobStatus.FAILED.value,
                "error": error,
                "exit_code": exit_code,
                "output": output,
                "accumulated_response": accumulated_response,
                "tool_session_id": tool_session_id,
                "completed_at": now,
                "updated_at": now,
            },
        )

    def cancel_job(self, *, job_id: str, reason: str) -> bool:
        """Transition running -> cancelled and record the cause in metadata."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                return False
            metadata = _load_json(row.metadata_json)
            metadata["cancel_reason"] = reason
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.CANCELLED.value,
                    error=f"cancelled by {reason}",
                    metadata_json=_dump_json(metadata),
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def record_cancelled_output(
        self,
        *,
        job_id: str,
        exit_code: int | None,
        output: str,
        accumulated_response: str | None = None,
        tool_session_id: str | None = None,
    ) -> bool:
        """Attach captured output to a job that was cancelled while running."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.CANCELLED.value,
                    col(Job.exit_code).is_(None),
                )
                .values(
                    exit_code=exit_code,
                    output=output,
                    accumulated_response=accumulated_response,
                    tool_session_id=tool_session_id,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        owner_id: str | None = None,
        scope_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List jobs most-recent-first, optionally filtered by owner and/or scope."""

        with Session(self.engine) as session:
            statement = select(Job)
            if owner_id is not None:
                statement = statement.where(Job.owner_id == owner_id)
            if scope_id is not None:
                statement = statement.where(Job.scope_id == scope_id)
            statement = statement.order_by(
                col(Job.created_at).desc(),
                col(Job.job_id).desc(),
            ).limit(limit)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_non_terminal_jobs(self) -> list[JobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    col(Job.status).in_([JobStatus.PENDING.value, JobStatus.RUNNING.value]),
                )
                .order_by(col(Job.created_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def append_log(
        self,
        *,
        job_id: str,
        level: LogLevel,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> LogEntryView:
        """Append one log line; timestamps never go backwards."""

        with self._append_lock:
            now = utc_now()
            if self._last_log_timestamp is not None and now < self._last_log_timestamp:
                now = self._last_log_timestamp
            self._last_log_timestamp = now
            with Session(self.engine) as session:
                row = JobLog(
                    job_id=job_id,
                    level=level.value,
                    message=message,
                    metadata_json=_dump_json(metadata) if metadata else None,
                    timestamp=to_db_datetime(now),
                )
                session.add(row)
                session.commit()
                session.refresh(row)
                return _to_log_view(row)

    def list_logs(
        self,
        *,
        job_id: str,
        limit: int | None = None,
        after_log_id: int | None = None,
    ) -> list[LogEntryView]:
        """Return log lines oldest-first."""

        with Session(self.engine) as session:
            statement = select(JobLog).where(JobLog.job_id == job_id)
            if after_log_id is not None:
                statement = statement.where(col(JobLog.log_id) > after_log_id)
            statement = statement.order_by(
                col(JobLog.timestamp).asc(),
                col(JobLog.log_id).asc(),
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_log_view(row) for row in rows]

    def get_scope_snapshot(self, *, owner_id: str, scope_id: str) -> ScopeSnapshotView | None:
        with Session(self.engine) as session:
            row = _select_snapshot(session, owner_id=owner_id, scope_id=scope_id)
        return _to_snapshot_view(row) if row is not None else None

    def record_snapshot_success(
        self,
        *,
        owner_id: str,
        scope_id: str,
        object_path: str,
        job_id: str,
    ) -> ScopeSnapshotView:
        return self._upsert_snapshot(
            owner_id=owner_id,
            scope_id=scope_id,
            job_id=job_id,
            object_path=object_path,
            status=SYNC_STATUS_OK,
            error=None,
        )

    def record_snapshot_failure(
        self,
        *,
        owner_id: str,
        scope_id: str,
        job_id: str,
        error: str,
    ) -> ScopeSnapshotView:
        """Flag a failed persist without touching the stored object path."""

        return self._upsert_snapshot(
            owner_id=owner_id,
            scope_id=scope_id,
            job_id=job_id,
            object_path=None,
            status=SYNC_STATUS_FAILED,
            error=error,
        )

    def _upsert_snapshot(  # noqa: PLR0913
        self,
        *,
        owner_id: str,
        scope_id: str,
        job_id: str,
        object_path: str | None,
        status: str,
        error: str | None,
    ) -> ScopeSnapshotView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = _select_snapshot(session, owner_id=owner_id, scope_id=scope_id)
            if row is None:
                row = ScopeSnapshot(owner_id=owner_id, scope_id=scope_id, updated_at=now)
            if object_path is not None:
                row.object_path = object_path
                row.last_job_id = job_id
            row.last_sync_status = status
            row.last_sync_error = error
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_snapshot_view(row)

    def _transition(
        self,
        *,
        job_id: str,
        expected: tuple[JobStatus, ...],
        values: dict[str, Any],
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status).in_([status.value for status in expected]),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def _select_snapshot(session: Session, *, owner_id: str, scope_id: str) -> ScopeSnapshot | None:
    return session.exec(
        select(ScopeSnapshot).where(
            ScopeSnapshot.owner_id == owner_id,
            ScopeSnapshot.scope_id == scope_id,
        ),
    ).one_or_none()


def _dump_json(value: dict[str, Any]) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    parsed = json.loads(value)
    return parsed if isinstance(parsed, dict) else {}


def _to_job_view(row: Job) -> JobView:
    kind = JobKind(row.kind)
    options = None
    if kind is JobKind.AGENT:
        options = AgentOptions.from_dict(_load_json(row.options_json) or None)
    return JobView(
        job_id=row.job_id,
        owner_id=row.owner_id,
        scope_id=row.scope_id,
        session_id=row.session_id,
        kind=kind,
        command=row.command,
        options=options,
        working_dir=row.working_dir,
        status=JobStatus(row.status),
        process_id=row.process_id,
        exit_code=row.exit_code,
        output=row.output,
        error=row.error,
        accumulated_response=row.accumulated_response,
        tool_session_id=row.tool_session_id,
        metadata=_load_json(row.metadata_json),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_log_view(row: JobLog) -> LogEntryView:
    return LogEntryView(
        log_id=row.log_id or 0,
        job_id=row.job_id,
        level=LogLevel(row.level),
        message=row.message,
        timestamp=to_utc_aware_datetime(row.timestamp),
        metadata=_load_json(row.metadata_json),
    )


def _to_snapshot_view(row: ScopeSnapshot) -> ScopeSnapshotView:
    return ScopeSnapshotView(
        owner_id=row.owner_id,
        scope_id=row.scope_id,
        object_path=row.object_path,
        last_job_id=row.last_job_id,
        last_sync_status=row.last_sync_status,
        last_sync_error=row.last_sync_error,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
