"""Use-case facade over job persistence, execution and live events."""

from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path

from agent_jobs.config import Settings
from agent_jobs.orchestrator.backend import (
    CliProcessLauncher,
    ProcessLauncher,
    find_mcp_config,
    split_shell_command,
)
from agent_jobs.orchestrator.errors import (
    CancelledByDisconnect,
    CancelledByUser,
    JobCancelled,
    JobNotFound,
    NotRunning,
    ValidationError,
)
from agent_jobs.orchestrator.events import JobEventHub, Subscription
from agent_jobs.orchestrator.executor import JobExecutor
from agent_jobs.orchestrator.models import (
    AgentOptions,
    JobCreate,
    JobKind,
    JobView,
    LogEntryView,
    LogLevel,
    ScopeSnapshotView,
)
from agent_jobs.orchestrator.registry import JobRegistry
from agent_jobs.orchestrator.repository import JobRepository
from agent_jobs.sync.object_store import LocalObjectStore, MinioObjectStore, ObjectStore
from agent_jobs.sync.synchronizer import ArtifactSynchronizer

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
RESTART_ERROR = "orchestrator restarted"


class OrchestratorService:
    """Creates, cancels and inspects jobs; execution runs on a thread pool."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        synchronizer: ArtifactSynchronizer,
        agent_command: list[str],
        launcher: ProcessLauncher | None = None,
        registry: JobRegistry | None = None,
        hub: JobEventHub | None = None,
        mcp_config_path: Path | None = None,
        default_model: str | None = None,
        max_workers: int = 4,
        output_buffer_size: int = 64,
    ) -> None:
        self.repository = repository
        self.registry = registry or JobRegistry()
        self.hub = hub or JobEventHub()
        self.default_model = default_model
        self.executor = JobExecutor(
            repository=repository,
            registry=self.registry,
            hub=self.hub,
            launcher=launcher or CliProcessLauncher(),
            synchronizer=synchronizer,
            agent_command=agent_command,
            mcp_config_path=mcp_config_path,
            output_buffer_size=output_buffer_size,
        )
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="job")
        self._futures: dict[str, Future[None]] = {}
        self._futures_lock = threading.Lock()

    def create_job(self, payload: JobCreate) -> JobView:
        """Validate, persist as pending and submit for execution."""

        self._validate(payload)
        if payload.kind is JobKind.AGENT:
            options = payload.options or AgentOptions()
            if options.model is None and not options.resume and self.default_model:
                options.model = self.default_model
            payload.options = options

        job = self.repository.create_job(payload)
        self.repository.append_log(
            job_id=job.job_id,
            level=LogLevel.INFO,
            message=f"{job.kind.value} job created",
        )
        logger.info("Created job_id=%s kind=%s scope=%s", job.job_id, job.kind.value, job.scope_id)

        with self._futures_lock:
            future = self._pool.submit(self.executor.execute, job)
            self._futures[job.job_id] = future
        future.add_done_callback(lambda _: self._forget(job.job_id))
        return job

    def cancel_job(
        self,
        job_id: str,
        cause: type[JobCancelled] = CancelledByUser,
    ) -> JobView:
        """Kill the live process and mark the job cancelled."""

        if self.repository.get_job(job_id=job_id) is None:
            raise JobNotFound(job_id)
        if not self.executor.cancel(job_id, cause):
            raise NotRunning(job_id)
        return self.get_job(job_id)

    def cancel_or_defer(
        self,
        job_id: str,
        cause: type[JobCancelled] = CancelledByDisconnect,
    ) -> bool:
        """Cancel a live job, or have a queued one killed as soon as it spawns.

        Returns False when the job has already finished.
        """

        try:
            self.cancel_job(job_id, cause)
            return True
        except NotRunning:
            job = self.get_job(job_id)
            if job.status.terminal or not self.is_active(job_id):
                return False

        self.registry.defer_cancel(job_id, cause)
        # The executor may have gone running before the cause was parked.
        try:
            self.cancel_job(job_id, cause)
        except NotRunning:
            logger.info("Deferred %s cancel of job_id=%s until it starts", cause.reason, job_id)
        else:
            self.registry.take_deferred(job_id)
        return True

    def get_job(self, job_id: str) -> JobView:
        job = self.repository.get_job(job_id=job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def list_jobs(
        self,
        *,
        owner_id: str | None = None,
        scope_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        return self.repository.list_jobs(owner_id=owner_id, scope_id=scope_id, limit=limit)

    def get_logs(
        self,
        job_id: str,
        *,
        limit: int | None = None,
        after_log_id: int | None = None,
    ) -> list[LogEntryView]:
        self.get_job(job_id)
        return self.repository.list_logs(job_id=job_id, limit=limit, after_log_id=after_log_id)

    def get_scope_snapshot(self, owner_id: str, scope_id: str) -> ScopeSnapshotView | None:
        return self.repository.get_scope_snapshot(owner_id=owner_id, scope_id=scope_id)

    def subscribe(self, job_id: str) -> Subscription:
        self.get_job(job_id)
        return self.hub.subscribe(job_id)

    def is_active(self, job_id: str) -> bool:
        """Whether the job's execution task has not finished yet."""

        with self._futures_lock:
            future = self._futures.get(job_id)
        return future is not None and not future.done()

    def wait_for(self, job_id: str, timeout: float | None = None) -> JobView:
        """Block until the job's execution task finishes."""

        with self._futures_lock:
            future = self._futures.get(job_id)
        if future is not None:
            try:
                future.result(timeout=timeout)
            except FutureTimeoutError as error:
                raise TimeoutError(f"Job did not finish in time: {job_id}") from error
        return self.get_job(job_id)

    def recover_orphaned_jobs(self) -> int:
        """Fail jobs left pending/running by a previous process."""

        recovered = 0
        for job in self.repository.list_non_terminal_jobs():
            if self.is_active(job.job_id):
                continue
            if self.repository.fail_job(job_id=job.job_id, error=RESTART_ERROR):
                self.repository.append_log(
                    job_id=job.job_id,
                    level=LogLevel.ERROR,
                    message=RESTART_ERROR,
                )
                recovered += 1
        if recovered:
            logger.warning("Marked %s orphaned job(s) as failed", recovered)
        return recovered

    def shutdown(self, *, wait: bool = True, cancel_running: bool = True) -> None:
        if cancel_running:
            for job_id in self.registry.live_job_ids():
                try:
                    self.cancel_job(job_id)
                except NotRunning:
                    continue
        self._pool.shutdown(wait=wait, cancel_futures=True)

    def _forget(self, job_id: str) -> None:
        with self._futures_lock:
            future = self._futures.get(job_id)
            if future is not None and future.done():
                del self._futures[job_id]

    def _validate(self, payload: JobCreate) -> None:
        _validate_identifier("owner_id", payload.owner_id)
        _validate_identifier("scope_id", payload.scope_id)
        if payload.session_id is not None:
            _validate_identifier("session_id", payload.session_id)

        if (payload.command is None) == (payload.user_input is None):
            raise ValidationError("Exactly one of command or user_input is required.")
        if payload.kind is JobKind.SHELL:
            split_shell_command(payload.command or "")
            if payload.options is not None:
                raise ValidationError("Agent options are not accepted for shell jobs.")
            return
        if not (payload.user_input or "").strip():
            raise ValidationError("user_input must not be empty.")
        if payload.options is not None:
            payload.options.validate()


def _validate_identifier(name: str, value: str) -> None:
    if not value or not _IDENTIFIER_RE.match(value):
        raise ValidationError(
            f"Invalid {name}: {value!r}. Use letters, digits, '.', '_' or '-' (max 128).",
        )


def build_object_store(settings: Settings) -> ObjectStore:
    if settings.storage.backend == "minio":
        return MinioObjectStore(
            endpoint=settings.storage.minio_endpoint,
            access_key=settings.storage.minio_access_key,
            secret_key=settings.storage.minio_secret_key,
            secure=settings.storage.minio_secure,
        )
    return LocalObjectStore(settings.storage.local_root)


def build_service(
    settings: Settings,
    *,
    repository: JobRepository | None = None,
    launcher: ProcessLauncher | None = None,
    store: ObjectStore | None = None,
) -> OrchestratorService:
    """Wire repository, synchronizer and executor from settings; recovers orphans."""

    settings.validate()
    if repository is None:
        repository = JobRepository(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        repository.init_schema()

    execution = settings.execution
    mcp_config_path = execution.mcp_config_path
    if mcp_config_path is None and execution.discover_mcp_config:
        mcp_config_path = find_mcp_config()

    synchronizer = ArtifactSynchronizer(
        repository=repository,
        store=store or build_object_store(settings),
        workdir_root=execution.workdir_root,
        bucket=settings.storage.bucket,
        template_zip=execution.project_template_zip,
    )
    service = OrchestratorService(
        repository=repository,
        synchronizer=synchronizer,
        agent_command=list(execution.agent_command),
        launcher=launcher,
        mcp_config_path=mcp_config_path,
        default_model=execution.default_model,
        max_workers=execution.max_concurrent_jobs,
        output_buffer_size=execution.output_buffer_size,
    )
    service.recover_orphaned_jobs()
    return service
