"""Per-job execution: materialize, launch, multiplex, finalize, synchronize."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_jobs.orchestrator.backend import (
    LaunchRequest,
    ProcessLauncher,
    build_agent_args,
    materialize_images,
    split_shell_command,
)
from agent_jobs.orchestrator.errors import (
    JobCancelled,
    ProcessExitError,
    SpawnError,
    SyncError,
    ValidationError,
)
from agent_jobs.orchestrator.events import JobEventHub
from agent_jobs.orchestrator.models import (
    AgentOptions,
    EventName,
    JobEvent,
    JobKind,
    JobStatus,
    JobView,
    LogLevel,
)
from agent_jobs.orchestrator.multiplexer import MultiplexResult, OutputMultiplexer
from agent_jobs.orchestrator.registry import JobRegistry
from agent_jobs.orchestrator.repository import JobRepository
from agent_jobs.sync.synchronizer import ArtifactSynchronizer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunOutcome:
    """How the process part of a job ended."""

    spawned: bool
    status: JobStatus
    exit_code: int | None = None
    result: MultiplexResult | None = None


class _JobSink:
    """Line sink that persists to ``job_logs`` before publishing to the hub."""

    def __init__(self, *, job_id: str, repository: JobRepository, hub: JobEventHub) -> None:
        self.job_id = job_id
        self.repository = repository
        self.hub = hub

    def record(
        self,
        level: LogLevel,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> int | None:
        entry = self.repository.append_log(
            job_id=self.job_id,
            level=level,
            message=message,
            metadata=metadata,
        )
        return entry.log_id

    def emit(self, name: EventName, data: dict[str, Any], log_id: int | None = None) -> None:
        self.hub.publish(JobEvent(job_id=self.job_id, name=name, data=data, log_id=log_id))


class JobExecutor:
    """Runs one job to completion on a worker thread."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: JobRegistry,
        hub: JobEventHub,
        launcher: ProcessLauncher,
        synchronizer: ArtifactSynchronizer,
        agent_command: list[str],
        mcp_config_path: Path | None = None,
        output_buffer_size: int = 64,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.hub = hub
        self.launcher = launcher
        self.synchronizer = synchronizer
        self.agent_command = agent_command
        self.mcp_config_path = mcp_config_path
        self.output_buffer_size = output_buffer_size

    def execute(self, job: JobView) -> None:
        try:
            if job.kind is JobKind.AGENT:
                self._run_agent(job)
            else:
                self._run_shell(job)
        except Exception as error:
            logger.exception("Unexpected failure while executing job_id=%s", job.job_id)
            if self.repository.fail_job(job_id=job.job_id, error=f"internal error: {error}"):
                self.notice(job.job_id, LogLevel.ERROR, f"internal error: {error}")
        finally:
            self.registry.take_deferred(job.job_id)
            self._publish_terminal(job)

    def cancel(self, job_id: str, cause: type[JobCancelled]) -> bool:
        """Kill the live process of a running job and mark it cancelled."""

        handle = self.registry.get(job_id)
        if handle is None:
            return False
        if not self.repository.cancel_job(job_id=job_id, reason=cause.reason):
            return False

        self.registry.unregister(job_id, handle)
        handle.kill()
        self.notice(job_id, LogLevel.WARN, f"cancelled by {cause.reason}")
        logger.info("Cancelled job_id=%s reason=%s", job_id, cause.reason)
        return True

    def notice(
        self,
        job_id: str,
        level: LogLevel,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Persist a lifecycle log line and publish it as ``build_log``."""

        entry = self.repository.append_log(
            job_id=job_id,
            level=level,
            message=message,
            metadata=metadata,
        )
        self.hub.publish(
            JobEvent(
                job_id=job_id,
                name=EventName.BUILD_LOG,
                data=entry.to_payload(),
                log_id=entry.log_id,
            ),
        )

    def _run_shell(self, job: JobView) -> None:
        working_dir = self.synchronizer.prepare_build_directory(job)
        self.repository.set_working_dir(job_id=job.job_id, working_dir=working_dir)
        try:
            argv = split_shell_command(job.command)
        except ValidationError as error:
            self._fail_before_start(job, str(error))
            return
        self._launch_and_wait(job, argv=argv, working_dir=working_dir)

    def _run_agent(self, job: JobView) -> None:
        try:
            working_dir = self.synchronizer.materialize(job)
        except SyncError as error:
            self._fail_before_start(job, f"failed to prepare working directory: {error}")
            return
        self.repository.set_working_dir(job_id=job.job_id, working_dir=working_dir)

        try:
            options = job.options or AgentOptions()
            try:
                user_input = materialize_images(job.command, options.images, working_dir=working_dir)
            except (ValidationError, OSError) as error:
                self._fail_before_start(job, str(error))
                return

            argv = [
                *self.agent_command,
                *build_agent_args(user_input, options, mcp_config_path=self.mcp_config_path),
            ]
            outcome = self._launch_and_wait(
                job,
                argv=argv,
                working_dir=working_dir,
                tool_session_id=options.tool_session_id,
            )
            if outcome.spawned and outcome.status is not JobStatus.CANCELLED:
                self._synchronize(job, working_dir)
        finally:
            self.synchronizer.cleanup(working_dir)

    def _synchronize(self, job: JobView, working_dir: Path) -> None:
        message = str(job.metadata.get("commit_message") or "")
        if not self.synchronizer.commit(working_dir, message):
            self.repository.append_log(
                job_id=job.job_id,
                level=LogLevel.WARN,
                message="git snapshot skipped",
            )
        try:
            snapshot = self.synchronizer.persist(job, working_dir)
        except SyncError as error:
            logger.warning("Persist failed for job_id=%s: %s", job.job_id, error)
            entry = self.repository.append_log(
                job_id=job.job_id,
                level=LogLevel.ERROR,
                message=f"upload failed: {error}",
            )
            self.hub.publish(
                JobEvent(
                    job_id=job.job_id,
                    name=EventName.UPLOAD_ERROR,
                    data={"error": str(error)},
                    log_id=entry.log_id,
                ),
            )
            return
        self.notice(job.job_id, LogLevel.INFO, f"snapshot stored at {snapshot.object_path}")

    def _launch_and_wait(
        self,
        job: JobView,
        *,
        argv: list[str],
        working_dir: Path,
        tool_session_id: str | None = None,
    ) -> RunOutcome:
        try:
            handle = self.launcher.launch(
                LaunchRequest(
                    argv=argv,
                    cwd=working_dir,
                    owner_id=job.owner_id,
                    scope_id=job.scope_id,
                    job_id=job.job_id,
                ),
            )
        except SpawnError as error:
            self._fail_before_start(job, str(error))
            return RunOutcome(spawned=False, status=JobStatus.FAILED)

        self.registry.register(job.job_id, handle)
        if not self.repository.mark_running(job_id=job.job_id, process_id=handle.pid):
            self.registry.unregister(job.job_id, handle)
            logger.warning("Job job_id=%s left pending state before start; killing", job.job_id)
            handle.kill()
            handle.wait()
            return RunOutcome(spawned=False, status=JobStatus.FAILED)

        self._publish_status(job.job_id)
        self.notice(job.job_id, LogLevel.INFO, f"started pid={handle.pid}")
        deferred = self.registry.take_deferred(job.job_id)
        if deferred is not None:
            self.cancel(job.job_id, deferred)
        try:
            result = OutputMultiplexer(
                stdout=handle.stdout,
                stderr=handle.stderr,
                sink=_JobSink(job_id=job.job_id, repository=self.repository, hub=self.hub),
                tool_session_id=tool_session_id,
                buffer_size=self.output_buffer_size,
            ).run()
            exit_code = handle.wait()
        except Exception:
            handle.kill()
            handle.wait()
            raise
        finally:
            self.registry.unregister(job.job_id, handle)

        return self._finalize(job, exit_code=exit_code, result=result)

    def _finalize(self, job: JobView, *, exit_code: int, result: MultiplexResult) -> RunOutcome:
        accumulated = result.accumulated_response or None
        if exit_code == 0:
            updated = self.repository.complete_job(
                job_id=job.job_id,
                exit_code=exit_code,
                output=result.output,
                accumulated_response=accumulated,
                tool_session_id=result.tool_session_id,
            )
            status = JobStatus.COMPLETED
        else:
            updated = self.repository.fail_job(
                job_id=job.job_id,
                error=str(ProcessExitError(exit_code)),
                exit_code=exit_code,
                output=result.output,
                accumulated_response=accumulated,
                tool_session_id=result.tool_session_id,
                expected=(JobStatus.RUNNING,),
            )
            status = JobStatus.FAILED

        if not updated:
            self.repository.record_cancelled_output(
                job_id=job.job_id,
                exit_code=exit_code,
                output=result.output,
                accumulated_response=accumulated,
                tool_session_id=result.tool_session_id,
            )
            return RunOutcome(
                spawned=True,
                status=JobStatus.CANCELLED,
                exit_code=exit_code,
                result=result,
            )

        if status is JobStatus.COMPLETED:
            self.notice(job.job_id, LogLevel.INFO, "completed successfully")
        else:
            self.notice(job.job_id, LogLevel.ERROR, f"failed with exit code {exit_code}")
        return RunOutcome(spawned=True, status=status, exit_code=exit_code, result=result)

    def _fail_before_start(self, job: JobView, message: str) -> None:
        if not self.repository.fail_job(
            job_id=job.job_id,
            error=message,
            expected=(JobStatus.PENDING,),
        ):
            return
        entry = self.repository.append_log(job_id=job.job_id, level=LogLevel.ERROR, message=message)
        self.hub.publish(
            JobEvent(
                job_id=job.job_id,
                name=EventName.ERROR,
                data={"error": message},
                log_id=entry.log_id,
            ),
        )

    def _publish_status(self, job_id: str) -> None:
        current = self.repository.get_job(job_id=job_id)
        if current is None:
            return
        self.hub.publish(
            JobEvent(job_id=job_id, name=EventName.BUILD_STATUS, data=current.to_payload()),
        )

    def _publish_terminal(self, job: JobView) -> None:
        current = self.repository.get_job(job_id=job.job_id) or job
        self.hub.publish(terminal_event(current))


def terminal_event(job: JobView) -> JobEvent:
    name = EventName.COMPLETE if job.kind is JobKind.AGENT else EventName.BUILD_COMPLETE
    return JobEvent(job_id=job.job_id, name=name, data=job.to_payload(), terminal=True)
