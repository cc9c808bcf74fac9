"""Working-directory synchronization between jobs and the object store."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from agent_jobs.orchestrator.errors import SyncError
from agent_jobs.orchestrator.models import JobView, ScopeSnapshotView
from agent_jobs.orchestrator.repository import JobRepository
from agent_jobs.sync.archive import pack_directory, unpack_archive
from agent_jobs.sync.object_store import ObjectStore
from agent_jobs.sync.vcs import commit_snapshot

logger = logging.getLogger(__name__)


class ArtifactSynchronizer:
    """Materialize, persist, commit and clean up job working directories."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        store: ObjectStore,
        workdir_root: Path,
        bucket: str,
        template_zip: Path | None = None,
    ) -> None:
        self.repository = repository
        self.store = store
        self.workdir_root = workdir_root
        self.bucket = bucket
        self.template_zip = template_zip

    def default_object_path(self, job: JobView) -> str:
        return f"{self.bucket}/users/{job.owner_id}/projects/{job.scope_id}.zip"

    def prepare_build_directory(self, job: JobView) -> Path:
        """Persistent per-scope directory for shell builds (not synchronized)."""

        path = self._scope_dir("builds", job)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def materialize(self, job: JobView) -> Path:
        """Create a fresh directory for one agent turn and fill it with the latest snapshot."""

        target = self._scope_dir("turns", job) / job.job_id
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)
        try:
            target.mkdir(parents=True)
        except OSError as error:
            raise SyncError(f"Failed to create working directory {target}: {error}") from error

        snapshot = self.repository.get_scope_snapshot(owner_id=job.owner_id, scope_id=job.scope_id)
        try:
            if snapshot is not None and snapshot.object_path:
                unpack_archive(self.store.get(snapshot.object_path), target)
                logger.info("Materialized %s from %s", target, snapshot.object_path)
            elif self.template_zip is not None and self.template_zip.is_file():
                unpack_archive(self.template_zip.read_bytes(), target)
                logger.info("Materialized %s from template %s", target, self.template_zip)
        except (SyncError, OSError) as error:
            self.cleanup(target)
            if isinstance(error, SyncError):
                raise
            raise SyncError(f"Failed to read template {self.template_zip}: {error}") from error
        return target

    def persist(self, job: JobView, working_dir: Path) -> ScopeSnapshotView:
        """Pack and upload; records success or a durable failure flag."""

        snapshot = self.repository.get_scope_snapshot(owner_id=job.owner_id, scope_id=job.scope_id)
        object_path = (
            snapshot.object_path
            if snapshot is not None and snapshot.object_path
            else self.default_object_path(job)
        )
        try:
            data = pack_directory(working_dir)
            self.store.put(object_path, data)
        except SyncError as error:
            self.repository.record_snapshot_failure(
                owner_id=job.owner_id,
                scope_id=job.scope_id,
                job_id=job.job_id,
                error=str(error),
            )
            raise
        return self.repository.record_snapshot_success(
            owner_id=job.owner_id,
            scope_id=job.scope_id,
            object_path=object_path,
            job_id=job.job_id,
        )

    def commit(self, working_dir: Path, message: str | None = None) -> bool:
        return commit_snapshot(working_dir, message)

    def cleanup(self, working_dir: Path) -> None:
        shutil.rmtree(working_dir, ignore_errors=True)

    def _scope_dir(self, area: str, job: JobView) -> Path:
        path = self.workdir_root / area / job.owner_id / job.scope_id
        if job.session_id:
            path = path / job.session_id
        return path
