"""Runtime configuration for the job orchestrator."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

ENV_PREFIX = "AGENT_JOBS_"
STORAGE_BACKENDS = ("local", "minio")


@dataclass(slots=True)
class StorageSettings:
    """Object store settings for scope snapshots."""

    backend: str = "local"
    local_root: Path = Path(".agent_jobs/objects")
    bucket: str = "projects"
    minio_endpoint: str = "localhost:9000"
    minio_access_key: str = ""
    minio_secret_key: str = ""
    minio_secure: bool = False


@dataclass(slots=True)
class ExecutionSettings:
    """Process launching and streaming settings."""

    workdir_root: Path = Path(".agent_jobs/workdirs")
    max_concurrent_jobs: int = 4
    agent_command: tuple[str, ...] = ("claude",)
    default_model: str = "sonnet"
    mcp_config_path: Path | None = None
    discover_mcp_config: bool = True
    project_template_zip: Path | None = None
    keepalive_seconds: float = 30.0
    cancel_on_disconnect: bool = True
    output_buffer_size: int = 64


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".agent_jobs.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited to local development."""

        return cls(
            db_path=db_path or Path(_env("DB_PATH", ".agent_jobs.db")),
            sqlite_busy_timeout_ms=int(_env("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            execution=ExecutionSettings(
                workdir_root=Path(_env("WORKDIR_ROOT", ".agent_jobs/workdirs")),
                max_concurrent_jobs=int(_env("MAX_CONCURRENT_JOBS", "4")),
                agent_command=tuple(shlex.split(_env("AGENT_COMMAND", "claude"))),
                default_model=_env("DEFAULT_MODEL", "sonnet"),
                mcp_config_path=_env_path("MCP_CONFIG_PATH"),
                discover_mcp_config=_env_bool(f"{ENV_PREFIX}DISCOVER_MCP_CONFIG", default=True),
                project_template_zip=_env_path("PROJECT_TEMPLATE_ZIP"),
                keepalive_seconds=float(_env("KEEPALIVE_SECONDS", "30")),
                cancel_on_disconnect=_env_bool(
                    f"{ENV_PREFIX}CANCEL_ON_DISCONNECT",
                    default=True,
                ),
                output_buffer_size=int(_env("OUTPUT_BUFFER_SIZE", "64")),
            ),
            storage=StorageSettings(
                backend=_env("STORAGE_BACKEND", "local").strip().lower(),
                local_root=Path(_env("STORAGE_LOCAL_ROOT", ".agent_jobs/objects")),
                bucket=_env("BUCKET", "projects"),
                minio_endpoint=_env("MINIO_ENDPOINT", "localhost:9000"),
                minio_access_key=_env("MINIO_ACCESS_KEY", ""),
                minio_secret_key=_env("MINIO_SECRET_KEY", ""),
                minio_secure=_env_bool(f"{ENV_PREFIX}MINIO_SECURE", default=False),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the orchestrator cannot run with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_JOBS_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.execution.max_concurrent_jobs <= 0:
            raise ValueError("AGENT_JOBS_MAX_CONCURRENT_JOBS must be > 0.")
        if not self.execution.agent_command:
            raise ValueError("AGENT_JOBS_AGENT_COMMAND must not be empty.")
        if self.execution.keepalive_seconds <= 0:
            raise ValueError("AGENT_JOBS_KEEPALIVE_SECONDS must be > 0.")
        if self.execution.output_buffer_size <= 0:
            raise ValueError("AGENT_JOBS_OUTPUT_BUFFER_SIZE must be > 0.")
        if self.storage.backend not in STORAGE_BACKENDS:
            raise ValueError(
                f"Unsupported AGENT_JOBS_STORAGE_BACKEND: {self.storage.backend!r}. "
                f"Expected one of: {', '.join(STORAGE_BACKENDS)}.",
            )
        if not self.storage.bucket.strip() or "/" in self.storage.bucket:
            raise ValueError("AGENT_JOBS_BUCKET must be a non-empty name without '/'.")
        if self.storage.backend == "minio" and not (
            self.storage.minio_access_key and self.storage.minio_secret_key
        ):
            raise ValueError(
                "AGENT_JOBS_MINIO_ACCESS_KEY and AGENT_JOBS_MINIO_SECRET_KEY are required "
                "for the minio storage backend.",
            )


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_path(name: str) -> Path | None:
    value = os.getenv(f"{ENV_PREFIX}{name}", "").strip()
    return Path(value).expanduser() if value else None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
