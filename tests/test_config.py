from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_jobs.config import ExecutionSettings, Settings, StorageSettings
from agent_jobs.orchestrator.services import build_object_store
from agent_jobs.sync.object_store import LocalObjectStore, MinioObjectStore

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_JOBS_DB_PATH", "/tmp/jobs-test.db")
    monkeypatch.setenv("AGENT_JOBS_MAX_CONCURRENT_JOBS", "8")
    monkeypatch.setenv("AGENT_JOBS_AGENT_COMMAND", "claude --no-color")
    monkeypatch.setenv("AGENT_JOBS_CANCEL_ON_DISCONNECT", "off")
    monkeypatch.setenv("AGENT_JOBS_STORAGE_BACKEND", " MinIO ")
    monkeypatch.setenv("AGENT_JOBS_MINIO_SECURE", "yes")
    monkeypatch.setenv("AGENT_JOBS_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.db_path == Path("/tmp/jobs-test.db")
    assert settings.log_level == "DEBUG"
    assert settings.execution.max_concurrent_jobs == 8
    assert settings.execution.agent_command == ("claude", "--no-color")
    assert settings.execution.cancel_on_disconnect is False
    assert settings.storage.backend == "minio"
    assert settings.storage.minio_secure is True


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_JOBS_DB_PATH", "/tmp/ignored.db")

    assert Settings.from_env(db_path=tmp_path / "x.db").db_path == tmp_path / "x.db"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_JOBS_DISCOVER_MCP_CONFIG", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(sqlite_busy_timeout_ms=0), "BUSY_TIMEOUT"),
        (Settings(execution=ExecutionSettings(max_concurrent_jobs=0)), "MAX_CONCURRENT_JOBS"),
        (Settings(execution=ExecutionSettings(agent_command=())), "AGENT_COMMAND"),
        (Settings(execution=ExecutionSettings(keepalive_seconds=0)), "KEEPALIVE"),
        (Settings(storage=StorageSettings(backend="s3")), "Unsupported"),
        (Settings(storage=StorageSettings(bucket="a/b")), "BUCKET"),
        (Settings(storage=StorageSettings(backend="minio")), "MINIO_ACCESS_KEY"),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_defaults_are_valid() -> None:
    Settings().validate()


def test_build_object_store_selects_backend(tmp_path: Path) -> None:
    local = build_object_store(Settings(storage=StorageSettings(local_root=tmp_path)))
    remote = build_object_store(
        Settings(
            storage=StorageSettings(
                backend="minio",
                minio_endpoint="localhost:9000",
                minio_access_key="key",
                minio_secret_key="secret",
            ),
        ),
    )

    assert isinstance(local, LocalObjectStore)
    assert local.root == tmp_path
    assert isinstance(remote, MinioObjectStore)
