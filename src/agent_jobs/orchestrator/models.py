"""Domain models for job execution, logs and live events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_jobs.orchestrator.errors import ValidationError

DEFAULT_AGENT_MODEL = "sonnet"
PLAN_MODE_TOOLS: tuple[str, ...] = ("Read", "Task", "exit_plan_mode", "TodoRead", "TodoWrite")
SUPPORTED_IMAGE_MIME_TYPES = frozenset({"image/png", "image/jpeg", "image/gif", "image/webp"})


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}


class JobKind(str, Enum):
    SHELL = "shell"
    AGENT = "agent"


class PermissionMode(str, Enum):
    """Permission modes understood by the agent CLI."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS_PERMISSIONS = "bypassPermissions"
    PLAN = "plan"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class EventName(str, Enum):
    """Names of events published to live subscribers."""

    BUILD_STATUS = "build_status"
    BUILD_LOG = "build_log"
    RESPONSE = "response"
    SESSION_IDENTIFIED = "session-identified"
    OUTPUT = "output"
    ERROR = "error"
    UPLOAD_ERROR = "upload_error"
    KEEPALIVE = "keepalive"
    COMPLETE = "complete"
    BUILD_COMPLETE = "build_complete"


@dataclass(slots=True)
class ToolSettings:
    """Tool permission lists passed to the agent CLI."""

    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    skip_permissions: bool = False


@dataclass(slots=True)
class ImageAttachment:
    """Base64 image attached to an agent turn."""

    data: str
    mime_type: str


_OPTION_KEYS = frozenset(
    {"model", "resume", "tool_session_id", "permission_mode", "tools", "images"},
)
_TOOL_KEYS = frozenset({"allowed_tools", "disallowed_tools", "skip_permissions"})


@dataclass(slots=True)
class AgentOptions:
    """Per-turn configuration for the agent CLI."""

    model: str | None = None
    resume: bool = False
    tool_session_id: str | None = None
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    tools: ToolSettings = field(default_factory=ToolSettings)
    images: list[ImageAttachment] = field(default_factory=list)

    @property
    def effective_model(self) -> str:
        return self.model or DEFAULT_AGENT_MODEL

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> AgentOptions:
        """Parse and validate options received from callers."""

        if payload is None:
            return cls()
        if not isinstance(payload, dict):
            raise ValidationError("Agent options must be a JSON object.")
        unknown = sorted(set(payload) - _OPTION_KEYS)
        if unknown:
            raise ValidationError(f"Unknown agent option(s): {', '.join(unknown)}")

        try:
            permission_mode = PermissionMode(payload.get("permission_mode") or "default")
        except ValueError as error:
            raise ValidationError(
                f"Unsupported permission mode: {payload.get('permission_mode')!r}",
            ) from error

        options = cls(
            model=_optional_str(payload, "model"),
            resume=bool(payload.get("resume", False)),
            tool_session_id=_optional_str(payload, "tool_session_id"),
            permission_mode=permission_mode,
            tools=_parse_tools(payload.get("tools")),
            images=_parse_images(payload.get("images")),
        )
        options.validate()
        return options

    def validate(self) -> None:
        if self.resume and not self.tool_session_id:
            raise ValidationError("resume requires tool_session_id.")
        if self.tools.skip_permissions and (
            self.tools.allowed_tools or self.tools.disallowed_tools
        ):
            raise ValidationError(
                "skip_permissions cannot be combined with allowed/disallowed tool lists.",
            )
        for image in self.images:
            if image.mime_type not in SUPPORTED_IMAGE_MIME_TYPES:
                raise ValidationError(f"Unsupported image mime type: {image.mime_type!r}")
            if not image.data:
                raise ValidationError("Image attachment data is empty.")

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "resume": self.resume,
            "tool_session_id": self.tool_session_id,
            "permission_mode": self.permission_mode.value,
            "tools": {
                "allowed_tools": list(self.tools.allowed_tools),
                "disallowed_tools": list(self.tools.disallowed_tools),
                "skip_permissions": self.tools.skip_permissions,
            },
            "images": [
                {"data": image.data, "mime_type": image.mime_type} for image in self.images
            ],
        }


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Agent option {key!r} must be a string.")
    return value.strip() or None


def _string_list(value: Any, *, name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"{name} must be a list of strings.")
    return [item for item in value if item.strip()]


def _parse_tools(value: Any) -> ToolSettings:
    if value is None:
        return ToolSettings()
    if not isinstance(value, dict):
        raise ValidationError("tools must be a JSON object.")
    unknown = sorted(set(value) - _TOOL_KEYS)
    if unknown:
        raise ValidationError(f"Unknown tool setting(s): {', '.join(unknown)}")
    return ToolSettings(
        allowed_tools=_string_list(value.get("allowed_tools"), name="allowed_tools"),
        disallowed_tools=_string_list(value.get("disallowed_tools"), name="disallowed_tools"),
        skip_permissions=bool(value.get("skip_permissions", False)),
    )


def _parse_images(value: Any) -> list[ImageAttachment]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError("images must be a list.")
    images: list[ImageAttachment] = []
    for item in value:
        if not isinstance(item, dict) or set(item) - {"data", "mime_type"}:
            raise ValidationError("Each image must be an object with data and mime_type.")
        images.append(
            ImageAttachment(
                data=str(item.get("data") or ""),
                mime_type=str(item.get("mime_type") or ""),
            ),
        )
    return images


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a job.

    Exactly one of ``command`` (shell build) or ``user_input`` (agent turn)
    is expected.
    """

    owner_id: str
    scope_id: str
    command: str | None = None
    user_input: str | None = None
    session_id: str | None = None
    options: AgentOptions | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> JobKind:
        return JobKind.AGENT if self.user_input is not None else JobKind.SHELL


@dataclass(slots=True)
class JobView:
    """Readable job view for services, controllers and HTTP handlers."""

    job_id: str
    owner_id: str
    scope_id: str
    session_id: str | None
    kind: JobKind
    command: str
    options: AgentOptions | None
    working_dir: str | None
    status: JobStatus
    process_id: int | None
    exit_code: int | None
    output: str | None
    error: str | None
    accumulated_response: str | None
    tool_session_id: str | None
    metadata: dict[str, Any]
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.job_id,
            "owner_id": self.owner_id,
            "scope_id": self.scope_id,
            "session_id": self.session_id,
            "kind": self.kind.value,
            "command": self.command,
            "working_dir": self.working_dir,
            "status": self.status.value,
            "process_id": self.process_id,
            "exit_code": self.exit_code,
            "output": self.output,
            "error": self.error,
            "accumulated_response": self.accumulated_response,
            "tool_session_id": self.tool_session_id,
            "metadata": self.metadata,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(slots=True)
class LogEntryView:
    """One persisted job log line."""

    log_id: int
    job_id: str
    level: LogLevel
    message: str
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.log_id,
            "build_id": self.job_id,
            "level": self.level.value,
            "message": self.message,
            "timestamp": _iso(self.timestamp),
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


@dataclass(slots=True)
class ScopeSnapshotView:
    """Pointer to the latest persisted archive of one owner's scope."""

    owner_id: str
    scope_id: str
    object_path: str | None
    last_job_id: str | None
    last_sync_status: str | None
    last_sync_error: str | None
    updated_at: datetime


@dataclass(slots=True)
class JobEvent:
    """Event published to live subscribers of one job."""

    job_id: str
    name: EventName
    data: dict[str, Any] = field(default_factory=dict)
    log_id: int | None = None
    terminal: bool = False


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
