"""Subprocess launcher and argv construction for shell and agent jobs."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import IO

from agent_jobs.orchestrator.backend.base import LaunchRequest
from agent_jobs.orchestrator.errors import SpawnError, ValidationError
from agent_jobs.orchestrator.models import (
    PLAN_MODE_TOOLS,
    AgentOptions,
    ImageAttachment,
    PermissionMode,
)

logger = logging.getLogger(__name__)

MCP_CONFIG_FILENAME = ".claude.json"
IMAGES_DIRNAME = Path(".agent_jobs") / "images"

_IMAGE_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


class SubprocessHandle:
    """Live handle over a ``subprocess.Popen`` running in its own process group."""

    def __init__(self, process: subprocess.Popen[bytes]) -> None:
        self._process = process
        self.pid = process.pid

    @property
    def stdout(self) -> IO[bytes]:
        assert self._process.stdout is not None
        return self._process.stdout

    @property
    def stderr(self) -> IO[bytes]:
        assert self._process.stderr is not None
        return self._process.stderr

    def wait(self) -> int:
        return self._process.wait()

    def kill(self) -> None:
        if self._process.poll() is not None:
            return
        if os.name == "posix":
            try:
                os.killpg(self._process.pid, signal.SIGKILL)
                return
            except (ProcessLookupError, PermissionError):
                logger.debug("killpg failed for pid=%s, falling back to kill", self._process.pid)
        try:
            self._process.kill()
        except OSError:
            return


class CliProcessLauncher:
    """Spawn external tools with captured stdout/stderr pipes."""

    def launch(self, request: LaunchRequest) -> SubprocessHandle:
        if not request.argv:
            raise SpawnError("Empty command.")

        env = os.environ.copy()
        env.update(request.extra_env)
        env["USER_ID"] = request.owner_id
        env["PROJECT_ID"] = request.scope_id
        env["WORKING_DIR"] = str(request.cwd)
        env["JOB_ID"] = request.job_id

        try:
            process = subprocess.Popen(  # noqa: S603
                request.argv,
                cwd=request.cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=os.name == "posix",
            )
        except FileNotFoundError as error:
            raise SpawnError(f"Command not found: {request.argv[0]}") from error
        except PermissionError as error:
            raise SpawnError(f"Permission denied: {request.argv[0]}") from error
        except OSError as error:
            raise SpawnError(f"Failed to start {request.argv[0]}: {error}") from error

        logger.info("Spawned job_id=%s pid=%s argv0=%s", request.job_id, process.pid, request.argv[0])
        return SubprocessHandle(process)


def split_shell_command(command: str) -> list[str]:
    """Split a build command on whitespace; quoting is not interpreted."""

    argv = command.split()
    if not argv:
        raise ValidationError("Command is empty.")
    return argv


def build_agent_args(
    user_input: str,
    options: AgentOptions,
    *,
    mcp_config_path: Path | None = None,
) -> list[str]:
    """Build agent CLI flags for one turn (without the executable itself)."""

    args: list[str] = []
    if options.resume and options.tool_session_id:
        args.extend(["--resume", options.tool_session_id])

    args.extend(["--output-format", "stream-json", "--verbose"])

    if mcp_config_path is not None:
        args.extend(["--mcp-config", str(mcp_config_path)])

    if not options.resume:
        args.extend(["--model", options.effective_model])

    mode = options.permission_mode
    if mode is not PermissionMode.DEFAULT:
        args.extend(["--permission-mode", mode.value])

    tools = options.tools
    if tools.skip_permissions and mode is not PermissionMode.PLAN:
        args.append("--dangerously-skip-permissions")
    else:
        for tool in tools.allowed_tools:
            args.extend(["--allowedTools", tool])
        for tool in tools.disallowed_tools:
            args.extend(["--disallowedTools", tool])
        if mode is PermissionMode.PLAN and not tools.allowed_tools:
            for tool in PLAN_MODE_TOOLS:
                args.extend(["--allowedTools", tool])

    if user_input:
        args.extend(["--print", "--", user_input])
    return args


def find_mcp_config(home: Path | None = None) -> Path | None:
    """Return the agent config file when it advertises MCP servers."""

    config_path = (home or Path.home()) / MCP_CONFIG_FILENAME
    if not config_path.is_file():
        return None
    try:
        config = json.loads(config_path.read_text("utf-8"))
    except (OSError, ValueError):
        logger.warning("Ignoring unreadable MCP config: %s", config_path)
        return None
    if not isinstance(config, dict):
        return None

    if _has_servers(config):
        return config_path
    for key in ("claudeProjects", "projects"):
        projects = config.get(key)
        if not isinstance(projects, dict):
            continue
        if any(isinstance(project, dict) and _has_servers(project) for project in projects.values()):
            return config_path
    return None


def _has_servers(section: dict[str, object]) -> bool:
    servers = section.get("mcpServers")
    return isinstance(servers, dict) and len(servers) > 0


def materialize_images(
    user_input: str,
    images: list[ImageAttachment],
    *,
    working_dir: Path,
) -> str:
    """Write attached images into the working directory and reference them in the input."""

    if not images:
        return user_input

    images_dir = working_dir / IMAGES_DIRNAME
    images_dir.mkdir(parents=True, exist_ok=True)
    paths: list[Path] = []
    for index, image in enumerate(images, start=1):
        try:
            data = base64.b64decode(image.data, validate=True)
        except (binascii.Error, ValueError) as error:
            raise ValidationError(f"Image #{index} is not valid base64.") from error
        path = images_dir / f"image_{index}{_IMAGE_EXTENSIONS.get(image.mime_type, '.bin')}"
        path.write_bytes(data)
        paths.append(path)

    listing = "\n".join(f"- {path}" for path in paths)
    return f"{user_input}\n\nAttached images:\n{listing}"
