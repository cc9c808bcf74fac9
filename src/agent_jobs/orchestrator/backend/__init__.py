"""Process launcher implementations."""

from agent_jobs.orchestrator.backend.base import LaunchRequest, ProcessHandle, ProcessLauncher
from agent_jobs.orchestrator.backend.cli_backend import (
    CliProcessLauncher,
    SubprocessHandle,
    build_agent_args,
    find_mcp_config,
    materialize_images,
    split_shell_command,
)

__all__ = [
    "CliProcessLauncher",
    "LaunchRequest",
    "ProcessHandle",
    "ProcessLauncher",
    "SubprocessHandle",
    "build_agent_args",
    "find_mcp_config",
    "materialize_images",
    "split_shell_command",
]
