"""CLI entrypoint for agent-jobs."""

from pathlib import Path

import rich_click as click
import uvicorn

from agent_jobs import __version__
from agent_jobs.config import Settings
from agent_jobs.logging_config import setup_logging
from agent_jobs.orchestrator.controllers import (
    JobsCliController,
    JobsInspectCommand,
    JobsListCommand,
    JobsRunCommand,
)
from agent_jobs.orchestrator.errors import OrchestratorError

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-jobs")
@click.option(
    "--log-level",
    default=None,
    help="Python log level; defaults to AGENT_JOBS_LOG_LEVEL.",
)
def agent_jobs(log_level: str | None) -> None:
    """Job execution orchestrator CLI."""

    setup_logging(log_level or Settings.from_env().log_level)


@agent_jobs.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=8080, show_default=True)
def serve(db_path: Path | None, host: str, port: int) -> None:
    """Run the HTTP API (FastAPI + SSE streaming)."""

    from agent_jobs.api.app import create_app

    settings = Settings.from_env(db_path=db_path)
    try:
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    uvicorn.run(create_app(settings=settings), host=host, port=port, log_config=None)


@agent_jobs.group()
def jobs() -> None:
    """Run and inspect jobs."""


@jobs.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", "owner_id", default="local", show_default=True, help="Owner id.")
@click.option("--scope", "scope_id", required=True, help="Scope (project) id.")
@click.option("--session", "session_id", default=None, help="Optional session id.")
@click.option("--command", "shell_command", default=None, help="Shell build command.")
@click.option("--input", "user_input", default=None, help="Agent turn input text.")
@click.option(
    "--options",
    "options_json",
    default=None,
    help="Agent options as JSON, for example `{\"permission_mode\": \"plan\"}`.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Give up waiting after this many seconds (the job is then cancelled).",
)
def jobs_run(  # noqa: PLR0913
    db_path: Path | None,
    owner_id: str,
    scope_id: str,
    session_id: str | None,
    shell_command: str | None,
    user_input: str | None,
    options_json: str | None,
    timeout_seconds: float | None,
) -> None:
    """Run one shell build (`--command`) or agent turn (`--input`) and print its log."""

    if (shell_command is None) == (user_input is None):
        raise click.UsageError("Pass exactly one of --command or --input.")
    try:
        lines = JOBS_CONTROLLER.run(
            JobsRunCommand(
                db_path=db_path,
                owner_id=owner_id,
                scope_id=scope_id,
                command=shell_command,
                user_input=user_input,
                options_json=options_json,
                session_id=session_id,
                timeout_seconds=timeout_seconds,
            ),
        )
    except (OrchestratorError, ValueError, TimeoutError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", "owner_id", default=None, help="Filter by owner id.")
@click.option("--scope", "scope_id", default=None, help="Filter by scope id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="How many jobs to print, most recent first.",
)
def jobs_list(db_path: Path | None, owner_id: str | None, scope_id: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        JOBS_CONTROLLER.list_jobs(
            JobsListCommand(db_path=db_path, owner_id=owner_id, scope_id=scope_id, limit=limit),
        ),
    )


@jobs.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_show(db_path: Path | None, job_id: str) -> None:
    """Show one job with its scope snapshot state."""

    _emit_lines(JOBS_CONTROLLER.show_job(JobsInspectCommand(db_path=db_path, job_id=job_id)))


@jobs.command("logs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=10_000),
    default=200,
    show_default=True,
    help="Max number of log lines, oldest first.",
)
@click.argument("job_id")
def jobs_logs(db_path: Path | None, limit: int, job_id: str) -> None:
    """Print persisted log lines of one job."""

    _emit_lines(
        JOBS_CONTROLLER.logs(JobsInspectCommand(db_path=db_path, job_id=job_id, limit=limit)),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_jobs()
