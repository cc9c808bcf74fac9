"""Best-effort git snapshot of a working directory."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_COMMIT_MESSAGE = "update via agent turn"
COMMIT_AUTHOR_NAME = "agent-jobs"
COMMIT_AUTHOR_EMAIL = "agent-jobs@localhost"
GIT_TIMEOUT_SECONDS = 60


def commit_snapshot(working_dir: Path, message: str | None = None) -> bool:
    """Init (if needed), stage everything and commit. Failures are logged, never raised."""

    commands: list[list[str]] = []
    if not (working_dir / ".git").exists():
        commands.append(["init", "--quiet"])
    commands.append(["add", "-A"])
    commands.append(
        [
            "-c",
            f"user.name={COMMIT_AUTHOR_NAME}",
            "-c",
            f"user.email={COMMIT_AUTHOR_EMAIL}",
            "commit",
            "--quiet",
            "--allow-empty",
            "-m",
            (message or "").strip() or DEFAULT_COMMIT_MESSAGE,
        ],
    )

    for args in commands:
        try:
            completed = subprocess.run(  # noqa: S603
                ["git", *args],  # noqa: S607
                cwd=working_dir,
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            logger.warning("git %s failed in %s: %s", args[-1], working_dir, error)
            return False
        if completed.returncode != 0:
            logger.warning(
                "git %s exited with %s in %s: %s",
                " ".join(args[:2]),
                completed.returncode,
                working_dir,
                completed.stderr.strip(),
            )
            return False
    return True
