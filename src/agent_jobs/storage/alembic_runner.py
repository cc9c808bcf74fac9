"""Run the job schema migrations programmatically."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def upgrade_head(db_path: Path) -> None:
    """Bring the SQLite database at ``db_path`` to the latest schema revision."""

    alembic_dir = PROJECT_ROOT / "alembic"
    if not (alembic_dir / "versions").is_dir():
        raise RuntimeError(
            f"Migration scripts not found under {alembic_dir}; "
            "install the project in editable mode from its checkout.",
        )

    db_path.parent.mkdir(parents=True, exist_ok=True)
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(alembic_dir))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    command.upgrade(config, "head")
