from __future__ import annotations

import sys
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import func, inspect, select

from fairdraw.db.engine import get_sessionmaker, make_engine
from fairdraw.models import DrawRecord, Project

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def alembic_config() -> Config:
    cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    return cfg


def migrate(target_revision: str = "head") -> None:
    """Upgrade to ``target_revision``; a leading ``-`` downgrades instead."""
    if target_revision.startswith("-") or target_revision == "base":
        command.downgrade(alembic_config(), target_revision)
    else:
        command.upgrade(alembic_config(), target_revision)


def report() -> None:
    """Print the draw tables and how many projects are still open."""
    engine = make_engine()
    tables = sorted(
        name for name in inspect(engine).get_table_names() if name != "alembic_version"
    )
    print("Tables:", ", ".join(tables) or "(none)")
    if Project.__tablename__ not in tables:
        return

    Session = get_sessionmaker(engine)
    with Session() as session:
        by_status = session.execute(
            select(Project.status, func.count(Project.id)).group_by(Project.status)
        ).all()
        draws = session.scalar(select(func.count(DrawRecord.id)))
    summary = ", ".join(f"{status}={count}" for status, count in by_status)
    print(f"Projects: {summary or 'none'}; recorded draws: {draws}")


def main(argv: list[str]) -> None:
    """Migrate (default: head) and report the resulting schema."""
    migrate(argv[0] if argv else "head")
    report()


if __name__ == "__main__":
    main(sys.argv[1:])
