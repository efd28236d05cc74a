from __future__ import annotations

import os
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy.engine import Connection
from dotenv import load_dotenv

# Ensure project root is on path and load environment variables
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))
load_dotenv(ROOT_DIR / ".env")

from fairdraw.db.engine import DEFAULT_SQLITE_URL, make_engine
from fairdraw.db.utils import resolve_sqlite_url
from fairdraw.models import Base  # noqa: E402,F401 - import populates metadata

config = context.config

# Callers that own logging (tests, embedding apps) pass configure_logger=False.
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata

# The draw tables may live in a database shared with the host application.
FAIRDRAW_TABLES = frozenset(target_metadata.tables)


def include_object(object_, name, type_, reflected, compare_to):
    """Keep autogenerate away from tables fairdraw does not own."""

    if type_ == "table":
        return name in FAIRDRAW_TABLES
    table = getattr(object_, "table", None)
    if table is not None:
        return table.name in FAIRDRAW_TABLES
    return True


def _configured_database_url() -> str:
    x_url = context.get_x_argument(as_dictionary=True).get("db_url")
    env_url = x_url or os.getenv("DB_URL")
    if env_url:
        return resolve_sqlite_url(env_url, ROOT_DIR)
    return DEFAULT_SQLITE_URL


DATABASE_URL = _configured_database_url()

# Percent signs need to be escaped due to ConfigParser interpolation rules.
config.set_main_option("sqlalchemy.url", DATABASE_URL.replace("%", "%%"))

# is_winner carries a server default, so defaults are compared as well as types.
COMPARE_OPTIONS = {
    "target_metadata": target_metadata,
    "compare_type": True,
    "compare_server_default": True,
    "include_object": include_object,
}


def run_migrations_offline() -> None:
    """Emit SQL for the migrations without connecting."""

    context.configure(
        url=DATABASE_URL,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **COMPARE_OPTIONS,
    )

    with context.begin_transaction():
        context.run_migrations()


def _migrate(connection: Connection) -> None:
    context.configure(
        connection=connection,
        render_as_batch=connection.dialect.name == "sqlite",
        **COMPARE_OPTIONS,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply the migrations over a live connection.

    A connection handed in through ``config.attributes["connection"]`` is
    used as is; otherwise one is opened on the fairdraw engine, which also
    enables SQLite foreign keys for the migration.
    """

    connection = config.attributes.get("connection")
    if connection is not None:
        _migrate(connection)
        return

    engine = make_engine(database_url=DATABASE_URL)
    try:
        with engine.connect() as connection:
            _migrate(connection)
            connection.commit()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
