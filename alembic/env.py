import logging
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import get_settings  # noqa: E402
from database import Base, create_ledger_engine  # noqa: E402
import models  # noqa: E402,F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

database_url = config.get_main_option("sqlalchemy.url") or get_settings().database_url
target_metadata = Base.metadata

# SQLite cannot ALTER constraints in place; batch mode rebuilds the table.
configure_options = {
    "target_metadata": target_metadata,
    "render_as_batch": True,
    "compare_type": True,
}


def run_migrations_offline() -> None:
    context.configure(
        url=database_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **configure_options,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_ledger_engine(database_url)
    with connectable.connect() as connection:
        context.configure(connection=connection, **configure_options)
        with context.begin_transaction():
            context.run_migrations()
    connectable.dispose()
    logger.info("migrations applied")


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
