"""
Alembic environment for timekeeper-daemon.

The database URL comes from the ``db_url`` attribute set by Storage, falling
back to the DB_PATH environment variable for manual ``alembic upgrade`` runs.
"""

import os

from sqlalchemy import create_engine, pool

from alembic import context
from timekeeper_daemon.models import Base

config = context.config
target_metadata = Base.metadata


def get_url() -> str:
    url = config.attributes.get("db_url")
    if url:
        return url
    return f"sqlite:///{os.environ.get('DB_PATH', '/var/lib/timekeeper/timekeeper.sqlite')}"


def run_migrations_offline() -> None:
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(get_url(), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=True,
        )
        with context.begin_transaction():
            context.run_migrations()
    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
