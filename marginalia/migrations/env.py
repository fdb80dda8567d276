"""Alembic environment for the marginalia cache.

Only run programmatically: ``CacheStore.migrate`` hands over its engine
through ``config.attributes``. Each revision gets its own transaction.
"""

from alembic import context

from marginalia import schema

engine = context.config.attributes["engine"]

with engine.connect() as connection:
    context.configure(
        connection=connection,
        target_metadata=schema.metadata,
        transaction_per_migration=True,
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()
