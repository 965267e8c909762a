"""
Relay Persistent Store

SQLite storage for users, batches, resources and the delivery outbox.

Usage:
    from src.core.database import get_database, apply_migrations

    db = await get_database()
    await apply_migrations(db)

    rows = await db.fetch("SELECT * FROM outbox WHERE user_id = $1", user_id)
    async with db.transaction() as conn:
        await conn.execute("UPDATE batches SET state = $1 WHERE id = $2", state, batch_id)
"""

from .adapter import (
    Connection,
    DatabaseAdapter,
    DatabaseConfig,
    get_database,
    set_database,
    close_database,
)
from .migrate import apply_migrations

__all__ = [
    "Connection",
    "DatabaseAdapter",
    "DatabaseConfig",
    "get_database",
    "set_database",
    "close_database",
    "apply_migrations",
]
