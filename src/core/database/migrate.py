#!/usr/bin/env python3
"""
Database Migration Runner

Usage:
    python -m src.core.database.migrate              # Run all pending migrations
    python -m src.core.database.migrate --status     # Show migration status

Environment:
    RELAY_DB_PATH - SQLite database file
                    Default: ./data/relay.db
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Set, Tuple

from .adapter import DatabaseAdapter, DatabaseConfig
from ..timeutil import to_db_time, utcnow

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


def list_migrations(migrations_dir: Path = MIGRATIONS_DIR) -> List[Tuple[str, Path]]:
    """Return (version, path) pairs sorted by version."""
    files = sorted(migrations_dir.glob("*.sql"))
    return [(f.stem.split("_")[0], f) for f in files]


async def ensure_migrations_table(db: DatabaseAdapter) -> None:
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
        """
    )


async def get_applied_migrations(db: DatabaseAdapter) -> Set[str]:
    """Get set of already-applied migration versions."""
    rows = await db.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def run_migration(db: DatabaseAdapter, version: str, path: Path) -> None:
    """Run a single migration and record it, atomically."""
    sql = path.read_text(encoding="utf-8")
    applied_at = to_db_time(utcnow())
    script = (
        "BEGIN IMMEDIATE;\n"
        f"{sql}\n"
        "INSERT INTO schema_migrations (version, name, applied_at) "
        f"VALUES ('{version}', '{path.stem}', '{applied_at}');\n"
        "COMMIT;\n"
    )
    logger.info(f"Running migration {version} ({path.stem})")
    await db.executescript(script)


async def apply_migrations(
    db: DatabaseAdapter,
    migrations_dir: Path = MIGRATIONS_DIR
) -> List[str]:
    """
    Apply all pending migrations in version order.

    Returns:
        Versions applied by this call (empty when up to date)
    """
    await ensure_migrations_table(db)
    applied = await get_applied_migrations(db)

    done = []
    for version, path in list_migrations(migrations_dir):
        if version in applied:
            continue
        await run_migration(db, version, path)
        done.append(version)

    if done:
        logger.info(f"Applied {len(done)} migration(s): {', '.join(done)}")
    else:
        logger.debug("No pending migrations. Database is up to date.")
    return done


async def run_all_migrations(db_path: Optional[str] = None) -> None:
    """Run all pending migrations."""
    db = DatabaseAdapter(DatabaseConfig(sqlite_path=db_path))

    print("=" * 60)
    print("Relay Database Migration Runner")
    print("=" * 60)
    print(f"\nDatabase: {db.config.sqlite_path}")
    print(f"Migrations: {MIGRATIONS_DIR}\n")

    await db.connect()
    try:
        done = await apply_migrations(db)
        if not done:
            print("No pending migrations. Database is up to date.")
            return
        for version in done:
            print(f"  ✅ Migration {version} complete")
        print("\n" + "=" * 60)
        print("✅ All migrations complete!")
        print("=" * 60)
    finally:
        await db.disconnect()


async def show_status(db_path: Optional[str] = None) -> None:
    """Show migration status."""
    db = DatabaseAdapter(DatabaseConfig(sqlite_path=db_path))

    print("=" * 60)
    print("Migration Status")
    print("=" * 60)
    print(f"\nDatabase: {db.config.sqlite_path}")
    print(f"Migrations: {MIGRATIONS_DIR}\n")

    await db.connect()
    try:
        await ensure_migrations_table(db)
        applied = await get_applied_migrations(db)

        print("Migrations:")
        print("-" * 50)
        for version, path in list_migrations():
            status = "✅ Applied" if version in applied else "⏳ Pending"
            print(f"  {version}: {path.stem}")
            print(f"      Status: {status}")

        print("\n" + "-" * 50)
        print("Tables:")
        tables = await db.fetch(
            "SELECT name FROM sqlite_master WHERE type = 'table' "
            "AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        for t in tables:
            print(f"  • {t['name']}")
    finally:
        await db.disconnect()


def main() -> None:
    parser = argparse.ArgumentParser(description="Relay database migrations")
    parser.add_argument("--status", action="store_true", help="Show migration status")
    parser.add_argument("--db", dest="db_path", default=None, help="SQLite file (default: $RELAY_DB_PATH)")
    args = parser.parse_args()

    if args.status:
        asyncio.run(show_status(args.db_path))
    else:
        asyncio.run(run_all_migrations(args.db_path))


if __name__ == "__main__":
    main()
