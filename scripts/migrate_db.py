#!/usr/bin/env python3
"""
Database Migration — Create automation tables from the SQLAlchemy models.

Usage:
    # Create missing tables for the configured database:
    python scripts/migrate_db.py

    # Point at another config file:
    AUTOPILOT_CONFIG=/etc/autopilot.yaml python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def list_existing_tables(conn) -> list[str]:
    from sqlalchemy import inspect
    return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


def _display_url(engine) -> str:
    url = str(engine.url)
    return url.split("@")[-1] if "@" in url else url


async def run_migration(check_only: bool = False, engine=None) -> list[str]:
    """Create (or just report) tables. Returns the tables still missing."""
    from database.models import Base

    own_engine = engine is None
    if own_engine:
        from config.settings import load_settings
        load_settings()
        from database.session import get_engine
        engine = get_engine()

    defined = set(Base.metadata.tables.keys())
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {_display_url(engine)}")
    print(f"Tables defined: {', '.join(sorted(defined))}")

    if not check_only:
        print("Running database migration...")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async with engine.connect() as conn:
        existing = await list_existing_tables(conn)
    print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")

    missing = sorted(defined - set(existing))
    if missing:
        print(f"Tables MISSING: {', '.join(missing)}")
        print("Run without --check to create them.")
    else:
        print("All tables exist. ✓")

    if own_engine:
        await engine.dispose()
    return missing


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    missing = asyncio.run(run_migration(check_only=args.check))
    sys.exit(1 if args.check and missing else 0)


if __name__ == "__main__":
    main()
