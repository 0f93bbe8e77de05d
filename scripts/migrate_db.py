#!/usr/bin/env python3
"""
Create the call-session tables from the SQLAlchemy models.

Usage:
    python scripts/migrate_db.py            # create missing tables
    python scripts/migrate_db.py --check    # report only
"""
import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(engine) -> list[str]:
    from sqlalchemy import inspect

    async with engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


async def run_migration(check_only: bool = False) -> int:
    from config.settings import load_settings
    load_settings()

    from database.models import Base
    from database.session import close_db, get_engine, init_db

    engine = get_engine()
    defined = set(Base.metadata.tables.keys())
    url = str(engine.url)
    print(f"Database: {engine.dialect.name} ({url.split('@')[-1]})")

    try:
        if check_only:
            existing = set(await _existing_tables(engine))
            missing = sorted(defined - existing)
            print(f"Tables defined: {', '.join(sorted(defined))}")
            if missing:
                print(f"Tables MISSING: {', '.join(missing)}")
                return 1
            print("All tables exist.")
            return 0

        await init_db(engine)
        existing = set(await _existing_tables(engine))
        print(f"Tables created/verified: {', '.join(sorted(defined & existing))}")
        return 0
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Call-session database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()
    sys.exit(asyncio.run(run_migration(check_only=args.check)))


if __name__ == "__main__":
    main()
