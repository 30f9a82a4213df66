#!/usr/bin/env python3
"""
Database Migration — Create the flow tables from SQLAlchemy models.

Usage:
    python scripts/migrate_db.py

    # Point at another config file:
    CONVERSE_FLOWS_CONFIG=/etc/converse-flows.yaml python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv


async def run_migration(check_only: bool = False):
    from config.settings import load_settings
    settings = load_settings()

    from utils.logging import configure_logging
    configure_logging(debug=settings.debug, json_logs=settings.json_logs)

    from database.connection import FlowDatabase, redact_url
    from database.models import Base

    db = FlowDatabase(settings.database.url, echo=settings.debug)
    try:
        if check_only:
            print(f"Database: {db.dialect}")
            print(f"URL: {redact_url(db.url)}")
            print(f"Tables defined: {', '.join(Base.metadata.tables)}")
            print(f"Tables existing: {', '.join(await db.existing_tables()) or '(none)'}")

            missing = await db.missing_tables()
            if missing:
                print(f"Tables MISSING: {', '.join(missing)}")
                print("Run without --check to create them.")
            else:
                print("All tables exist. ✓")
            return

        print("Running database migration...")
        tables = await db.create_tables()
        print(f"Tables created/verified: {', '.join(tables)}")
        print("Migration complete. ✓")
    finally:
        await db.dispose()


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check))


if __name__ == "__main__":
    main()
