#!/usr/bin/env python3
"""
Database Migration — create the InboxAgent tables and seed the agent config.

Usage:
    python scripts/migrate_db.py                 # create missing tables
    python scripts/migrate_db.py --check         # report only, no changes
    python scripts/migrate_db.py --seed-config   # also write agent_defaults if no config row exists

The database comes from ``database.url`` in the settings file
(INBOX_AGENT_CONFIG, or config/settings.yaml).
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run_migration(check_only: bool = False, seed_config: bool = False):
    from config.settings import load_settings
    settings = load_settings()

    from database.models import Base
    from database.session import close_db, get_engine, init_db, missing_tables

    engine = get_engine()
    url = str(engine.url)
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {url.split('@')[-1] if '@' in url else url}")

    missing = await missing_tables(engine)

    if check_only:
        print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")
        if missing:
            print(f"Tables MISSING: {', '.join(missing)}")
            print("Run without --check to create them.")
        else:
            print("All tables exist.")
        await close_db()
        return

    created = await init_db(engine)
    print(f"Created: {', '.join(created) or '(nothing, schema up to date)'}")

    if seed_config:
        from database.store import SqlConversationStore
        from rules.config_provider import StoreAgentConfigProvider
        config = await StoreAgentConfigProvider(
            SqlConversationStore(), settings.agent_defaults,
        ).get()
        print(f"Agent config: max_per_conversation={config.response_limits.max_per_conversation}, "
              f"auto_disable_on_score={config.lead_scoring.auto_disable_on_score}")

    await close_db()
    print("Migration complete.")


def main():
    parser = argparse.ArgumentParser(description="InboxAgent database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--seed-config", action="store_true",
                        help="Write agent_defaults to the store if no config exists yet")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check, seed_config=args.seed_config))


if __name__ == "__main__":
    main()
