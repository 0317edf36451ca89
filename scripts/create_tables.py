"""One-off helper to create the chat tables.

Usage (locally, from the project root):

    export POSTGRES_HOST=... POSTGRES_USER=... POSTGRES_PASSWORD=... POSTGRES_DB=...
    python scripts/create_tables.py            # create missing tables
    python scripts/create_tables.py --drop     # drop chat tables first

Uses the same async engine as the app, so the asyncpg URL and pool settings
match production.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

# Add project root to Python path so we can import pkg and app modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.chat.repository.sql_schema import chat as _chat  # noqa: E402,F401  registers the models
from app.core.config import settings  # noqa: E402
from app.core.logger import get_logger  # noqa: E402
from pkg.db_util.postgres_conn import PostgresConnection  # noqa: E402
from pkg.db_util.sql_alchemy.declarative_base import Base  # noqa: E402
from pkg.db_util.types import PostgresConfig  # noqa: E402


async def create_tables(drop: bool = False) -> None:
    config = PostgresConfig.from_settings(settings)
    postgres_conn = PostgresConnection(config, get_logger("create_tables"))

    try:
        print("\n📦 Creating SQLAlchemy engine...")
        engine = await postgres_conn.get_engine()

        async with engine.begin() as conn:
            result = await conn.execute(text("SELECT version()"))
            print(f"✅ Connected to: {result.scalar()[:80]}...")

            if drop:
                print("\n🗑️  Dropping chat tables (if any)...")
                await conn.run_sync(Base.metadata.drop_all)

            print("\n🔨 Creating tables from SQLAlchemy metadata...")
            await conn.run_sync(Base.metadata.create_all)

        print(f"✅ Tables ready: {', '.join(sorted(Base.metadata.tables))}")
    except SQLAlchemyError as e:
        print(f"\n❌ SQLAlchemy error: {e}")
        raise
    finally:
        await postgres_conn.close_engine()


def main():
    parser = argparse.ArgumentParser(description="Create chat tables")
    parser.add_argument("--drop", action="store_true", help="drop the chat tables before creating them")
    args = parser.parse_args()

    if not settings.POSTGRES_HOST:
        print("❌ ERROR: Please set POSTGRES_HOST (and the other POSTGRES_* variables) and re-run.")
        sys.exit(2)

    asyncio.run(create_tables(drop=args.drop))
    print("\n🎉 SUCCESS! Database tables are ready.")


if __name__ == "__main__":
    main()
