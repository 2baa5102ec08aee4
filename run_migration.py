#!/usr/bin/env python3
"""
Create the Market Sync tables (and their indexes/constraints) if missing.
"""
import sys

from sqlalchemy.exc import SQLAlchemyError

from market_sync.core.config import get_settings
from market_sync.core.database import get_sync_db_engine
from market_sync.models import alias, catalog, market, stockx, sync_queue  # noqa: F401  register tables
from market_sync.models.base import Base


def run_migration() -> bool:
    """Create all tables registered on Base.metadata."""
    settings = get_settings()
    engine = get_sync_db_engine()

    print("Creating Market Sync tables")
    print(f"Database: {settings.DATABASE_URL.split('@')[-1] if '@' in settings.DATABASE_URL else 'N/A'}")

    try:
        with engine.begin() as conn:
            Base.metadata.create_all(conn, checkfirst=True)
        for table in sorted(Base.metadata.tables):
            print(f"  - {table}")
        print("Migration completed")
        return True
    except SQLAlchemyError as e:
        print(f"Migration failed: {e}")
        return False
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(0 if run_migration() else 1)
