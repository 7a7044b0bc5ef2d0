#!/usr/bin/env python3
"""
HighBid database setup

Creates the schema and seeds default prices by applying all pending Alembic
migrations against DATABASE_URL.

Usage:
    # Apply pending migrations
    python3 scripts/setup_database.py

    # Only report the current and head revisions
    python3 scripts/setup_database.py --check

    # Verbose logging
    python3 scripts/setup_database.py --verbose
"""

import argparse
import logging
import sys

from app.db.migration_runner import MigrationError, get_migration_status, run_migrations

logger = logging.getLogger("setup_database")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Create or upgrade the generation API database schema",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--check", action="store_true", help="Report status without migrating")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        if args.check:
            status = get_migration_status()
            logger.info(
                "current=%s head=%s pending=%s",
                status.current_revision,
                status.head_revision,
                status.pending,
            )
            return 1 if status.pending else 0

        status = run_migrations()
    except MigrationError as e:
        logger.error("%s", e)
        return 2

    logger.info("Database ready at revision %s", status.current_revision)
    return 0


if __name__ == "__main__":
    sys.exit(main())
