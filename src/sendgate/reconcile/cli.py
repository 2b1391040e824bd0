"""Command line entry point for schema reconciliation."""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from sendgate.config import Settings, settings
from sendgate.db.base import Database
from sendgate.errors import MigrationStepError
from sendgate.reconcile.postgres import PostgresSchemaOps
from sendgate.reconcile.runner import MigrationEngine

logger = logging.getLogger("sendgate.reconcile")

EXIT_OK = 0
EXIT_STEP_FAILED = 1
EXIT_NOT_CONVERGED = 2
EXIT_UNSUPPORTED = 3


async def _reconcile(database_url: Optional[str], dry_run: bool) -> int:
    config = Settings(database_url=database_url) if database_url else settings
    db = Database(config)
    try:
        if db.dialect_name != "postgresql":
            logger.error(f"Reconciliation requires PostgreSQL, got {db.dialect_name}")
            return EXIT_UNSUPPORTED

        engine = MigrationEngine(PostgresSchemaOps(db.engine))
        if dry_run:
            planned = await engine.plan()
            print(json.dumps({"plan": [{"step": p.name, "state": p.state} for p in planned]}, indent=2))
            return EXIT_OK

        report = await engine.run()
        print(json.dumps(report.to_dict(), indent=2))
        return EXIT_OK if report.converged else EXIT_NOT_CONVERGED
    except MigrationStepError as e:
        print(json.dumps({"error": e.code, "step": e.step, "message": e.message}, indent=2))
        return EXIT_STEP_FAILED
    finally:
        await db.dispose()


def main():
    parser = argparse.ArgumentParser(
        description="Bring the SendGate tasks table to the current schema from any partial state"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="PostgreSQL URL (default: SENDGATE_DATABASE_URL)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report which steps would run without changing anything",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    sys.exit(asyncio.run(_reconcile(args.database_url, args.dry_run)))


if __name__ == "__main__":
    main()
