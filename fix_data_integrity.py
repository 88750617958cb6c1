#!/usr/bin/env python3
"""
Find and repair users who are in more than one active DaPaint.

Each violating user keeps their newest active match; older ones are deleted
(no opponent yet), completed as a draw (opponent present) or left (team
roster rows). See dapaint.operations.admin_operations for the exact rules.

Usage:
    python fix_data_integrity.py --dry-run
    python fix_data_integrity.py --apply
"""

import argparse
import asyncio
import sys

from dapaint.config import Config
from dapaint.database.database import Database
from dapaint.operations.admin_operations import IntegrityOperations
from dapaint.utils.logger import setup_logger

logger = setup_logger(__name__)


async def run(apply: bool, database_url: str = None) -> int:
    db = Database(database_url)
    await db.initialize()
    try:
        operations = IntegrityOperations(db)

        violations = await operations.find_violations()
        if not violations:
            logger.info("✅ No data integrity violations found")
            return 0

        logger.info(f"🚨 Found {len(violations)} users in more than one active DaPaint")
        report = await operations.repair_violations(dry_run=not apply)

        verb = "Applied" if apply else "Would apply"
        for action in report.actions:
            logger.info(f"   {verb}: match {action.match_id} {action.action} (user {action.user_id})")

        if not apply:
            logger.info("💡 Dry run only. Re-run with --apply to write these changes.")
            return 0

        remaining = await operations.find_violations()
        if remaining:
            logger.error(f"❌ {len(remaining)} violations remain after repair")
            return 1
        logger.info("✅ All violations repaired")
        return 0
    finally:
        await db.close()


def main() -> int:
    parser = argparse.ArgumentParser(description='Repair one-active-DaPaint violations')
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument('--dry-run', action='store_true', help='Report planned repairs without writing')
    mode.add_argument('--apply', action='store_true', help='Write the repairs')
    parser.add_argument('--database-url', default=None,
                        help=f'Database URL (default: {Config.DATABASE_URL})')
    args = parser.parse_args()

    return asyncio.run(run(apply=args.apply, database_url=args.database_url))


if __name__ == "__main__":
    sys.exit(main())
