#!/usr/bin/env python3
"""
Regroup Programs Script

Runs the similarity grouper over the live grant catalog: normalizes program
names, clusters duplicates by (normalized name, year), and creates, updates
or collapses duplicate groups.  Reviewer decisions are kept: rejected groups
stay suppressed until their members change materially.

Usage:
    # Full catalog
    python -m scripts.regroup_programs

    # One program year
    python -m scripts.regroup_programs --year 2025

    # Only programs updated in the last 24 hours (and their duplicates)
    python -m scripts.regroup_programs --changed-since-hours 24

Environment Variables:
    DATABASE_URL: postgresql+asyncpg connection URL
    GRANTMATCH_AUTO_MERGE_THRESHOLD, GRANTMATCH_CONFIDENCE_FLOOR,
    GRANTMATCH_ORG_SIMILARITY_THRESHOLD: grouping thresholds
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from grantmatch import database  # noqa: E402
from grantmatch.config import EngineConfig  # noqa: E402
from grantmatch.deduplication import GroupingReport, SimilarityGrouper  # noqa: E402
from grantmatch.repositories.sql import sql_scope  # noqa: E402

logger = logging.getLogger(__name__)


async def regroup(
    project_year: Optional[int] = None, changed_since_hours: Optional[int] = None
) -> GroupingReport:
    config = EngineConfig.from_env()
    changed_since = None
    if changed_since_hours is not None:
        changed_since = datetime.now(timezone.utc) - timedelta(hours=changed_since_hours)

    async with sql_scope() as repos:
        grouper = SimilarityGrouper(repos, config.grouping)
        return await grouper.regroup(project_year=project_year, changed_since=changed_since)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Recompute duplicate groups for grant programs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--year", type=int, default=None, help="Limit to one program year")
    parser.add_argument(
        "--changed-since-hours",
        type=int,
        default=None,
        help="Only rescan programs updated within this many hours",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if database.engine is None:
        print("Error: DATABASE_URL must be set")
        return 1

    report = asyncio.run(regroup(args.year, args.changed_since_hours))
    print(json.dumps(report.to_summary(), indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
