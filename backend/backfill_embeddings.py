"""
Backfill embeddings for grant programs flagged ``needs_embedding``.

This script:
1. Loads live programs still flagged for embedding (oldest first)
2. Generates embeddings with OpenAI (text-embedding-ada-002)
3. Upserts each vector into document_embeddings and clears the flag

Supports both standard OpenAI (OPENAI_API_KEY) and Azure OpenAI
(AZURE_OPENAI_ENDPOINT + AZURE_OPENAI_KEY).  Repeats until nothing is left
unless --once is given.

Usage:
    cd backend
    source venv/bin/activate
    python -m backfill_embeddings --batch-size 50
"""

import argparse
import asyncio
import logging
import sys
import time

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

from grantmatch import database  # noqa: E402
from grantmatch.config import EngineConfig  # noqa: E402
from grantmatch.openai_provider import generate_embedding, is_configured  # noqa: E402
from grantmatch.repositories.sql import sql_scope  # noqa: E402
from grantmatch.services.embedding_service import EmbeddingBackfillService  # noqa: E402


async def main(batch_size: int, once: bool) -> int:
    start_time = time.time()
    config = EngineConfig.from_env()
    service = EmbeddingBackfillService(sql_scope, generate_embedding, config)

    success_count = 0
    failure_count = 0
    rounds = 0
    while True:
        rounds += 1
        report = await service.run(batch_size=batch_size)
        success_count += report.success_count
        failure_count += report.error_count
        for detail in report.error_details:
            logger.error(f"  {detail.item_id}: {detail.error}")

        # A round with no successes would only retry the same failures.
        if once or report.processed == 0 or report.success_count == 0:
            break

    logger.info("=" * 60)
    logger.info("Embedding Backfill Summary")
    logger.info(f"  Rounds:       {rounds}")
    logger.info(f"  Succeeded:    {success_count}")
    logger.info(f"  Failed:       {failure_count}")
    logger.info(f"  Elapsed:      {time.time() - start_time:.1f}s")
    logger.info("=" * 60)
    return 1 if failure_count and not success_count else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Backfill grant program embeddings")
    parser.add_argument("--batch-size", type=int, default=50, help="Programs per round")
    parser.add_argument("--once", action="store_true", help="Run a single round")
    args = parser.parse_args()

    if database.engine is None:
        logger.critical("DATABASE_URL is not set")
        sys.exit(1)
    if not is_configured():
        logger.critical(
            "No OpenAI credentials found. Set OPENAI_API_KEY or AZURE_OPENAI_ENDPOINT + AZURE_OPENAI_KEY"
        )
        sys.exit(1)

    sys.exit(asyncio.run(main(args.batch_size, args.once)))
