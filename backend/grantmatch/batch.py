"""
Batch orchestrator for large-N work (embedding backfill, matching refresh).

Items are split into chunks of ``batch_size``.  Inside a chunk each item is
awaited to completion before the next starts, which bounds concurrent calls
to the database pool and the embedding API.  A fixed pause separates chunks.

One item failing never stops the run: the error is logged with the item id,
counted, and returned in ``error_details``.  A handler may raise
:class:`ItemSkipped` for items that are not eligible; those are counted
separately and are not errors.

Usage:
    orchestrator = BatchOrchestrator(batch_size=10, pause_seconds=1.0)
    report = await orchestrator.run(companies, refresh_company, item_id=lambda t: str(t.company_id))
    report.to_summary()  # {"processed": 10, "success_count": 8, ...}
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ItemSkipped(Exception):
    """Raised by a handler for an item that should be skipped, not failed."""


@dataclass
class ItemError:
    item_id: str
    error: str


@dataclass
class BatchReport:
    processed: int = 0
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    error_details: List[ItemError] = field(default_factory=list)
    duration_ms: int = 0

    def to_summary(self) -> Dict[str, Any]:
        """Snake-case form stored on ``batch_jobs``."""
        return {
            "processed": self.processed,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "skipped_count": self.skipped_count,
            "error_details": [
                {"itemId": e.item_id, "error": e.error} for e in self.error_details
            ],
            "duration_ms": self.duration_ms,
        }


class BatchOrchestrator:
    def __init__(
        self,
        batch_size: int = 10,
        pause_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size
        self.pause_seconds = pause_seconds
        self._sleep = sleep

    async def run(
        self,
        items: Sequence[T],
        handler: Callable[[T], Awaitable[Any]],
        *,
        batch_size: Optional[int] = None,
        item_id: Callable[[T], str] = str,
        label: str = "batch",
    ) -> BatchReport:
        size = self.batch_size if batch_size is None else batch_size
        if size < 1:
            raise ValueError("batch_size must be at least 1")

        report = BatchReport(processed=len(items))
        started = time.monotonic()
        chunks = [items[i : i + size] for i in range(0, len(items), size)]

        for index, chunk in enumerate(chunks):
            logger.info(
                f"{label}: chunk {index + 1}/{len(chunks)} ({len(chunk)} items)"
            )
            for item in chunk:
                key = repr(item)
                try:
                    key = item_id(item)
                    await handler(item)
                except ItemSkipped as e:
                    report.skipped_count += 1
                    logger.info(f"{label}: skipped {key}: {e}")
                except Exception as e:
                    report.error_count += 1
                    message = str(e) or type(e).__name__
                    report.error_details.append(ItemError(item_id=key, error=message))
                    logger.error(f"{label}: item {key} failed: {type(e).__name__}: {e}")
                else:
                    report.success_count += 1

            if index < len(chunks) - 1 and self.pause_seconds > 0:
                await self._sleep(self.pause_seconds)

        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"{label}: done processed={report.processed} success={report.success_count} "
            f"errors={report.error_count} skipped={report.skipped_count} "
            f"in {report.duration_ms}ms"
        )
        return report
