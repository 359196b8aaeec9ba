"""
Bounded-concurrency batch runner.

A shared queue of batch items is drained by a fixed pool of workers. Each
item's outcome is recorded independently; a failing item never cancels or
corrupts its siblings.
"""

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Union

import structlog

from ..config import Settings
from ..exceptions import AppError, ErrorCategory, ErrorCode
from ..models import BatchItem, BatchItemResult, BatchResult, BatchSummary, ErrorInfo
from ..monitoring_metrics import BATCH_ITEMS

logger = logging.getLogger(__name__)

RunItem = Callable[[BatchItem, str], Awaitable[BatchItemResult]]


def error_info(error: AppError) -> ErrorInfo:
    return ErrorInfo(code=error.code, message=error.message, category=error.category.value,
                     retryable=error.retryable, details=error.details)


def _as_item(value: Union[BatchItem, str]) -> BatchItem:
    if isinstance(value, BatchItem):
        return value
    return BatchItem(event_slug=value or "")


class BatchRunner:
    def __init__(self, run_item: RunItem, settings: Settings):
        self.run_item = run_item
        self.settings = settings
        self.log = structlog.get_logger()

    def resolve_concurrency(self, requested: Optional[int], item_count: int) -> int:
        """Clamp to [1, BATCH_MAX_CONCURRENCY] and never above the item count."""
        concurrency = requested if requested is not None else self.settings.BATCH_CONCURRENCY
        concurrency = max(1, min(int(concurrency), self.settings.BATCH_MAX_CONCURRENCY))
        return max(1, min(concurrency, item_count))

    async def _run_one(self, request_id: str, item: BatchItem) -> Tuple[BatchItemResult, bool]:
        """Returns the outcome and whether the item was rejected as invalid."""
        run_id = item.run_id or str(uuid.uuid4())
        slug = (item.event_slug or "").strip()
        if not slug:
            error = AppError(code=ErrorCode.ORCH_BATCH_ITEM_INVALID,
                             message="Batch item has no event identifier",
                             category=ErrorCategory.VALIDATION)
            return BatchItemResult(event_id=item.event_slug or "", run_id=run_id, status="failed",
                                   error=error_info(error)), True

        item = item.model_copy(update={"event_slug": slug, "run_id": run_id})
        try:
            return await self.run_item(item, request_id), False
        except AppError as e:
            error = e
        except Exception as e:
            logger.exception(f"Pipeline crashed for {slug}")
            error = AppError(code=ErrorCode.ORCH_BATCH_PIPELINE_FAILED,
                             message=str(e) or e.__class__.__name__,
                             category=ErrorCategory.INTERNAL,
                             details={"exception": e.__class__.__name__})
        return BatchItemResult(event_id=slug, run_id=run_id, status="failed", error=error_info(error)), False

    async def run_batch(self, request_id: str, items: Sequence[Union[BatchItem, str]],
                        concurrency: Optional[int] = None) -> BatchResult:
        """
        Run every item through the pipeline with at most `concurrency` in flight.

        Returns:
            BatchResult with successes and failures in submission order and
            {total, succeeded, failed, invalid} counts; invalid items are also
            counted as failed
        """
        batch = [_as_item(value) for value in items]
        outcomes: List[Optional[Tuple[BatchItemResult, bool]]] = [None] * len(batch)
        if not batch:
            return BatchResult(request_id=request_id,
                               summary=BatchSummary(total=0, succeeded=0, failed=0, invalid=0))

        queue: "asyncio.Queue[Tuple[int, BatchItem]]" = asyncio.Queue()
        for index, item in enumerate(batch):
            queue.put_nowait((index, item))

        async def worker() -> None:
            while True:
                try:
                    index, item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                outcomes[index] = await self._run_one(request_id, item)

        workers = self.resolve_concurrency(concurrency, len(batch))
        logger.info(f"Batch {request_id}: {len(batch)} items with {workers} workers")
        await asyncio.gather(*(worker() for _ in range(workers)))

        successes = [result for result, _ in outcomes if result.status == "success"]
        failures = [result for result, _ in outcomes if result.status != "success"]
        invalid = sum(1 for _, rejected in outcomes if rejected)
        BATCH_ITEMS.labels(status="success").inc(len(successes))
        BATCH_ITEMS.labels(status="failed").inc(len(failures))

        summary = BatchSummary(total=len(batch), succeeded=len(successes), failed=len(failures), invalid=invalid)
        self.log.info("batch_complete", request_id=request_id, total=summary.total,
                      succeeded=summary.succeeded, failed=summary.failed, invalid=summary.invalid)
        return BatchResult(request_id=request_id, successes=successes, failures=failures, summary=summary)
