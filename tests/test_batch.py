"""Tests for the bounded-concurrency batch runner."""

import asyncio

import pytest

from event_reports.config import Settings
from event_reports.exceptions import AppError, ErrorCategory, ErrorCode
from event_reports.models import BatchItem, BatchItemResult
from event_reports.pipeline import BatchRunner
from event_reports.pipeline.batch import error_info


class InFlightTracker:
    """Fake run_item that records how many runs overlap."""

    def __init__(self, delay=0.02, fail=(), crash=()):
        self.delay = delay
        self.fail = set(fail)
        self.crash = set(crash)
        self.in_flight = 0
        self.max_in_flight = 0
        self.seen = []

    async def __call__(self, item: BatchItem, request_id: str) -> BatchItemResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.seen.append((item.event_slug, request_id))
        try:
            await asyncio.sleep(self.delay)
            if item.event_slug in self.crash:
                raise RuntimeError("worker exploded")
            if item.event_slug in self.fail:
                raise AppError(code=ErrorCode.PROVIDER_PM_EVENT_NOT_FOUND, message="missing",
                               category=ErrorCategory.PROVIDER)
            return BatchItemResult(event_id=item.event_slug, run_id=item.run_id, status="success")
        finally:
            self.in_flight -= 1


class TestBatchRunner:
    """Test concurrency bounds and per-item isolation."""

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, settings):
        """No more than `concurrency` runs are ever in flight."""
        tracker = InFlightTracker()
        result = await BatchRunner(tracker, settings).run_batch("req", ["a", "b", "c"], concurrency=2)

        assert tracker.max_in_flight == 2
        assert result.summary.total == 3
        assert result.summary.succeeded == 3
        assert {request_id for _, request_id in tracker.seen} == {"req"}

    @pytest.mark.asyncio
    async def test_sequential_when_concurrency_one(self, settings):
        tracker = InFlightTracker(delay=0.001)
        await BatchRunner(tracker, settings).run_batch("req", ["a", "b", "c"], concurrency=1)
        assert tracker.max_in_flight == 1
        assert [slug for slug, _ in tracker.seen] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, settings):
        """One failing item does not affect its siblings."""
        tracker = InFlightTracker(fail={"b"})
        result = await BatchRunner(tracker, settings).run_batch("req", ["a", "b", "c"], concurrency=3)

        assert [r.event_id for r in result.successes] == ["a", "c"]
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.event_id == "b"
        assert failure.error.code == ErrorCode.PROVIDER_PM_EVENT_NOT_FOUND
        assert result.summary.failed == 1
        assert result.summary.invalid == 0

    @pytest.mark.asyncio
    async def test_invalid_items_count_as_failed(self, settings):
        """Blank slugs are rejected without running and counted as invalid and failed."""
        tracker = InFlightTracker(delay=0)
        result = await BatchRunner(tracker, settings).run_batch(
            "req", ["a", "  ", BatchItem(event_slug="")], concurrency=2)

        assert [slug for slug, _ in tracker.seen] == ["a"]
        assert result.summary.total == 3
        assert result.summary.succeeded == 1
        assert result.summary.failed == 2
        assert result.summary.invalid == 2
        assert all(r.error.code == ErrorCode.ORCH_BATCH_ITEM_INVALID for r in result.failures)
        assert all(r.error.category == "VALIDATION" for r in result.failures)

    @pytest.mark.asyncio
    async def test_unexpected_exception(self, settings):
        """A crash outside the AppError taxonomy becomes ORCH_BATCH_PIPELINE_FAILED."""
        tracker = InFlightTracker(delay=0, crash={"boom"})
        result = await BatchRunner(tracker, settings).run_batch("req", ["boom"])

        error = result.failures[0].error
        assert error.code == ErrorCode.ORCH_BATCH_PIPELINE_FAILED
        assert error.category == "INTERNAL"
        assert error.message == "worker exploded"

    @pytest.mark.asyncio
    async def test_crash_under_shared_concurrency(self, settings):
        """With two workers a crashing item leaves its siblings, their order and the counts intact."""
        tracker = InFlightTracker(delay=0.01, crash={"b"})
        result = await BatchRunner(tracker, settings).run_batch("req", ["a", "b", "c", "d"], concurrency=2)

        assert tracker.max_in_flight == 2
        assert [r.event_id for r in result.successes] == ["a", "c", "d"]
        assert [r.event_id for r in result.failures] == ["b"]
        assert result.failures[0].error.code == ErrorCode.ORCH_BATCH_PIPELINE_FAILED
        assert (result.summary.total, result.summary.succeeded, result.summary.failed,
                result.summary.invalid) == (4, 3, 1, 0)

    @pytest.mark.asyncio
    async def test_results_keep_submission_order(self, settings):
        """Fast items finishing first do not reorder the receipt."""
        delays = {"slow": 0.03, "mid": 0.015, "fast": 0.0}

        async def run_item(item, request_id):
            await asyncio.sleep(delays[item.event_slug])
            return BatchItemResult(event_id=item.event_slug, run_id=item.run_id, status="success")

        result = await BatchRunner(run_item, settings).run_batch("req", ["slow", "mid", "fast"], concurrency=3)
        assert [r.event_id for r in result.successes] == ["slow", "mid", "fast"]

    @pytest.mark.asyncio
    async def test_run_ids(self, settings):
        """Given run ids are kept and missing ones are generated."""
        tracker = InFlightTracker(delay=0)
        result = await BatchRunner(tracker, settings).run_batch(
            "req", [BatchItem(event_slug="a", run_id="run-a"), "b"])
        run_ids = [r.run_id for r in result.successes]
        assert run_ids[0] == "run-a"
        assert run_ids[1]

    @pytest.mark.asyncio
    async def test_empty_batch(self, settings):
        result = await BatchRunner(InFlightTracker(), settings).run_batch("req", [])
        assert result.summary.total == 0
        assert result.successes == [] and result.failures == []


class TestResolveConcurrency:
    """Test concurrency clamping."""

    def test_defaults_to_setting(self, settings):
        runner = BatchRunner(InFlightTracker(), settings)
        assert runner.resolve_concurrency(None, 100) == settings.BATCH_CONCURRENCY

    def test_clamped_to_max(self):
        settings = Settings(TAVILY_API_KEY="k", BATCH_MAX_CONCURRENCY=4, _env_file=None)
        runner = BatchRunner(InFlightTracker(), settings)
        assert runner.resolve_concurrency(50, 100) == 4

    def test_clamped_to_item_count_and_floor(self, settings):
        runner = BatchRunner(InFlightTracker(), settings)
        assert runner.resolve_concurrency(8, 3) == 3
        assert runner.resolve_concurrency(0, 3) == 1
        assert runner.resolve_concurrency(-5, 3) == 1


def test_error_info():
    error = AppError(code="X", message="m", category=ErrorCategory.STORE, retryable=True, details={"k": 1})
    info = error_info(error)
    assert (info.code, info.category, info.retryable, info.details) == ("X", "STORE", True, {"k": 1})
