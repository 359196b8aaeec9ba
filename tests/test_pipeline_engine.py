"""Tests for the pipeline step engine and the supplement loop."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from event_reports.collaborators import ValidationOutcome
from event_reports.config import Settings
from event_reports.exceptions import AppError, ErrorCategory, ErrorCode
from event_reports.models import (BatchItem, ClobSnapshot, GammaMarket, LaneSearchResult, MarketContext,
                                  OfficialSource, OrderBookLevel, PricePoint, SearchResult)
from event_reports.pipeline import PipelineDeps, PipelineEngine, Step, get_latest_status

SEARCH_STEPS = ["market.fetch", "market.orderbook.fetch", "market.pricing.fetch", "market.liquidity.proxy",
                "market.signals.fetch", "query.plan.build", "search.lanes", "search.verify", "evidence.build"]
REPORT_STEPS = ["report.generate", "report.validate"]

INSUFFICIENT = ValidationOutcome.failed(ErrorCode.VALIDATOR_INSUFFICIENT_URLS, "need more urls",
                                        suggestion={"action": "ADD_SEARCH", "preferred_lane": "B"})
REPORT = {"title": "Fed chair report"}


def market_context():
    return MarketContext(event_id="e1", slug="fed-chair", title="Will Trump nominate Kevin Warsh as Fed Chair?",
                         description="Resolves YES if Trump nominates Warsh.", end_time="2026-01-31T00:00:00Z",
                         clob_token_ids=["yes-token", "no-token"])


def lane_result(slug, lane, query):
    return LaneSearchResult(lane=lane, query=query, results=[
        SearchResult(title=f"Trump and Warsh {lane} {query}", url=f"https://reuters.com/{lane}/{len(query)}",
                     domain="reuters.com", raw_content="Trump said Warsh is his pick for Fed chair"),
    ])


def make_deps(settings, validator_outcomes=None, search_side_effect=lane_result, storage=None, publisher=None):
    gamma = MagicMock()
    gamma.get_event_by_slug = AsyncMock(return_value=market_context())
    clob = MagicMock()
    clob.get_order_book_summary = AsyncMock(return_value=ClobSnapshot(spread=0.02, midpoint=0.5, book_top_levels=[
        OrderBookLevel(side="bid", price=0.49, size=10), OrderBookLevel(side="ask", price=0.51, size=10)]))
    pricing = MagicMock()
    pricing.get_market_price = AsyncMock(return_value=0.5)
    pricing.get_midpoint_price = AsyncMock(return_value=0.5)
    pricing.get_price_history = AsyncMock(return_value=[PricePoint(ts=0, price=0.4),
                                                        PricePoint(ts=3_600_000, price=0.5)])
    search = MagicMock()
    search.search_lane = AsyncMock(side_effect=search_side_effect)
    generator = MagicMock()
    generator.generate_report_v1 = AsyncMock(return_value=REPORT)
    validator = MagicMock()
    validator.validate_report = AsyncMock(
        side_effect=validator_outcomes or [ValidationOutcome.passed(REPORT)])
    return PipelineDeps(gamma=gamma, clob=clob, pricing=pricing, search=search, settings=settings,
                        generator=generator, validator=validator, storage=storage, publisher=publisher)


def make_storage():
    storage = MagicMock()
    for name in ("upsert_event", "append_evidence", "save_report", "update_report_status", "get_latest_report"):
        setattr(storage, name, AsyncMock(return_value=None))

    async def in_transaction(fn):
        return await fn(storage)

    storage.run_in_transaction = AsyncMock(side_effect=in_transaction)
    return storage


class TestPipelineEngine:
    """Test ordered execution and early stopping."""

    @pytest.mark.asyncio
    async def test_runs_steps_in_order(self, settings):
        """Every default step runs once, in declared order."""
        deps = make_deps(settings)
        ctx = await PipelineEngine(deps).run("fed-chair", request_id="req-1", run_id="run-1")

        assert ctx.executed_step_ids() == SEARCH_STEPS + REPORT_STEPS
        assert all(record.status == "success" for record in ctx.steps)
        assert ctx.get("report") == REPORT
        assert ctx.run_id == "run-1"
        assert ctx.supplement_attempts == 0

    @pytest.mark.asyncio
    async def test_step_records_keys(self, settings):
        """Telemetry records input and output keys per step."""
        ctx = await PipelineEngine(make_deps(settings)).run("fed-chair", stop_at="query.plan.build")
        plan_record = ctx.steps[-1]
        assert plan_record.step_id == "query.plan.build"
        assert plan_record.input_keys == ["market_context"]
        assert plan_record.output_keys == ["query_plan"]

    @pytest.mark.asyncio
    async def test_stop_at(self, settings):
        """stop_at ends the run right after the named step."""
        deps = make_deps(settings)
        ctx = await PipelineEngine(deps).run("fed-chair", stop_at="evidence.build")

        assert ctx.executed_step_ids() == SEARCH_STEPS
        assert ctx.stopped_at == "evidence.build"
        assert ctx.get("evidence_candidates")
        deps.generator.generate_report_v1.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_stop_at(self, settings):
        """An unknown step id fails before anything runs."""
        deps = make_deps(settings)
        with pytest.raises(AppError) as exc_info:
            await PipelineEngine(deps).run("fed-chair", stop_at="no.such.step")
        assert exc_info.value.code == ErrorCode.STEP_UNKNOWN
        assert exc_info.value.category == ErrorCategory.VALIDATION
        deps.gamma.get_event_by_slug.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fatal_error_aborts(self, settings):
        """A failing step stops the run and surfaces its error unchanged."""
        deps = make_deps(settings)
        error = AppError(code=ErrorCode.PROVIDER_PM_EVENT_NOT_FOUND, message="missing",
                         category=ErrorCategory.PROVIDER)
        deps.gamma.get_event_by_slug.side_effect = error
        with pytest.raises(AppError) as exc_info:
            await PipelineEngine(deps).run("fed-chair")
        assert exc_info.value is error
        deps.clob.get_order_book_summary.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_input(self, settings):
        """A step whose required keys are absent fails with STEP_MISSING_INPUT."""
        async def noop(ctx):
            return {}

        engine = PipelineEngine(make_deps(settings), steps=[Step("needs.plan", noop, requires=("query_plan",))])
        with pytest.raises(AppError) as exc_info:
            await engine.run("fed-chair")
        assert exc_info.value.code == ErrorCode.STEP_MISSING_INPUT
        assert exc_info.value.details["missing"] == ["query_plan"]

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self, settings):
        """Non-AppError exceptions become INTERNAL pipeline failures."""
        async def broken(ctx):
            raise KeyError("boom")

        engine = PipelineEngine(make_deps(settings), steps=[Step("broken", broken)])
        with pytest.raises(AppError) as exc_info:
            await engine.run("fed-chair")
        assert exc_info.value.code == ErrorCode.ORCH_PIPELINE_FAILED
        assert exc_info.value.category == ErrorCategory.INTERNAL

    @pytest.mark.asyncio
    async def test_generator_failure(self, settings):
        """A crashing generator maps to STEP_REPORT_GENERATE_FAILED."""
        deps = make_deps(settings)
        deps.generator.generate_report_v1.side_effect = RuntimeError("model down")
        with pytest.raises(AppError) as exc_info:
            await PipelineEngine(deps).run("fed-chair")
        assert exc_info.value.code == ErrorCode.STEP_REPORT_GENERATE_FAILED


class TestSupplementLoop:
    """Test the bounded supplement cycle."""

    @pytest.mark.asyncio
    async def test_insufficient_then_ok(self, settings):
        """Insufficient once then ok gives exactly two search/generate/validate cycles."""
        deps = make_deps(settings, validator_outcomes=[INSUFFICIENT, ValidationOutcome.passed(REPORT)])
        ctx = await PipelineEngine(deps).run("fed-chair")

        assert ctx.supplement_attempts == 1
        assert deps.generator.generate_report_v1.await_count == 2
        assert deps.validator.validate_report.await_count == 2
        assert ctx.executed_step_ids().count("search.lanes") == 2
        assert ctx.get("query_plan").lane_ids() == ["A", "B", "C", "B", "D"]
        assert deps.search.search_lane.await_count == 3 + 5
        assert ctx.get("report") == REPORT

    @pytest.mark.asyncio
    async def test_budget_exhausted(self, settings):
        """Staying insufficient past the budget ends with ORCH_SUPPLEMENT_EXHAUSTED."""
        attempts = settings.SUPPLEMENT_MAX_ATTEMPTS
        deps = make_deps(settings, validator_outcomes=[INSUFFICIENT] * (attempts + 1))
        with pytest.raises(AppError) as exc_info:
            await PipelineEngine(deps).run("fed-chair")

        error = exc_info.value
        assert error.code == ErrorCode.ORCH_SUPPLEMENT_EXHAUSTED
        assert not error.retryable
        assert error.details["validator_code"] == ErrorCode.VALIDATOR_INSUFFICIENT_URLS
        assert deps.validator.validate_report.await_count == attempts + 1

    @pytest.mark.asyncio
    async def test_zero_budget(self):
        """With no supplement budget the first insufficiency is terminal."""
        settings = Settings(TAVILY_API_KEY="k", SUPPLEMENT_MAX_ATTEMPTS=0, _env_file=None)
        deps = make_deps(settings, validator_outcomes=[INSUFFICIENT])
        with pytest.raises(AppError) as exc_info:
            await PipelineEngine(deps).run("fed-chair")
        assert exc_info.value.code == ErrorCode.ORCH_SUPPLEMENT_EXHAUSTED
        assert deps.search.search_lane.await_count == 3

    @pytest.mark.asyncio
    async def test_rate_limit_during_supplement(self, settings):
        """A rate-limit error while re-searching ends with ORCH_SUPPLEMENT_RATE_LIMIT."""
        calls = {"n": 0}

        def search(slug, lane, query):
            calls["n"] += 1
            if calls["n"] > 3:
                raise AppError(code=ErrorCode.PROVIDER_TAVILY_REQUEST_FAILED, message="429",
                               category=ErrorCategory.RATE_LIMIT, retryable=True)
            return lane_result(slug, lane, query)

        deps = make_deps(settings, validator_outcomes=[INSUFFICIENT], search_side_effect=search)
        with pytest.raises(AppError) as exc_info:
            await PipelineEngine(deps).run("fed-chair")

        error = exc_info.value
        assert error.code == ErrorCode.ORCH_SUPPLEMENT_RATE_LIMIT
        assert not error.retryable
        assert error.details["error"]["code"] == ErrorCode.PROVIDER_TAVILY_REQUEST_FAILED
        assert deps.generator.generate_report_v1.await_count == 1

    @pytest.mark.asyncio
    async def test_schema_violation_is_fatal(self, settings):
        """Schema failures never trigger a supplement, even with an ADD_SEARCH hint."""
        outcome = ValidationOutcome.failed(ErrorCode.VALIDATOR_SCHEMA_INVALID, "bad shape",
                                           suggestion={"action": "ADD_SEARCH"})
        deps = make_deps(settings, validator_outcomes=[outcome])
        with pytest.raises(AppError) as exc_info:
            await PipelineEngine(deps).run("fed-chair")
        assert exc_info.value.code == ErrorCode.VALIDATOR_SCHEMA_INVALID
        assert deps.search.search_lane.await_count == 3

    @pytest.mark.asyncio
    async def test_add_search_suggestion_triggers_supplement(self, settings):
        """An ADD_SEARCH suggestion counts as insufficient evidence."""
        hint = ValidationOutcome.failed("VALIDATOR_OTHER", "thin", suggestion={"action": "ADD_SEARCH"})
        deps = make_deps(settings, validator_outcomes=[hint, ValidationOutcome.passed(REPORT)])
        ctx = await PipelineEngine(deps).run("fed-chair")
        assert ctx.supplement_attempts == 1


class TestPersistAndPublish:
    """Test the optional storage and publish steps."""

    @pytest.mark.asyncio
    async def test_persist_and_publish(self, settings):
        """A valid report is stored in one transaction and then published."""
        storage = make_storage()
        publisher = MagicMock()
        publisher.publish_to_channel = AsyncMock(return_value={"message_id": "msg-9"})
        deps = make_deps(settings, storage=storage, publisher=publisher)
        ctx = await PipelineEngine(deps).run("fed-chair", run_id="run-7")

        assert ctx.executed_step_ids()[-2:] == ["report.persist", "report.publish"]
        storage.run_in_transaction.assert_awaited_once()
        storage.save_report.assert_awaited_once()
        storage.append_evidence.assert_awaited_once()
        storage.update_report_status.assert_awaited_once_with("run-7", "published")
        assert ctx.get("publish_message_id") == "msg-9"

    @pytest.mark.asyncio
    async def test_publish_failure_blocks_report(self, settings):
        """A failed publish marks the report blocked and raises PROVIDER_PUBLISH_FAILED."""
        storage = make_storage()
        publisher = MagicMock()
        publisher.publish_to_channel = AsyncMock(side_effect=ConnectionError("channel down"))
        deps = make_deps(settings, storage=storage, publisher=publisher)

        with pytest.raises(AppError) as exc_info:
            await PipelineEngine(deps).run("fed-chair", run_id="run-8")

        assert exc_info.value.code == ErrorCode.PROVIDER_PUBLISH_FAILED
        args = storage.update_report_status.await_args.args
        assert args[:3] == ("run-8", "blocked", ErrorCode.PROVIDER_PUBLISH_FAILED)

    @pytest.mark.asyncio
    async def test_persist_failure(self, settings):
        """Storage errors surface as non-retryable STORE errors."""
        storage = make_storage()
        storage.save_report.side_effect = OSError("disk full")
        deps = make_deps(settings, storage=storage)
        with pytest.raises(AppError) as exc_info:
            await PipelineEngine(deps).run("fed-chair")
        assert exc_info.value.code == ErrorCode.STORE_PERSIST_FAILED
        assert exc_info.value.category == ErrorCategory.STORE
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_latest_status(self):
        """get_latest_status returns the stored record or STORE_STATUS_NOT_FOUND."""
        storage = make_storage()
        storage.get_latest_report.return_value = {"status": "published"}
        assert await get_latest_status(storage, " fed-chair ") == {"status": "published"}
        storage.get_latest_report.assert_awaited_with("fed-chair")

        storage.get_latest_report.return_value = None
        with pytest.raises(AppError) as exc_info:
            await get_latest_status(storage, "fed-chair")
        assert exc_info.value.code == ErrorCode.STORE_STATUS_NOT_FOUND


class TestRunItem:
    """Test the batch adapter."""

    @pytest.mark.asyncio
    async def test_success(self, settings):
        result = await PipelineEngine(make_deps(settings)).run_item(BatchItem(event_slug="fed-chair", run_id="r"))
        assert result.status == "success"
        assert result.run_id == "r"
        assert result.event_id == "fed-chair"

    @pytest.mark.asyncio
    async def test_failure_becomes_result(self, settings):
        """Pipeline errors become failed results rather than exceptions."""
        deps = make_deps(settings)
        deps.gamma.get_event_by_slug.side_effect = AppError(code=ErrorCode.PROVIDER_PM_EVENT_NOT_FOUND,
                                                            message="missing", category=ErrorCategory.PROVIDER)
        result = await PipelineEngine(deps).run_item(BatchItem(event_slug="gone"))
        assert result.status == "failed"
        assert result.error.code == ErrorCode.PROVIDER_PM_EVENT_NOT_FOUND
        assert result.error.category == "PROVIDER"


def listed_context():
    return MarketContext(event_id="e1", slug="fed-chair", title="Will Trump nominate Kevin Warsh as Fed Chair?",
                         end_time="2026-01-31T00:00:00Z", primary_market_id="warsh",
                         resolution_source_raw="https://www.senate.gov/legislative/nominations.htm",
                         markets=[
                             GammaMarket(market_id="warsh", outcomes=["Yes", "No"],
                                         clob_token_ids=["yes-warsh", "no-warsh"], volume=10),
                             GammaMarket(market_id="hassett", outcomes=["Yes", "No"],
                                         clob_token_ids=["yes-hassett", "no-hassett"], volume=500),
                         ])


def official_client(result):
    official = MagicMock()
    official.fetch_official_source = AsyncMock(return_value=result)
    official.aclose = AsyncMock()
    return official


class TestMarketAndOfficialEvidence:
    """Test that every sampled market and the resolution page reach evidence building."""

    @pytest.mark.asyncio
    async def test_signals_cover_all_markets(self, settings):
        """Each outcome token of each listed market yields a signal, primary market first."""
        deps = make_deps(settings)
        deps.gamma.get_event_by_slug.return_value = listed_context()
        ctx = await PipelineEngine(deps).run("fed-chair", stop_at="evidence.build")

        signals = ctx.get("market_signals")
        assert [(s.market_id, s.token_id) for s in signals] == [
            ("warsh", "yes-warsh"), ("warsh", "no-warsh"), ("hassett", "yes-hassett"), ("hassett", "no-hassett")]
        market = [e for e in ctx.get("evidence_candidates") if e.source_type == "market"]
        assert len(market) == 1
        assert "order book spread 0.0200" in market[0].claim

    @pytest.mark.asyncio
    async def test_signals_respect_top_markets(self):
        """MARKET_SIGNALS_TOP_MARKETS caps the sampled markets."""
        settings = Settings(TAVILY_API_KEY="k", MARKET_SIGNALS_TOP_MARKETS=1, _env_file=None)
        deps = make_deps(settings)
        deps.gamma.get_event_by_slug.return_value = listed_context()
        ctx = await PipelineEngine(deps).run("fed-chair", stop_at="market.signals.fetch")
        assert {s.market_id for s in ctx.get("market_signals")} == {"warsh"}

    @pytest.mark.asyncio
    async def test_no_listed_markets_falls_back_to_primary_signal(self, settings):
        """Without market listings the probed book and price still produce market evidence."""
        ctx = await PipelineEngine(make_deps(settings)).run("fed-chair", stop_at="evidence.build")
        assert ctx.get("market_signals") == []
        assert any(e.source_type == "market" for e in ctx.get("evidence_candidates"))

    @pytest.mark.asyncio
    async def test_official_source_becomes_evidence(self, settings):
        """The resolution page is fetched before planning and clustered as official evidence."""
        source = OfficialSource(url="https://www.senate.gov/legislative/nominations.htm", domain="senate.gov",
                                title="Nominations", snippet="The Senate confirmed the nomination of Kevin Warsh.")
        deps = make_deps(settings)
        deps.gamma.get_event_by_slug.return_value = listed_context()
        deps.official = official_client(([source], None))
        ctx = await PipelineEngine(deps).run("fed-chair", stop_at="evidence.build")

        steps = ctx.executed_step_ids()
        assert steps.index("official.fetch") == steps.index("query.plan.build") - 1
        deps.official.fetch_official_source.assert_awaited_once_with(
            "https://www.senate.gov/legislative/nominations.htm")
        official = [e for e in ctx.get("evidence_candidates") if e.source_type == "official"]
        assert [e.url for e in official] == [source.url]
        assert ctx.get("official_sources_error") is None

    @pytest.mark.asyncio
    async def test_official_failure_does_not_fail_run(self, settings):
        """A failed resolution page fetch is recorded and the run carries on."""
        deps = make_deps(settings)
        deps.official = official_client(([], "request_failed:404"))
        ctx = await PipelineEngine(deps).run("fed-chair")

        assert ctx.get("official_sources") == []
        assert ctx.get("official_sources_error") == "request_failed:404"
        assert ctx.get("report") == REPORT
        deps.official.fetch_official_source.assert_awaited_once_with(None)
