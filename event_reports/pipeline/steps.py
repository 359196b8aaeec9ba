"""
Pipeline step definitions.

Each step is an async function over the run context returning the keys it
produces; the engine checks `requires` before calling it and merges the
returned mapping afterwards.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..collaborators import (PublishSink, ReportGenerator, ReportRenderer, ReportValidator, Storage,
                             ValidationOutcome)
from ..config import Settings
from ..evidence import build_evidence_candidates
from ..exceptions import INSUFFICIENT_EVIDENCE_CODES, AppError, ErrorCategory, ErrorCode
from ..models import LaneSearchResult, MarketContext, QueryPlan
from ..providers import ClobClient, GammaClient, OfficialSourceClient, PricingClient, TavilyClient
from ..providers.official import extract_resolver_url
from .context import PipelineContext
from .market import (build_liquidity_proxy, build_price_context, fetch_market_signals, market_signal,
                     probe_order_book, select_token_id)
from .query_plan import build_query_plan
from .verify import verify_results

logger = logging.getLogger(__name__)

StepFn = Callable[[PipelineContext], Awaitable[Dict[str, Any]]]

# Steps re-run by each supplement cycle, in order
SUPPLEMENT_STEP_IDS = ("search.lanes", "search.verify", "evidence.build", "report.generate", "report.validate")


@dataclass(frozen=True)
class Step:
    id: str
    run: StepFn
    requires: Tuple[str, ...] = ()
    produces: Tuple[str, ...] = ()
    missing_input_code: str = ErrorCode.STEP_MISSING_INPUT


@dataclass
class PipelineDeps:
    """Everything a run needs, constructed once per process."""
    gamma: GammaClient
    clob: ClobClient
    pricing: PricingClient
    search: TavilyClient
    settings: Settings
    generator: Optional[ReportGenerator] = None
    validator: Optional[ReportValidator] = None
    storage: Optional[Storage] = None
    renderer: Optional[ReportRenderer] = None
    publisher: Optional[PublishSink] = None
    official: Optional[OfficialSourceClient] = None

    async def aclose(self) -> None:
        for client in (self.gamma, self.clob, self.pricing, self.search):
            await client.aclose()
        if self.official is not None:
            await self.official.aclose()


def is_insufficient(outcome: ValidationOutcome) -> bool:
    """True when a failed validation asks for more evidence rather than rejecting."""
    if outcome.ok:
        return False
    if outcome.code in (ErrorCode.VALIDATOR_SCHEMA_INVALID, ErrorCode.VALIDATOR_JSON_PARSE_FAILED):
        return False
    if outcome.code in INSUFFICIENT_EVIDENCE_CODES:
        return True
    return bool(outcome.suggestion) and outcome.suggestion.get("action") == "ADD_SEARCH"


def _dump(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump()
    if isinstance(value, list):
        return [_dump(item) for item in value]
    return value


class MarketSteps:
    def __init__(self, deps: PipelineDeps):
        self.deps = deps

    async def fetch(self, ctx: PipelineContext) -> Dict[str, Any]:
        context = await self.deps.gamma.get_event_by_slug(ctx.event_slug, ctx.get("preferred_market_id"))
        return {"market_context": context}

    async def orderbook(self, ctx: PipelineContext) -> Dict[str, Any]:
        snapshot, market_id, token_id = await probe_order_book(
            self.deps.clob, ctx.require("market_context"), self.deps.settings.ORDERBOOK_MAX_PROBES
        )
        return {"clob_snapshot": snapshot, "clob_market_id": market_id, "clob_token_id": token_id}

    async def pricing(self, ctx: PipelineContext) -> Dict[str, Any]:
        token_id = ctx.get("clob_token_id") or select_token_id(ctx.require("market_context"))
        price_context = await build_price_context(
            self.deps.pricing, token_id,
            self.deps.settings.PRICE_HISTORY_WINDOW_HOURS,
            self.deps.settings.PRICE_HISTORY_INTERVAL_HOURS,
        )
        return {"price_context": price_context}

    async def liquidity(self, ctx: PipelineContext) -> Dict[str, Any]:
        return {"liquidity_proxy": build_liquidity_proxy(ctx.require("market_context"),
                                                         ctx.require("clob_snapshot"))}

    async def signals(self, ctx: PipelineContext) -> Dict[str, Any]:
        settings = self.deps.settings
        signals = await fetch_market_signals(
            self.deps.clob, self.deps.pricing, ctx.require("market_context"),
            top_markets=settings.MARKET_SIGNALS_TOP_MARKETS,
            window_hours=settings.PRICE_HISTORY_WINDOW_HOURS,
            interval_hours=settings.PRICE_HISTORY_INTERVAL_HOURS,
        )
        return {"market_signals": signals}

    async def official(self, ctx: PipelineContext) -> Dict[str, Any]:
        context: MarketContext = ctx.require("market_context")
        resolver_url = extract_resolver_url(context.resolution_source_raw, context.resolution_rules_raw)
        sources, error = await self.deps.official.fetch_official_source(resolver_url)
        if error:
            logger.info(f"No official source for {ctx.event_slug}: {error}")
        return {"official_sources": sources, "official_sources_error": error}


class SearchSteps:
    def __init__(self, deps: PipelineDeps):
        self.deps = deps

    async def plan(self, ctx: PipelineContext) -> Dict[str, Any]:
        return {"query_plan": build_query_plan(ctx.require("market_context"))}

    async def lanes(self, ctx: PipelineContext) -> Dict[str, Any]:
        plan: QueryPlan = ctx.require("query_plan")
        outcomes = await asyncio.gather(
            *(self.deps.search.search_lane(ctx.event_slug, item.lane, item.query) for item in plan.lanes),
            return_exceptions=True,
        )
        results: List[LaneSearchResult] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
            results.append(outcome)
        rate_limited = sum(1 for r in results if r.rate_limited)
        logger.info(f"Searched {len(results)} lanes for {ctx.event_slug} "
                    f"({sum(len(r.results) for r in results)} hits, {rate_limited} paced)")
        return {"lane_results": results}

    async def verify(self, ctx: PipelineContext) -> Dict[str, Any]:
        kept, dropped = verify_results(
            ctx.require("market_context"), ctx.require("lane_results"),
            max_age_days=self.deps.settings.EVIDENCE_MAX_AGE_DAYS,
        )
        return {"verified_lane_results": kept, "dropped_evidence": dropped}

    async def evidence(self, ctx: PipelineContext) -> Dict[str, Any]:
        signals = list(ctx.get("market_signals") or [])
        if not signals and ctx.get("price_context") is not None and ctx.get("clob_snapshot") is not None:
            signals.append(market_signal(ctx.get("price_context"), ctx.get("clob_snapshot")))
        candidates = build_evidence_candidates(
            ctx.require("verified_lane_results"),
            event_slug=ctx.event_slug,
            market_signals=signals,
            market_url_base=self.deps.settings.POLYMARKET_EVENT_URL,
            official_sources=ctx.get("official_sources") or [],
        )
        return {"evidence_candidates": candidates}


class ReportSteps:
    def __init__(self, deps: PipelineDeps):
        self.deps = deps

    def _payload(self, ctx: PipelineContext) -> Dict[str, Any]:
        keys = ("market_context", "price_context", "liquidity_proxy", "clob_snapshot", "evidence_candidates")
        payload = {key: _dump(ctx.get(key)) for key in keys if ctx.get(key) is not None}
        payload.update(event_slug=ctx.event_slug, run_id=ctx.run_id, request_id=ctx.request_id)
        return payload

    async def generate(self, ctx: PipelineContext) -> Dict[str, Any]:
        if self.deps.generator is None:
            raise AppError(code=ErrorCode.STEP_REPORT_GENERATE_FAILED,
                           message="No report generator configured",
                           category=ErrorCategory.VALIDATION)
        try:
            report = await self.deps.generator.generate_report_v1(self._payload(ctx))
        except AppError:
            raise
        except Exception as e:
            raise AppError(code=ErrorCode.STEP_REPORT_GENERATE_FAILED,
                           message=f"Report generation failed: {e}",
                           category=ErrorCategory.INTERNAL,
                           details={"exception": e.__class__.__name__})
        return {"report_json": report}

    async def validate(self, ctx: PipelineContext) -> Dict[str, Any]:
        report = ctx.require("report_json")
        if self.deps.validator is None:
            return {"validation": ValidationOutcome.passed(report), "report": report}
        outcome = await self.deps.validator.validate_report(report)
        if outcome.ok:
            return {"validation": outcome, "report": outcome.report or report}
        if is_insufficient(outcome):
            logger.info(f"Report for {ctx.event_slug} lacks evidence: {outcome.code}")
            return {"validation": outcome}
        raise AppError(code=outcome.code or ErrorCode.VALIDATOR_SCHEMA_INVALID,
                       message=outcome.message or "Report failed validation",
                       category=ErrorCategory.VALIDATION,
                       suggestion=outcome.suggestion)

    async def persist(self, ctx: PipelineContext) -> Dict[str, Any]:
        storage = self.deps.storage
        context: MarketContext = ctx.require("market_context")
        report = ctx.require("report")
        evidence = [dict(candidate.model_dump(), event_slug=ctx.event_slug, run_id=ctx.run_id)
                    for candidate in ctx.get("evidence_candidates", [])]

        async def write(tx: Storage) -> None:
            await tx.upsert_event(dict(_dump(context), run_id=ctx.run_id))
            if evidence:
                await tx.append_evidence(evidence)
            await tx.save_report({"event_slug": ctx.event_slug, "run_id": ctx.run_id,
                                  "request_id": ctx.request_id, "status": "ready", "report": report})

        try:
            await storage.run_in_transaction(write)
        except AppError:
            raise
        except Exception as e:
            raise AppError(code=ErrorCode.STORE_PERSIST_FAILED,
                           message=f"Failed to persist report: {e}",
                           category=ErrorCategory.STORE,
                           details={"event_slug": ctx.event_slug, "run_id": ctx.run_id})
        return {"persisted": True}

    def render(self, report: Dict[str, Any]) -> str:
        if self.deps.renderer is not None:
            return self.deps.renderer.render(report)
        return json.dumps(report, ensure_ascii=False, indent=2)

    async def publish(self, ctx: PipelineContext) -> Dict[str, Any]:
        storage = self.deps.storage
        try:
            receipt = await self.deps.publisher.publish_to_channel(self.render(ctx.require("report")))
        except Exception as e:
            error = AppError(code=ErrorCode.PROVIDER_PUBLISH_FAILED,
                             message=f"Publish failed: {e}",
                             category=ErrorCategory.PROVIDER,
                             details={"event_slug": ctx.event_slug, "run_id": ctx.run_id})
            if storage is not None:
                await storage.update_report_status(ctx.run_id, "blocked", error.code, error.message)
            raise error from e
        if storage is not None:
            await storage.update_report_status(ctx.run_id, "published")
        return {"publish_message_id": receipt.get("message_id")}


def default_steps(deps: PipelineDeps) -> List[Step]:
    market = MarketSteps(deps)
    search = SearchSteps(deps)
    report = ReportSteps(deps)
    steps = [
        Step("market.fetch", market.fetch, produces=("market_context",)),
        Step("market.orderbook.fetch", market.orderbook, requires=("market_context",),
             produces=("clob_snapshot", "clob_market_id", "clob_token_id")),
        Step("market.pricing.fetch", market.pricing, requires=("market_context",),
             produces=("price_context",)),
        Step("market.liquidity.proxy", market.liquidity, requires=("market_context", "clob_snapshot"),
             produces=("liquidity_proxy",)),
        Step("market.signals.fetch", market.signals, requires=("market_context",),
             produces=("market_signals",)),
        Step("query.plan.build", search.plan, requires=("market_context",), produces=("query_plan",)),
        Step("search.lanes", search.lanes, requires=("query_plan",), produces=("lane_results",)),
        Step("search.verify", search.verify, requires=("market_context", "lane_results"),
             produces=("verified_lane_results", "dropped_evidence")),
        Step("evidence.build", search.evidence, requires=("verified_lane_results",),
             produces=("evidence_candidates",),
             missing_input_code=ErrorCode.STEP_EVIDENCE_BUILD_MISSING_INPUT),
        Step("report.generate", report.generate, requires=("market_context", "evidence_candidates"),
             produces=("report_json",)),
        Step("report.validate", report.validate, requires=("report_json",), produces=("validation",)),
    ]
    if deps.official is not None:
        index = next(i for i, step in enumerate(steps) if step.id == "query.plan.build")
        steps.insert(index, Step("official.fetch", market.official, requires=("market_context",),
                                 produces=("official_sources", "official_sources_error")))
    if deps.storage is not None:
        steps.append(Step("report.persist", report.persist, requires=("market_context", "report"),
                          produces=("persisted",)))
    if deps.publisher is not None:
        steps.append(Step("report.publish", report.publish, requires=("report",),
                          produces=("publish_message_id",)))
    return steps
