import argparse
import json
import logging, sys, uuid, asyncio
from typing import List, Optional

import structlog
from prometheus_client import start_http_server

from event_reports.config import Settings, get_settings
from event_reports.exceptions import AppError, ConfigurationError
from event_reports.models import BatchResult
from event_reports.pipeline import BatchRunner, PipelineDeps, PipelineEngine
from event_reports.providers import ClobClient, GammaClient, OfficialSourceClient, PricingClient, TavilyClient


def _init_logging(level_name: str = "INFO"):
    level = level_name.upper()
    logging.basicConfig(level=level)
    structlog.configure(
        processors=[structlog.processors.add_log_level, structlog.processors.TimeStamper(fmt="iso"), structlog.processors.JSONRenderer()],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        cache_logger_on_first_use=True,
    )


def build_deps(settings: Settings) -> PipelineDeps:
    """Construct every provider client once for the whole process."""
    search = TavilyClient.from_settings(settings)  # fails fast without an API key
    return PipelineDeps(
        gamma=GammaClient.from_settings(settings),
        clob=ClobClient.from_settings(settings),
        pricing=PricingClient.from_settings(settings),
        search=search,
        settings=settings,
        official=OfficialSourceClient.from_settings(settings),
    )


async def run(settings: Settings, slugs: List[str], request_id: str,
              concurrency: Optional[int], stop_at: Optional[str]) -> BatchResult:
    deps = build_deps(settings)
    try:
        engine = PipelineEngine(deps, stop_at=stop_at)
        runner = BatchRunner(engine.run_item, settings)
        return await runner.run_batch(request_id, slugs, concurrency=concurrency)
    finally:
        await deps.aclose()


def main(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(prog="event-reports", description="Event reports from market and search data")
    p.add_argument("slugs", nargs="+", help="Event slugs to process")
    p.add_argument("--concurrency", type=int, default=None, help="Concurrent runs (defaults to BATCH_CONCURRENCY)")
    p.add_argument("--stop-at", default="evidence.build", help="Step id after which each run ends")
    p.add_argument("--request-id", default=None, help="Correlation id for this batch")
    args = p.parse_args(argv)

    try:
        settings = get_settings()  # first call triggers validators
    except ConfigurationError as e:
        sys.stderr.write(f"\nConfiguration error: {e}\n")
        sys.exit(2)

    _init_logging(settings.LOG_LEVEL)
    if settings.ENABLE_PROMETHEUS:
        start_http_server(settings.PROMETHEUS_PORT)

    request_id = args.request_id or str(uuid.uuid4())
    try:
        result = asyncio.run(run(settings, args.slugs, request_id, args.concurrency, args.stop_at))
    except AppError as e:
        sys.stderr.write(f"\n{e.code}: {e.message}\n")
        sys.exit(2)
    except KeyboardInterrupt:
        sys.stderr.write("\nInterrupted by user.\n")
        sys.exit(1)

    print(json.dumps(result.model_dump(), indent=2, ensure_ascii=False))
    sys.exit(1 if result.summary.failed else 0)


if __name__ == "__main__":
    main()
