"""
Pipeline step engine.

Runs named steps strictly in order over one PipelineContext, logging
structured telemetry per step. After report validation it drives a bounded
supplement loop when the validator asks for more evidence.
"""

import logging
import time
import uuid
from typing import Callable, Dict, List, Optional, Sequence

import structlog

from ..exceptions import AppError, Err, ErrorCategory, ErrorCode, Ok, Result, to_app_error
from ..models import BatchItem, BatchItemResult
from ..monitoring_metrics import STEP_LATENCY, SUPPLEMENT_CYCLES
from .batch import error_info
from .context import PipelineContext, StepRecord
from .query_plan import widen_query_plan
from .steps import SUPPLEMENT_STEP_IDS, PipelineDeps, Step, default_steps

logger = logging.getLogger(__name__)


class PipelineEngine:
    def __init__(self, deps: PipelineDeps, steps: Optional[Sequence[Step]] = None,
                 stop_at: Optional[str] = None, max_supplement_attempts: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.deps = deps
        self.steps: List[Step] = list(steps) if steps is not None else default_steps(deps)
        self.stop_at = stop_at
        self.max_supplement_attempts = (deps.settings.SUPPLEMENT_MAX_ATTEMPTS
                                        if max_supplement_attempts is None else max_supplement_attempts)
        self._clock = clock
        self._by_id: Dict[str, Step] = {step.id: step for step in self.steps}
        self.log = structlog.get_logger()

    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]

    def _check_stop_at(self, stop_at: Optional[str]) -> None:
        if stop_at is not None and stop_at not in self._by_id:
            raise AppError(code=ErrorCode.STEP_UNKNOWN,
                           message=f"Unknown step {stop_at!r}",
                           category=ErrorCategory.VALIDATION,
                           details={"stop_at": stop_at, "steps": self.step_ids()})

    async def run(self, event_slug: str, request_id: Optional[str] = None, run_id: Optional[str] = None,
                  stop_at: Optional[str] = None, preferred_market_id: Optional[str] = None) -> PipelineContext:
        """
        Execute the pipeline for one event.

        Args:
            event_slug: Event identifier
            request_id: Correlates runs of one batch; generated when omitted
            run_id: Identifies this run; generated when omitted
            stop_at: Step id after which the run ends
            preferred_market_id: Market to treat as primary

        Returns:
            The run context holding every produced key and the step records

        Raises:
            AppError: The first fatal step error, STEP_UNKNOWN for a bad
                stop_at, or a supplement terminal error
        """
        stop_at = stop_at or self.stop_at
        self._check_stop_at(stop_at)

        ctx = PipelineContext(event_slug=event_slug,
                              request_id=request_id or str(uuid.uuid4()),
                              run_id=run_id or str(uuid.uuid4()))
        if preferred_market_id:
            ctx.update({"preferred_market_id": preferred_market_id})

        for step in self.steps:
            (await self.invoke(step, ctx)).unwrap()
            if step.id == "report.validate":
                await self._supplement(ctx)
            if step.id == stop_at:
                ctx.stopped_at = step.id
                break
        return ctx

    async def invoke(self, step: Step, ctx: PipelineContext, supplement_attempt: int = 0) -> Result:
        """Run one step and record telemetry; failures come back as Err."""
        missing = ctx.missing(step.requires)
        input_keys = sorted(k for k in step.requires if k in ctx)
        started = self._clock()
        result: Result
        if missing:
            result = Err(AppError(code=step.missing_input_code,
                                  message=f"Step {step.id} is missing inputs: {', '.join(missing)}",
                                  category=ErrorCategory.VALIDATION,
                                  details={"step_id": step.id, "missing": missing}))
        else:
            try:
                produced = await step.run(ctx) or {}
                ctx.update(produced)
                result = Ok(produced)
            except AppError as e:
                result = Err(e)
            except Exception as e:
                logger.exception(f"Unexpected error in step {step.id}")
                result = Err(to_app_error(e))

        latency_ms = max(0, int(round((self._clock() - started) * 1000)))
        self._record(step, ctx, result, input_keys, latency_ms, supplement_attempt)
        return result

    def _record(self, step: Step, ctx: PipelineContext, result: Result, input_keys: List[str],
                latency_ms: int, supplement_attempt: int) -> None:
        status = "success" if result.is_ok else "failed"
        error = None if result.is_ok else result.error
        output_keys = sorted(result.value.keys()) if result.is_ok else []
        ctx.steps.append(StepRecord(
            step_id=step.id,
            status=status,
            latency_ms=latency_ms,
            input_keys=input_keys,
            output_keys=output_keys,
            error_code=error.code if error else None,
            error_category=error.category.value if error else None,
        ))
        STEP_LATENCY.labels(step=step.id, status=status).observe(latency_ms / 1000)
        fields = dict(
            step_id=step.id,
            latency_ms=latency_ms,
            status=status,
            error_code=error.code if error else None,
            error_category=error.category.value if error else None,
            input_keys=input_keys,
            output_keys=output_keys,
            request_id=ctx.request_id,
            run_id=ctx.run_id,
            event_slug=ctx.event_slug,
        )
        if supplement_attempt:
            fields["supplement_attempt"] = supplement_attempt
        if error:
            self.log.warning("pipeline_step", **fields)
        else:
            self.log.info("pipeline_step", **fields)

    async def _supplement(self, ctx: PipelineContext) -> None:
        outcome = ctx.get("validation")
        attempts = 0
        while outcome is not None and not outcome.ok:
            if attempts >= self.max_supplement_attempts:
                SUPPLEMENT_CYCLES.labels(outcome="exhausted").inc()
                raise AppError(code=ErrorCode.ORCH_SUPPLEMENT_EXHAUSTED,
                               message=f"Evidence still insufficient after {attempts} supplement attempt(s)",
                               category=ErrorCategory.VALIDATION,
                               retryable=False,
                               details={"attempts": attempts, "validator_code": outcome.code,
                                        "validator_message": outcome.message},
                               suggestion=outcome.suggestion)

            attempts += 1
            ctx.supplement_attempts = attempts
            preferred_lane = (outcome.suggestion or {}).get("preferred_lane")
            ctx.update({"query_plan": widen_query_plan(ctx.require("query_plan"), attempts, preferred_lane)})
            logger.info(f"Supplement attempt {attempts} for {ctx.event_slug} after {outcome.code}")

            for step_id in SUPPLEMENT_STEP_IDS:
                step = self._by_id.get(step_id)
                if step is None:
                    continue
                result = await self.invoke(step, ctx, supplement_attempt=attempts)
                if result.is_ok:
                    continue
                if result.error.category == ErrorCategory.RATE_LIMIT:
                    SUPPLEMENT_CYCLES.labels(outcome="rate_limited").inc()
                    raise AppError(code=ErrorCode.ORCH_SUPPLEMENT_RATE_LIMIT,
                                   message=f"Rate limited during supplement step {step_id}",
                                   category=ErrorCategory.RATE_LIMIT,
                                   retryable=False,
                                   details={"attempt": attempts, "step_id": step_id,
                                            "error": result.error.to_dict()}) from result.error
                result.unwrap()
            outcome = ctx.get("validation")

        if attempts:
            SUPPLEMENT_CYCLES.labels(outcome="recovered").inc()

    async def run_item(self, item: BatchItem, request_id: Optional[str] = None) -> BatchItemResult:
        """Run one batch item; a pipeline AppError becomes a failed result."""
        run_id = item.run_id or str(uuid.uuid4())
        try:
            await self.run(item.event_slug, request_id=request_id, run_id=run_id)
        except AppError as e:
            return BatchItemResult(event_id=item.event_slug, run_id=run_id, status="failed",
                                   error=error_info(e))
        return BatchItemResult(event_id=item.event_slug, run_id=run_id, status="success")
