"""Daily analytics rollup of raw play events."""

from __future__ import annotations

from resonance.processors.base import ProcessorDeps, call_dao_to_completion, run_stage
from resonance.queue.jobs import AnalyticsRollupPayload, JobContext, StageResult


async def process_analytics_rollup(
    ctx: JobContext[AnalyticsRollupPayload], deps: ProcessorDeps
) -> StageResult:
    day = ctx.payload.day

    async def _body() -> StageResult:
        await ctx.report_progress(10)
        summary = await call_dao_to_completion(deps.analytics.rollup_day, day)
        await ctx.report_progress(100)
        return StageResult.ok(**summary.as_dict())

    return await run_stage("analytics_rollup", day.isoformat(), _body)


__all__ = ["process_analytics_rollup"]
