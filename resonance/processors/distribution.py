"""Distribution stage: run the monthly revenue split for one period."""

from __future__ import annotations

from resonance.processors.base import ProcessorDeps, call_dao_to_completion, run_stage
from resonance.queue.jobs import DistributionPayload, JobContext, StageResult


async def process_distribution(
    ctx: JobContext[DistributionPayload], deps: ProcessorDeps
) -> StageResult:
    period = ctx.payload.period

    async def _body() -> StageResult:
        await ctx.report_progress(5)
        result = await call_dao_to_completion(deps.distribution.run, period)
        await ctx.report_progress(100)
        return StageResult.ok(**result.as_dict())

    return await run_stage("distribution", period, _body)


__all__ = ["process_distribution"]
