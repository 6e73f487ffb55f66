"""Step execution for shopflow workflows."""

from __future__ import annotations

import asyncio
import logging

from .contracts import Failure, Outcome, StepContext, StepSpec, Success

logger = logging.getLogger(__name__)


class StepExecutor:
    """Runs a single step closure and classifies the result.

    Any ``Exception`` raised by the closure, including a timeout, becomes a
    ``Failure``. Task cancellation is not a step failure and propagates to the
    caller unchanged.
    """

    async def execute(self, step: StepSpec, ctx: StepContext) -> Outcome:
        try:
            if step.timeout_s is not None:
                value = await asyncio.wait_for(step.fn(ctx), timeout=step.timeout_s)
            else:
                value = await step.fn(ctx)
        except asyncio.TimeoutError:
            logger.warning(
                f"Step {step.name} timed out after {step.timeout_s}s "
                f"(run_id={ctx.run_id}, attempt={ctx.attempt})"
            )
            return Failure(
                error=f"Step {step.name} timed out after {step.timeout_s}s",
                error_type="TimeoutError",
            )
        except Exception as e:
            logger.warning(
                f"Step {step.name} failed (run_id={ctx.run_id}, attempt={ctx.attempt}): {e}"
            )
            return Failure(error=str(e) or type(e).__name__, error_type=type(e).__name__)
        return Success(value)
