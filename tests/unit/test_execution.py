import asyncio

import pytest
from pydantic import BaseModel

from shopflow.contracts import (
    Failure,
    StepContext,
    Success,
    WorkflowDefinition,
    action,
    mutation,
)
from shopflow.execute import StepExecutor


class Args(BaseModel):
    n: int = 1


def _ctx(attempt=1):
    return StepContext(run_id="r1", attempt=attempt, args=Args(), outputs={}, services=None)


@pytest.mark.asyncio
async def test_success_wraps_return_value():
    async def double(ctx):
        return ctx.args.n * 2

    outcome = await StepExecutor().execute(action("double", double), _ctx())
    assert outcome == Success(2)
    assert outcome.ok


@pytest.mark.asyncio
async def test_exception_becomes_failure():
    async def boom(ctx):
        raise ValueError("bad input")

    outcome = await StepExecutor().execute(mutation("boom", boom), _ctx())
    assert isinstance(outcome, Failure)
    assert outcome.error == "bad input"
    assert outcome.error_type == "ValueError"
    assert not outcome.ok


@pytest.mark.asyncio
async def test_timeout_becomes_failure():
    async def slow(ctx):
        await asyncio.sleep(1)

    outcome = await StepExecutor().execute(action("slow", slow, timeout_s=0.01), _ctx())
    assert isinstance(outcome, Failure)
    assert outcome.error_type == "TimeoutError"


@pytest.mark.asyncio
async def test_cancellation_is_not_a_failure():
    started = asyncio.Event()

    async def hang(ctx):
        started.set()
        await asyncio.sleep(3600)

    task = asyncio.create_task(StepExecutor().execute(action("hang", hang), _ctx()))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


def test_definition_rejects_empty_and_duplicate_steps():
    async def noop(ctx):
        return None

    with pytest.raises(ValueError):
        WorkflowDefinition(name="empty", args_model=Args, steps=())
    with pytest.raises(ValueError):
        WorkflowDefinition(
            name="dupe", args_model=Args, steps=(action("a", noop), action("a", noop))
        )
