"""Restart scenarios: a second manager resumes from the durable journal."""

import asyncio

import pytest
import pytest_asyncio
from pydantic import BaseModel

from shopflow.config import PoolConfig
from shopflow.contracts import (
    OnComplete,
    RetryPolicy,
    RunStatus,
    StepEntry,
    StepStatus,
    SuccessResult,
    WorkflowRun,
    action,
    utcnow,
)
from shopflow.manager import WorkflowManager
from shopflow.persistence import SQLiteWorkflowJournal
from shopflow.pools import WorkPools


class Args(BaseModel):
    label: str = "x"


class Process:
    """One simulated process: its own pools and manager over a shared journal file."""

    def __init__(self, db_path, services, steps, handler_calls):
        self.journal = SQLiteWorkflowJournal(db_path)
        self.pools = WorkPools(PoolConfig())
        self.manager = WorkflowManager(self.journal, self.pools, services)
        self.manager.define("two_step", steps, args_model=Args)

        async def on_done(services, event):
            handler_calls.append((event.workflow_id, event.result.kind))

        self.manager.register_completion_handler("two_step.done", on_done)

    async def crash(self):
        await self.pools.close()
        self.journal.close()


@pytest_asyncio.fixture
async def processes(tmp_path, services):
    started = []

    def spawn(steps, handler_calls):
        process = Process(tmp_path / "journal.db", services, steps, handler_calls)
        started.append(process)
        return process

    yield spawn
    for process in started:
        await process.pools.close()
        process.journal.close()


@pytest.mark.asyncio
async def test_crash_mid_run_resumes_and_fires_once(processes):
    executed = {"first": 0, "second": 0}
    handler_calls = []
    second_started = asyncio.Event()

    async def first(ctx):
        executed["first"] += 1
        return "reserved"

    async def second_hangs(ctx):
        executed["second"] += 1
        second_started.set()
        await asyncio.sleep(3600)

    async def second(ctx):
        executed["second"] += 1
        return ctx.outputs["first"] + "+sent"

    before = processes([action("first", first), action("second", second_hangs)], handler_calls)
    run_id = await before.manager.start("two_step", {"label": "a"}, on_complete="two_step.done")
    await asyncio.wait_for(second_started.wait(), 5)
    await before.crash()

    after = processes([action("first", first), action("second", second)], handler_calls)
    stored = await after.journal.get_run(run_id)
    assert stored.status == RunStatus.RUNNING
    assert stored.cursor == 1

    assert await after.manager.recover() == [run_id]
    run = await after.manager.wait_for(run_id, timeout=5)

    assert run.status == RunStatus.COMPLETED
    assert run.result.return_value == "reserved+sent"
    assert executed == {"first": 1, "second": 2}
    # the interrupted attempt left only a pending entry and costs no retry
    second_attempts = [e.attempt for e in run.history if e.step_name == "second"]
    assert second_attempts == [1, 1, 1]

    for _ in range(3):
        assert await after.manager.recover() == []
    assert handler_calls == [(run_id, "success")]


@pytest.mark.asyncio
async def test_recovery_resumes_pending_backoff(processes):
    attempts = []
    handler_calls = []
    first_failure = asyncio.Event()

    async def flaky(ctx):
        attempts.append(ctx.attempt)
        if ctx.attempt == 1:
            first_failure.set()
            raise ConnectionError("down")
        return "up"

    steps = [action("flaky", flaky, retry=RetryPolicy(max_attempts=3, initial_backoff_ms=300))]
    before = processes(steps, handler_calls)
    run_id = await before.manager.start("two_step", {}, on_complete="two_step.done")
    await asyncio.wait_for(first_failure.wait(), 5)
    await asyncio.sleep(0.05)
    await before.crash()

    after = processes(steps, handler_calls)
    await after.manager.recover()
    run = await after.manager.wait_for(run_id, timeout=5)

    assert run.status == RunStatus.COMPLETED
    assert attempts == [1, 2]
    pending = [e for e in run.history if e.status == StepStatus.PENDING]
    failed = [e for e in run.history if e.status == StepStatus.FAILED][0]
    assert (pending[1].started_at - failed.finished_at).total_seconds() >= 0.25
    assert handler_calls == [(run_id, "success")]


@pytest.mark.asyncio
async def test_recovery_with_every_step_done_completes_the_run(processes):
    handler_calls = []

    async def step(ctx):
        raise AssertionError("must not run again")

    process = processes([action("first", step), action("second", step)], handler_calls)
    run = WorkflowRun(
        definition_name="two_step", on_complete=OnComplete(handler_ref="two_step.done")
    )
    await process.journal.create_run(run)
    for index, name in enumerate(["first", "second"]):
        await process.journal.append(
            run.id,
            StepEntry(
                step_index=index,
                step_name=name,
                attempt=1,
                status=StepStatus.SUCCEEDED,
                output=f"{name}-out",
            ),
        )

    assert await process.manager.recover() == [run.id]
    stored = await process.manager.get_run(run.id)
    assert stored.status == RunStatus.COMPLETED
    assert stored.result == SuccessResult(return_value="second-out")
    assert handler_calls == [(run.id, "success")]


@pytest.mark.asyncio
async def test_recovery_fails_run_with_spent_retry_budget(processes):
    handler_calls = []

    async def step(ctx):
        raise AssertionError("must not run again")

    steps = [action("first", step, retry=RetryPolicy(max_attempts=2, initial_backoff_ms=0))]
    process = processes(steps, handler_calls)
    run = WorkflowRun(
        definition_name="two_step", on_complete=OnComplete(handler_ref="two_step.done")
    )
    await process.journal.create_run(run)
    for attempt in (1, 2):
        await process.journal.append(
            run.id,
            StepEntry(
                step_index=0,
                step_name="first",
                attempt=attempt,
                status=StepStatus.FAILED,
                error=f"boom {attempt}",
                finished_at=utcnow(),
            ),
        )

    await process.manager.recover()
    stored = await process.manager.get_run(run.id)
    assert stored.status == RunStatus.FAILED
    assert stored.result.error == "boom 2"
    assert handler_calls == [(run.id, "error")]


@pytest.mark.asyncio
async def test_recovering_terminal_runs_is_idempotent(processes):
    handler_calls = []

    async def step(ctx):
        return None

    process = processes([action("first", step)], handler_calls)
    run = WorkflowRun(
        definition_name="two_step", on_complete=OnComplete(handler_ref="two_step.done")
    )
    await process.journal.create_run(run)
    await process.journal.finish_run(run.id, RunStatus.COMPLETED, SuccessResult(return_value=1))

    results = await asyncio.gather(*(process.manager.recover() for _ in range(5)))
    assert sum(len(r) for r in results) == 1
    assert await process.manager.recover() == []
    assert handler_calls == [(run.id, "success")]
    assert (await process.journal.get_run(run.id)).status == RunStatus.COMPLETED
