"""Workflow manager: sequencing, retries, recovery and completion firing."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections import Counter
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Set, Type

from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from .contracts import (
    CanceledResult,
    CompletionEvent,
    CompletionHandler,
    ErrorResult,
    OnComplete,
    Priority,
    RetryPolicy,
    RunResult,
    RunStatus,
    StepContext,
    StepEntry,
    StepSpec,
    StepStatus,
    Success,
    SuccessResult,
    WorkflowDefinition,
    WorkflowRun,
    utcnow,
)
from .errors import (
    JournalConflictError,
    RunNotFoundError,
    UnknownCompletionHandlerError,
    UnknownWorkflowError,
    WorkflowDefinitionError,
)
from .execute import StepExecutor
from .persistence import WorkflowJournal
from .pools import WorkPools
from .services import ShopServices
from .utils.retry import TransitionKind, decide

logger = logging.getLogger(__name__)


class WorkflowManager:
    """Runs registered workflow definitions on the priority pools.

    The manager is the only writer of workflow runs. Each step attempt is one
    pool invocation: it journals a ``pending`` entry, executes the step,
    journals the outcome and then either enqueues the next step, schedules a
    retry on the same pool, or finishes the run. Finishing a run fires its
    completion handler at most once, guarded by the journal's fired flag.
    """

    def __init__(
        self,
        journal: WorkflowJournal,
        pools: WorkPools,
        services: ShopServices,
        executor: StepExecutor | None = None,
        default_retry: RetryPolicy | None = None,
    ) -> None:
        self._journal = journal
        self._pools = pools
        self._services = services
        self._executor = executor or StepExecutor()
        self._default_retry = default_retry or RetryPolicy()
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._handlers: Dict[str, CompletionHandler] = {}
        # runs with an invocation queued, running or waiting on backoff here
        self._active: Set[str] = set()
        self._done_events: Dict[str, asyncio.Event] = {}
        # runs whose completion handler is executing right now
        self._firing: Counter[str] = Counter()

    @property
    def journal(self) -> WorkflowJournal:
        return self._journal

    @property
    def pools(self) -> WorkPools:
        return self._pools

    @property
    def services(self) -> ShopServices:
        return self._services

    # ------------------------------------------------------------------
    # Registration
    def define(
        self,
        name: str,
        steps: Iterable[StepSpec],
        args_model: Type[BaseModel],
        pool: Priority = Priority.DEFAULT,
    ) -> WorkflowDefinition:
        """Register a named sequence of steps and return its definition."""
        if name in self._definitions:
            raise WorkflowDefinitionError(f"Workflow {name} is already defined")
        try:
            definition = WorkflowDefinition(
                name=name, pool=pool, args_model=args_model, steps=tuple(steps)
            )
        except ValueError as e:
            raise WorkflowDefinitionError(str(e)) from e
        self._definitions[name] = definition
        logger.debug(
            f"Defined workflow {name} on pool {definition.pool.value} "
            f"with steps {[s.name for s in definition.steps]}"
        )
        return definition

    def get_definition(self, name: str) -> WorkflowDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise UnknownWorkflowError(name) from None

    @property
    def definitions(self) -> Mapping[str, WorkflowDefinition]:
        return dict(self._definitions)

    def register_completion_handler(self, name: str, handler: CompletionHandler) -> None:
        if name in self._handlers:
            raise WorkflowDefinitionError(f"Completion handler {name} is already registered")
        self._handlers[name] = handler

    def completion_handler(self, name: str) -> Callable[[CompletionHandler], CompletionHandler]:
        """Decorator form of ``register_completion_handler``."""

        def decorator(fn: CompletionHandler) -> CompletionHandler:
            self.register_completion_handler(name, fn)
            return fn

        return decorator

    # ------------------------------------------------------------------
    # Public operations
    async def start(
        self,
        definition_name: str,
        args: BaseModel | Mapping[str, Any],
        on_complete: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Persist a new run and enqueue its first step.

        Returns the run id without waiting for any step to execute.
        """
        definition = self.get_definition(definition_name)
        if on_complete is not None and on_complete not in self._handlers:
            raise UnknownCompletionHandlerError(on_complete)

        if isinstance(args, BaseModel):
            args = args.model_dump()
        validated = definition.args_model.model_validate(args)

        run = WorkflowRun(
            definition_name=definition.name,
            args=validated.model_dump(mode="json"),
            pool=definition.pool,
            on_complete=(
                OnComplete(
                    handler_ref=on_complete,
                    context=to_jsonable_python(dict(context or {})),
                )
                if on_complete
                else None
            ),
        )
        await self._journal.create_run(run)
        logger.info(
            f"Started workflow {definition.name} run_id={run.id} on pool {run.pool.value}"
        )
        self._schedule(run.id, run.pool, 0, 1)
        return run.id

    async def cancel(self, run_id: str) -> bool:
        """Cancel a running run.

        A step already executing is allowed to finish, but the journal refuses
        its outcome and nothing further is scheduled. Returns ``False`` when
        the run was already terminal.
        """
        run = await self._journal.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if not await self._journal.finish_run(run_id, RunStatus.CANCELED, CanceledResult()):
            return False
        self._pools.get(run.pool).cancel_scheduled(run_id)
        self._active.discard(run_id)
        logger.info(f"Canceled workflow {run.definition_name} run_id={run_id}")
        await self._fire_completion(await self._journal.get_run(run_id))
        return True

    async def recover(self) -> list[str]:
        """Resume every run the journal shows as unfinished.

        Running runs re-enter their pool at the first step not yet succeeded;
        terminal runs whose completion handler never fired get it fired now.
        Calling this repeatedly, or on terminal runs, has no further effect.
        """
        recovered: list[str] = []
        for run in await self._journal.list_pending_recovery():
            if run.status.is_terminal:
                if await self._fire_completion(run):
                    recovered.append(run.id)
                continue
            if run.id in self._active:
                continue
            definition = self._definitions.get(run.definition_name)
            if definition is None:
                logger.warning(
                    f"Cannot recover run_id={run.id}: workflow {run.definition_name} "
                    "is not defined in this process"
                )
                continue
            await self._resume(run, definition)
            recovered.append(run.id)
        if recovered:
            logger.info(f"Recovered {len(recovered)} workflow run(s)")
        return recovered

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        return await self._journal.get_run(run_id)

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[WorkflowRun]:
        return await self._journal.list_runs(status)

    async def wait_for(self, run_id: str, timeout: Optional[float] = None) -> WorkflowRun:
        """Wait until the run is terminal and its completion has been fired."""
        event = self._done_events.setdefault(run_id, asyncio.Event())
        run = await self._journal.get_run(run_id)
        if run is None:
            self._done_events.pop(run_id, None)
            raise RunNotFoundError(run_id)
        if not (run.status.is_terminal and run.on_complete_fired) or run_id in self._firing:
            await asyncio.wait_for(event.wait(), timeout)
            run = await self._journal.get_run(run_id)
        return run

    # ------------------------------------------------------------------
    # Advance loop
    def _schedule(
        self, run_id: str, pool: Priority, step_index: int, attempt: int, delay_s: float = 0.0
    ) -> None:
        self._active.add(run_id)
        invocation = functools.partial(self._invoke, run_id, step_index, attempt)
        work_pool = self._pools.get(pool)
        if delay_s > 0:
            work_pool.enqueue_later(delay_s, invocation, key=run_id)
        else:
            work_pool.enqueue(invocation)

    def _policy(self, step: StepSpec) -> RetryPolicy:
        return step.retry or self._default_retry

    async def _invoke(self, run_id: str, step_index: int, attempt: int) -> None:
        try:
            await self._run_step(run_id, step_index, attempt)
        except Exception:
            # journal unavailable; leave the run for recover() to pick up
            self._active.discard(run_id)
            raise

    async def _run_step(self, run_id: str, step_index: int, attempt: int) -> None:
        run = await self._journal.get_run(run_id)
        if run is None:
            logger.error(f"Run {run_id} vanished from the journal")
            self._active.discard(run_id)
            return
        if run.status.is_terminal:
            self._active.discard(run_id)
            await self._fire_completion(run)
            return
        if run.cursor != step_index:
            logger.info(
                f"Skipping stale invocation of step {step_index} for run_id={run_id} "
                f"(cursor={run.cursor})"
            )
            return
        definition = self._definitions.get(run.definition_name)
        if definition is None:
            logger.error(f"Workflow {run.definition_name} is not defined; run_id={run_id} stalls")
            self._active.discard(run_id)
            return

        step = definition.steps[step_index]
        started_at = utcnow()
        try:
            await self._journal.append(
                run_id,
                StepEntry(
                    step_index=step_index,
                    step_name=step.name,
                    attempt=attempt,
                    status=StepStatus.PENDING,
                    started_at=started_at,
                ),
            )
        except JournalConflictError as e:
            logger.info(f"Not starting step {step.name} for run_id={run_id}: {e}")
            self._active.discard(run_id)
            return
        ctx = StepContext(
            run_id=run_id,
            attempt=attempt,
            args=definition.args_model.model_validate(run.args),
            outputs=run.outputs(definition),
            services=self._services,
        )
        outcome = await self._executor.execute(step, ctx)
        transition = decide(self._policy(step), attempt, outcome)

        if isinstance(outcome, Success):
            output = to_jsonable_python(outcome.value)
            try:
                await self._journal.append(
                    run_id,
                    StepEntry(
                        step_index=step_index,
                        step_name=step.name,
                        attempt=attempt,
                        status=StepStatus.SUCCEEDED,
                        started_at=started_at,
                        finished_at=utcnow(),
                        output=output,
                    ),
                )
            except JournalConflictError as e:
                logger.warning(f"Dropping result of step {step.name} for run_id={run_id}: {e}")
                return
            logger.info(f"Step {step.name} succeeded for run_id={run_id} (attempt {attempt})")
            if step_index + 1 == len(definition.steps):
                await self._finish(run_id, RunStatus.COMPLETED, SuccessResult(return_value=output))
            elif await self._still_running(run_id):
                self._schedule(run_id, definition.pool, step_index + 1, 1)
            return

        retrying = transition.kind == TransitionKind.RETRY
        try:
            await self._journal.append(
                run_id,
                StepEntry(
                    step_index=step_index,
                    step_name=step.name,
                    attempt=attempt,
                    status=StepStatus.FAILED,
                    started_at=started_at,
                    finished_at=utcnow(),
                    error=outcome.error,
                    retry_delay_ms=transition.delay_ms if retrying else None,
                ),
            )
        except JournalConflictError as e:
            logger.warning(f"Dropping failure of step {step.name} for run_id={run_id}: {e}")
            self._active.discard(run_id)
            return
        if retrying:
            if await self._still_running(run_id):
                logger.info(
                    f"Retrying step {step.name} for run_id={run_id} in {transition.delay_s:.3f}s "
                    f"(attempt {transition.next_attempt}/{self._policy(step).max_attempts})"
                )
                self._schedule(
                    run_id, definition.pool, step_index, transition.next_attempt, transition.delay_s
                )
            return

        logger.error(
            f"Step {step.name} exhausted {attempt} attempt(s) for run_id={run_id}: {outcome.error}"
        )
        await self._finish(run_id, RunStatus.FAILED, ErrorResult(error=outcome.error))

    async def _still_running(self, run_id: str) -> bool:
        run = await self._journal.get_run(run_id)
        if run is not None and run.status == RunStatus.RUNNING:
            return True
        logger.info(f"Run {run_id} is no longer running; not scheduling further steps")
        self._active.discard(run_id)
        return False

    async def _resume(self, run: WorkflowRun, definition: WorkflowDefinition) -> None:
        if run.cursor >= len(definition.steps):
            # every step succeeded before the process stopped
            last = [e for e in run.history if e.status == StepStatus.SUCCEEDED][-1]
            await self._finish(run.id, RunStatus.COMPLETED, SuccessResult(return_value=last.output))
            return

        step = definition.steps[run.cursor]
        attempt = run.failed_attempts(run.cursor) + 1
        if attempt > self._policy(step).max_attempts:
            await self._finish(
                run.id, RunStatus.FAILED, ErrorResult(error=run.last_error() or "retries exhausted")
            )
            return

        delay_s = 0.0
        failures = [
            e for e in run.history if e.step_index == run.cursor and e.status == StepStatus.FAILED
        ]
        if failures and failures[-1].retry_delay_ms and failures[-1].finished_at:
            due = failures[-1].finished_at + timedelta(milliseconds=failures[-1].retry_delay_ms)
            delay_s = max((due - utcnow()).total_seconds(), 0.0)
        logger.info(
            f"Resuming run_id={run.id} at step {step.name} (attempt {attempt}, delay {delay_s:.3f}s)"
        )
        self._schedule(run.id, run.pool, run.cursor, attempt, delay_s)

    async def _finish(self, run_id: str, status: RunStatus, result: RunResult) -> None:
        if await self._journal.finish_run(run_id, status, result):
            logger.info(f"Run {run_id} {status.value}")
        self._active.discard(run_id)
        run = await self._journal.get_run(run_id)
        if run is not None:
            await self._fire_completion(run)

    async def _fire_completion(self, run: WorkflowRun) -> bool:
        """Invoke the run's completion handler if no one has yet.

        The fired flag is set before the handler runs, so a handler that
        raises is logged and recorded but never invoked again.
        """
        if run.on_complete_fired or not run.status.is_terminal:
            return False
        self._firing[run.id] += 1
        try:
            if not await self._journal.mark_on_complete_fired(run.id):
                return False
            if run.on_complete is not None:
                await self._call_handler(run, run.on_complete)
            return True
        finally:
            self._firing[run.id] -= 1
            if self._firing[run.id] <= 0:
                del self._firing[run.id]
                waiter = self._done_events.pop(run.id, None)
                if waiter is not None:
                    waiter.set()

    async def _call_handler(self, run: WorkflowRun, on_complete: OnComplete) -> None:
        try:
            handler = self._handlers.get(on_complete.handler_ref)
            if handler is None:
                raise UnknownCompletionHandlerError(on_complete.handler_ref)
            event = CompletionEvent(
                workflow_id=run.id, result=run.result, context=on_complete.context
            )
            await handler(self._services, event)
            logger.info(
                f"Completion handler {on_complete.handler_ref} fired for run_id={run.id} "
                f"({event.result.kind})"
            )
        except Exception as e:
            logger.exception(f"Completion handler for run_id={run.id} raised: {e}")
            await self._journal.record_on_complete_error(run.id, f"{type(e).__name__}: {e}")
