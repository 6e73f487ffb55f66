"""In-memory implementation of the workflow journal."""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

from ..contracts import RunResult, RunStatus, StepEntry, StepStatus, WorkflowRun, utcnow
from ..errors import JournalConflictError, RunNotFoundError
from .journal import WorkflowJournal


class InMemoryWorkflowJournal(WorkflowJournal):
    """Store workflow runs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, WorkflowRun] = {}
        self._lock = asyncio.Lock()

    def _require(self, run_id: str) -> WorkflowRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> None:
        async with self._lock:
            self._runs[run.id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[WorkflowRun]:
        return [
            run.model_copy(update={"history": []}, deep=True)
            for run in self._runs.values()
            if status is None or run.status == status
        ]

    async def append(self, run_id: str, entry: StepEntry) -> None:
        async with self._lock:
            run = self._require(run_id)
            if run.status.is_terminal:
                raise JournalConflictError(f"Run {run_id} is already {run.status.value}")
            if entry.status == StepStatus.SUCCEEDED:
                if run.cursor != entry.step_index:
                    raise JournalConflictError(
                        f"Run {run_id} cursor is {run.cursor}, "
                        f"cannot complete step {entry.step_index}"
                    )
                run.cursor += 1
            run.history.append(entry.model_copy(deep=True))
            run.updated_at = utcnow()

    async def read_history(self, run_id: str) -> list[StepEntry]:
        run = self._require(run_id)
        return [entry.model_copy(deep=True) for entry in run.history]

    async def finish_run(
        self, run_id: str, status: RunStatus, result: RunResult
    ) -> bool:
        async with self._lock:
            run = self._require(run_id)
            if run.status.is_terminal:
                return False
            run.status = status
            run.result = result
            run.updated_at = utcnow()
            return True

    async def mark_on_complete_fired(self, run_id: str) -> bool:
        async with self._lock:
            run = self._require(run_id)
            if run.on_complete_fired or not run.status.is_terminal:
                return False
            run.on_complete_fired = True
            return True

    async def record_on_complete_error(self, run_id: str, error: str) -> None:
        async with self._lock:
            self._require(run_id).on_complete_error = error

    async def list_pending_recovery(self) -> list[WorkflowRun]:
        return [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if not run.status.is_terminal or not run.on_complete_fired
        ]
