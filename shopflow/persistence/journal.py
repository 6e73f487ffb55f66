"""Journal abstraction for durable workflow run state."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import RunResult, RunStatus, StepEntry, WorkflowRun


class WorkflowJournal(Protocol):
    """Protocol for workflow journal backends.

    Every write is durable before the call returns, so the manager can
    schedule dependent work right after an ``await`` on the journal.
    """

    async def create_run(self, run: WorkflowRun) -> None:
        """Persist a new run in ``running`` status."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Return the run with its full step history, or ``None``."""

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[WorkflowRun]:
        """Return runs (without history), optionally filtered by status."""

    async def append(self, run_id: str, entry: StepEntry) -> None:
        """Append ``entry`` to the run's history.

        A ``succeeded`` entry also advances the cursor from ``entry.step_index``
        to ``entry.step_index + 1`` in the same transaction. If the cursor is
        not at ``entry.step_index``, or the run is already terminal, nothing
        is written and ``JournalConflictError`` is raised.
        """

    async def read_history(self, run_id: str) -> list[StepEntry]:
        """Return the run's entries in append order."""

    async def finish_run(
        self, run_id: str, status: RunStatus, result: RunResult
    ) -> bool:
        """Move a ``running`` run to terminal ``status``.

        Returns ``False`` without writing when the run is already terminal.
        """

    async def mark_on_complete_fired(self, run_id: str) -> bool:
        """Atomically set the fired flag on a terminal run.

        Returns ``True`` for exactly one caller per run.
        """

    async def record_on_complete_error(self, run_id: str, error: str) -> None:
        """Store the error raised by the run's completion handler."""

    async def list_pending_recovery(self) -> list[WorkflowRun]:
        """Return runs still running or terminal with the fired flag unset."""
