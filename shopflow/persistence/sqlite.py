"""SQLite implementation of the workflow journal."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import (
    OnComplete,
    RunResult,
    RunStatus,
    StepEntry,
    StepStatus,
    WorkflowRun,
    utcnow,
)
from ..errors import JournalConflictError, RunNotFoundError
from .journal import WorkflowJournal
from .serialization import dump_result, load_result

_RUN_COLUMNS = (
    "id, definition_name, args, pool, cursor, status, on_complete, "
    "on_complete_fired, on_complete_error, result, created_at, updated_at"
)
_STEP_COLUMNS = (
    "step_index, step_name, attempt, status, started_at, finished_at, "
    "error, output, retry_delay_ms"
)


class SQLiteWorkflowJournal(WorkflowJournal):
    """Persist workflow runs using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_runs (
                    id TEXT PRIMARY KEY,
                    definition_name TEXT NOT NULL,
                    args TEXT NOT NULL,
                    pool TEXT NOT NULL,
                    cursor INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    on_complete TEXT,
                    on_complete_fired INTEGER NOT NULL DEFAULT 0,
                    on_complete_error TEXT,
                    result TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS step_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL REFERENCES workflow_runs(id),
                    step_index INTEGER NOT NULL,
                    step_name TEXT NOT NULL,
                    attempt INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    error TEXT,
                    output TEXT,
                    retry_delay_ms INTEGER
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_step_history_run ON step_history (run_id, id)"
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    @staticmethod
    def _row_to_run(row: sqlite3.Row, history: list[StepEntry]) -> WorkflowRun:
        return WorkflowRun(
            id=row["id"],
            definition_name=row["definition_name"],
            args=json.loads(row["args"]),
            pool=row["pool"],
            cursor=row["cursor"],
            status=row["status"],
            on_complete=(
                OnComplete.model_validate_json(row["on_complete"])
                if row["on_complete"]
                else None
            ),
            on_complete_fired=bool(row["on_complete_fired"]),
            on_complete_error=row["on_complete_error"],
            result=load_result(row["result"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            history=history,
        )

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> StepEntry:
        return StepEntry(
            step_index=row["step_index"],
            step_name=row["step_name"],
            attempt=row["attempt"],
            status=row["status"],
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=(
                datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None
            ),
            error=row["error"],
            output=json.loads(row["output"]) if row["output"] is not None else None,
            retry_delay_ms=row["retry_delay_ms"],
        )

    def _append_sync(self, run_id: str, entry: StepEntry) -> None:
        with self._lock, self._conn:
            now = utcnow().isoformat()
            if entry.status == StepStatus.SUCCEEDED:
                cur = self._conn.execute(
                    "UPDATE workflow_runs SET cursor = cursor + 1, updated_at = ? "
                    "WHERE id = ? AND status = ? AND cursor = ?",
                    (now, run_id, RunStatus.RUNNING.value, entry.step_index),
                )
            else:
                cur = self._conn.execute(
                    "UPDATE workflow_runs SET updated_at = ? WHERE id = ? AND status = ?",
                    (now, run_id, RunStatus.RUNNING.value),
                )
            if cur.rowcount != 1:
                self._reject_append(run_id, entry)
            data = entry.model_dump(mode="json")
            self._conn.execute(
                f"INSERT INTO step_history (run_id, {_STEP_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    run_id,
                    entry.step_index,
                    entry.step_name,
                    entry.attempt,
                    entry.status.value,
                    data["started_at"],
                    data["finished_at"],
                    entry.error,
                    json.dumps(data["output"]) if entry.output is not None else None,
                    entry.retry_delay_ms,
                ),
            )

    def _reject_append(self, run_id: str, entry: StepEntry) -> None:
        row = self._conn.execute(
            "SELECT status, cursor FROM workflow_runs WHERE id = ?", (run_id,)
        ).fetchone()
        if row is None:
            raise RunNotFoundError(run_id)
        if row["status"] != RunStatus.RUNNING.value:
            raise JournalConflictError(f"Run {run_id} is already {row['status']}")
        raise JournalConflictError(
            f"Run {run_id} cursor is {row['cursor']}, cannot complete step {entry.step_index}"
        )

    def _load_runs_sync(self, where: str, *params: Any) -> list[WorkflowRun]:
        # one read transaction so each cursor matches the history read with it
        with self._lock, self._conn:
            self._conn.execute("BEGIN")
            rows = self._conn.execute(
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE {where} ORDER BY created_at",
                params,
            ).fetchall()
            runs = []
            for row in rows:
                history = self._conn.execute(
                    f"SELECT {_STEP_COLUMNS} FROM step_history WHERE run_id = ? ORDER BY id",
                    (row["id"],),
                ).fetchall()
                runs.append(self._row_to_run(row, [self._row_to_entry(h) for h in history]))
            return runs

    def _update_sync(self, query: str, *params: Any) -> int:
        with self._lock, self._conn:
            return self._conn.execute(query, params).rowcount

    # ------------------------------------------------------------------
    # Journal API
    async def create_run(self, run: WorkflowRun) -> None:
        data = run.model_dump(mode="json")
        await asyncio.to_thread(
            self._update_sync,
            f"INSERT INTO workflow_runs ({_RUN_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            run.id,
            run.definition_name,
            json.dumps(data["args"]),
            run.pool.value,
            run.cursor,
            run.status.value,
            run.on_complete.model_dump_json() if run.on_complete else None,
            int(run.on_complete_fired),
            run.on_complete_error,
            dump_result(run.result),
            data["created_at"],
            data["updated_at"],
        )

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        runs = await asyncio.to_thread(self._load_runs_sync, "id = ?", run_id)
        return runs[0] if runs else None

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[WorkflowRun]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs ORDER BY created_at",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE status = ? ORDER BY created_at",
                status.value,
            )
        return [self._row_to_run(row, []) for row in rows]

    async def append(self, run_id: str, entry: StepEntry) -> None:
        await asyncio.to_thread(self._append_sync, run_id, entry)

    async def read_history(self, run_id: str) -> list[StepEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM step_history WHERE run_id = ? ORDER BY id",
            run_id,
        )
        return [self._row_to_entry(row) for row in rows]

    async def finish_run(
        self, run_id: str, status: RunStatus, result: RunResult
    ) -> bool:
        updated = await asyncio.to_thread(
            self._update_sync,
            "UPDATE workflow_runs SET status = ?, result = ?, updated_at = ? "
            "WHERE id = ? AND status = ?",
            status.value,
            dump_result(result),
            utcnow().isoformat(),
            run_id,
            RunStatus.RUNNING.value,
        )
        return updated == 1

    async def mark_on_complete_fired(self, run_id: str) -> bool:
        updated = await asyncio.to_thread(
            self._update_sync,
            "UPDATE workflow_runs SET on_complete_fired = 1, updated_at = ? "
            "WHERE id = ? AND on_complete_fired = 0 AND status != ?",
            utcnow().isoformat(),
            run_id,
            RunStatus.RUNNING.value,
        )
        return updated == 1

    async def record_on_complete_error(self, run_id: str, error: str) -> None:
        await asyncio.to_thread(
            self._update_sync,
            "UPDATE workflow_runs SET on_complete_error = ?, updated_at = ? WHERE id = ?",
            error,
            utcnow().isoformat(),
            run_id,
        )

    async def list_pending_recovery(self) -> list[WorkflowRun]:
        return await asyncio.to_thread(
            self._load_runs_sync,
            "status = ? OR on_complete_fired = 0",
            RunStatus.RUNNING.value,
        )
