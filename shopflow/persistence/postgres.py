"""PostgreSQL implementation of the workflow journal."""

from __future__ import annotations

import json
from typing import Any, Optional

import asyncpg

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


def _loads(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


class PostgresWorkflowJournal(WorkflowJournal):
    """Persist workflow runs using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                definition_name TEXT NOT NULL,
                args JSONB NOT NULL,
                pool TEXT NOT NULL,
                cursor INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                on_complete JSONB,
                on_complete_fired BOOLEAN NOT NULL DEFAULT FALSE,
                on_complete_error TEXT,
                result JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL REFERENCES workflow_runs(id),
                step_index INTEGER NOT NULL,
                step_name TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                finished_at TIMESTAMPTZ,
                error TEXT,
                output JSONB,
                retry_delay_ms INTEGER
            )
            """
        )

    @staticmethod
    def _row_to_run(row: asyncpg.Record, history: list[StepEntry]) -> WorkflowRun:
        on_complete = _loads(row["on_complete"])
        result = row["result"]
        if result is not None and not isinstance(result, str):
            result = json.dumps(result)
        return WorkflowRun(
            id=row["id"],
            definition_name=row["definition_name"],
            args=_loads(row["args"]),
            pool=row["pool"],
            cursor=row["cursor"],
            status=row["status"],
            on_complete=OnComplete.model_validate(on_complete) if on_complete else None,
            on_complete_fired=row["on_complete_fired"],
            on_complete_error=row["on_complete_error"],
            result=load_result(result),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            history=history,
        )

    @staticmethod
    def _row_to_entry(row: asyncpg.Record) -> StepEntry:
        return StepEntry(
            step_index=row["step_index"],
            step_name=row["step_name"],
            attempt=row["attempt"],
            status=row["status"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            error=row["error"],
            output=_loads(row["output"]) if row["output"] is not None else None,
            retry_delay_ms=row["retry_delay_ms"],
        )

    async def _fetch_history(self, conn: asyncpg.Connection, run_id: str) -> list[StepEntry]:
        rows = await conn.fetch(
            f"SELECT {_STEP_COLUMNS} FROM step_history WHERE run_id = $1 ORDER BY id",
            run_id,
        )
        return [self._row_to_entry(r) for r in rows]

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> None:
        data = run.model_dump(mode="json")
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO workflow_runs ({_RUN_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)",
                run.id,
                run.definition_name,
                json.dumps(data["args"]),
                run.pool.value,
                run.cursor,
                run.status.value,
                run.on_complete.model_dump_json() if run.on_complete else None,
                run.on_complete_fired,
                run.on_complete_error,
                dump_result(run.result),
                run.created_at,
                run.updated_at,
            )
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                row = await conn.fetchrow(
                    f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE id = $1", run_id
                )
                if not row:
                    return None
                history = await self._fetch_history(conn, run_id)
        finally:
            await conn.close()
        return self._row_to_run(row, history)

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            if status is None:
                rows = await conn.fetch(
                    f"SELECT {_RUN_COLUMNS} FROM workflow_runs ORDER BY created_at"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE status = $1 "
                    "ORDER BY created_at",
                    status.value,
                )
        finally:
            await conn.close()
        return [self._row_to_run(r, []) for r in rows]

    async def append(self, run_id: str, entry: StepEntry) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                now = utcnow()
                if entry.status == StepStatus.SUCCEEDED:
                    updated = await conn.fetchval(
                        "UPDATE workflow_runs SET cursor = cursor + 1, updated_at = $1 "
                        "WHERE id = $2 AND status = $3 AND cursor = $4 RETURNING id",
                        now,
                        run_id,
                        RunStatus.RUNNING.value,
                        entry.step_index,
                    )
                else:
                    updated = await conn.fetchval(
                        "UPDATE workflow_runs SET updated_at = $1 "
                        "WHERE id = $2 AND status = $3 RETURNING id",
                        now,
                        run_id,
                        RunStatus.RUNNING.value,
                    )
                if updated is None:
                    row = await conn.fetchrow(
                        "SELECT status, cursor FROM workflow_runs WHERE id = $1", run_id
                    )
                    if row is None:
                        raise RunNotFoundError(run_id)
                    if row["status"] != RunStatus.RUNNING.value:
                        raise JournalConflictError(f"Run {run_id} is already {row['status']}")
                    raise JournalConflictError(
                        f"Run {run_id} cursor is {row['cursor']}, "
                        f"cannot complete step {entry.step_index}"
                    )
                data = entry.model_dump(mode="json")
                await conn.execute(
                    f"INSERT INTO step_history (run_id, {_STEP_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
                    run_id,
                    entry.step_index,
                    entry.step_name,
                    entry.attempt,
                    entry.status.value,
                    entry.started_at,
                    entry.finished_at,
                    entry.error,
                    json.dumps(data["output"]) if entry.output is not None else None,
                    entry.retry_delay_ms,
                )
        finally:
            await conn.close()

    async def read_history(self, run_id: str) -> list[StepEntry]:
        conn = await self._connect()
        try:
            return await self._fetch_history(conn, run_id)
        finally:
            await conn.close()

    async def finish_run(
        self, run_id: str, status: RunStatus, result: RunResult
    ) -> bool:
        conn = await self._connect()
        try:
            updated = await conn.fetchval(
                "UPDATE workflow_runs SET status = $1, result = $2, updated_at = $3 "
                "WHERE id = $4 AND status = $5 RETURNING id",
                status.value,
                dump_result(result),
                utcnow(),
                run_id,
                RunStatus.RUNNING.value,
            )
        finally:
            await conn.close()
        return updated is not None

    async def mark_on_complete_fired(self, run_id: str) -> bool:
        conn = await self._connect()
        try:
            updated = await conn.fetchval(
                "UPDATE workflow_runs SET on_complete_fired = TRUE, updated_at = $1 "
                "WHERE id = $2 AND NOT on_complete_fired AND status <> $3 RETURNING id",
                utcnow(),
                run_id,
                RunStatus.RUNNING.value,
            )
        finally:
            await conn.close()
        return updated is not None

    async def record_on_complete_error(self, run_id: str, error: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE workflow_runs SET on_complete_error = $1, updated_at = $2 WHERE id = $3",
                error,
                utcnow(),
                run_id,
            )
        finally:
            await conn.close()

    async def list_pending_recovery(self) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                rows = await conn.fetch(
                    f"SELECT {_RUN_COLUMNS} FROM workflow_runs "
                    "WHERE status = $1 OR NOT on_complete_fired ORDER BY created_at",
                    RunStatus.RUNNING.value,
                )
                runs = []
                for row in rows:
                    history = await self._fetch_history(conn, row["id"])
                    runs.append(self._row_to_run(row, history))
        finally:
            await conn.close()
        return runs
