from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Type, TypeVar
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from ..errors import RecordNotFoundError

ModelT = TypeVar("ModelT", bound=SQLModel)


def as_uuid(value: UUID | str) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class ShopStore:
    """Async document-style access to the shop's business records.

    Every helper accepts an optional ``session``; passing the session yielded
    by ``transaction()`` makes several calls commit or roll back together.
    """

    def __init__(self, database_url: str) -> None:
        connect_args = (
            {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        )
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def _use(self, session: Optional[AsyncSession]) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
        else:
            async with self.transaction() as own:
                yield own

    # ------------------------------------------------------------------
    async def get(
        self,
        model: Type[ModelT],
        record_id: UUID | str,
        session: Optional[AsyncSession] = None,
    ) -> ModelT | None:
        async with self._use(session) as s:
            return await s.get(model, as_uuid(record_id))

    async def require(
        self,
        model: Type[ModelT],
        record_id: UUID | str,
        session: Optional[AsyncSession] = None,
    ) -> ModelT:
        record = await self.get(model, record_id, session=session)
        if record is None:
            raise RecordNotFoundError(f"{model.__name__} {record_id} not found")
        return record

    async def insert(self, record: ModelT, session: Optional[AsyncSession] = None) -> ModelT:
        async with self._use(session) as s:
            s.add(record)
            await s.flush()
        return record

    async def patch(
        self,
        model: Type[ModelT],
        record_id: UUID | str,
        session: Optional[AsyncSession] = None,
        **fields: Any,
    ) -> ModelT:
        async with self._use(session) as s:
            record = await s.get(model, as_uuid(record_id))
            if record is None:
                raise RecordNotFoundError(f"{model.__name__} {record_id} not found")
            for key, value in fields.items():
                if not hasattr(record, key):
                    raise AttributeError(f"{model.__name__} has no field {key}")
                setattr(record, key, value)
            s.add(record)
            await s.flush()
        return record

    async def compare_and_set(
        self,
        model: Type[ModelT],
        record_id: UUID | str,
        expected: dict[str, Any],
        session: Optional[AsyncSession] = None,
        **fields: Any,
    ) -> bool:
        """Apply ``fields`` only if the record still holds ``expected`` values.

        Runs as a single conditional UPDATE, so at most one of several
        concurrent callers with the same ``expected`` wins.
        """
        stmt = (
            update(model)
            .where(model.id == as_uuid(record_id))
            .where(*[getattr(model, k) == v for k, v in expected.items()])
            .values(**fields)
        )
        async with self._use(session) as s:
            result = await s.execute(stmt)
            return result.rowcount == 1

    async def delete(
        self,
        model: Type[ModelT],
        record_id: UUID | str,
        session: Optional[AsyncSession] = None,
    ) -> bool:
        async with self._use(session) as s:
            record = await s.get(model, as_uuid(record_id))
            if record is None:
                return False
            await s.delete(record)
        return True

    async def query(
        self,
        model: Type[ModelT],
        *where: Any,
        session: Optional[AsyncSession] = None,
        order_by: Any = None,
        **equals: Any,
    ) -> list[ModelT]:
        """Return records matching all ``where`` clauses and field equalities."""
        stmt = select(model)
        clauses = list(where) + [getattr(model, k) == v for k, v in equals.items()]
        if clauses:
            stmt = stmt.where(*clauses)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        async with self._use(session) as s:
            result = await s.execute(stmt)
            return list(result.scalars().all())

    async def first(
        self,
        model: Type[ModelT],
        *where: Any,
        session: Optional[AsyncSession] = None,
        **equals: Any,
    ) -> ModelT | None:
        records = await self.query(model, *where, session=session, **equals)
        return records[0] if records else None
