"""Base repository with common CRUD operations."""

from typing import Any, TypeVar

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.db.base import Base

T = TypeVar("T", bound=Base)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class BaseRepository:
    """Generic async repository for SQLAlchemy models."""

    def __init__(self, session: AsyncSession, model_class: type[T]):
        self.session = session
        self.model_class = model_class

    async def get_by_id(self, pk_field: str, pk_value: Any) -> T | None:
        """Get a single record by primary key."""
        stmt = select(self.model_class).where(
            getattr(self.model_class, pk_field) == pk_value
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, **kwargs: Any) -> T:
        """Create and persist a new record."""
        row = self.model_class(**kwargs)
        self.session.add(row)
        await self.session.flush()
        return row

    async def update(self, row: T, **kwargs: Any) -> T:
        """Update an existing record."""
        for key, value in kwargs.items():
            setattr(row, key, value)
        await self.session.flush()
        return row

    async def delete(self, row: T) -> None:
        await self.session.delete(row)
        await self.session.flush()

    async def count(self, *criteria: Any) -> int:
        stmt = select(func.count()).select_from(self.model_class)
        if criteria:
            stmt = stmt.where(*criteria)
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    def insert(self):
        """Dialect-specific INSERT supporting ON CONFLICT clauses.

        Raises:
            NotImplementedError: For backends without ON CONFLICT support.
        """
        dialect = self.session.get_bind().dialect.name
        try:
            insert_fn = _DIALECT_INSERTS[dialect]
        except KeyError:
            raise NotImplementedError(f"Upserts are not supported on {dialect}") from None
        return insert_fn(self.model_class)
