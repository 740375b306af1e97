"""
Base repository with common data access operations.

Provides generic database operations for all feature repositories.
Uses SQLAlchemy async session for non-blocking database access.

Usage:
    class UserRepository(BaseRepository[User]):
        def __init__(self, db: AsyncSession):
            super().__init__(db, User)

        async def get_by_id(self, user_id: str) -> User | None:
            return await self.get_by(id=user_id)
"""

from typing import Any, Generic, Sequence, Type, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")


class StoreError(Exception):
    """Persistence failed; the transaction was rolled back."""
    pass


class BaseRepository(Generic[T]):
    """
    Base repository for database operations.

    Provides common methods that can be inherited by feature repositories.
    All methods are async for use with AsyncSession.
    """

    def __init__(self, db: AsyncSession, model: Type[T]):
        """
        Initialize repository.

        Args:
            db: Async database session
            model: SQLAlchemy model class
        """
        self.db = db
        self.model = model

    async def get_by(self, **kwargs) -> T | None:
        """
        Get single entity by arbitrary field values.

        Args:
            **kwargs: Field name-value pairs to filter by

        Returns:
            First matching entity or None
        """
        query = select(self.model)
        for key, value in kwargs.items():
            query = query.where(getattr(self.model, key) == value)
        result = await self.db.execute(
            query.execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_all(self, **kwargs) -> list[T]:
        """
        Get all entities matching criteria.

        Args:
            **kwargs: Field name-value pairs to filter by

        Returns:
            List of matching entities
        """
        query = select(self.model)
        for key, value in kwargs.items():
            query = query.where(getattr(self.model, key) == value)
        result = await self.db.execute(
            query.execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def create(self, **kwargs) -> T:
        """
        Create new entity.

        Args:
            **kwargs: Field values for new entity

        Returns:
            Created entity with generated ID

        Raises:
            StoreError: If the insert fails (session is rolled back)
        """
        entity = self.model(**kwargs)
        self.db.add(entity)
        try:
            await self.db.flush()
            await self.db.refresh(entity)
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreError(f"Failed to create {self.model.__name__}: {e}") from e
        return entity

    async def execute_write(self, stmt, action: str):
        """
        Execute a write statement.

        Args:
            stmt: INSERT / UPDATE / DELETE statement
            action: Verb for the error message ("update", "delete", ...)

        Raises:
            StoreError: If the statement fails (session is rolled back)
        """
        try:
            return await self.db.execute(stmt)
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreError(f"Failed to {action} {self.model.__name__}: {e}") from e

    def _dialect_insert(self, values: dict[str, Any]):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(self.model).values(**values)
        if dialect == "sqlite":
            return sqlite.insert(self.model).values(**values)
        raise StoreError(f"Upsert not supported for dialect {dialect}")

    async def upsert(
        self,
        index_elements: Sequence[str],
        values: dict[str, Any],
        update_columns: Sequence[str] | None = None,
    ) -> None:
        """
        Insert a row or update it in place when the key already exists.

        Uses the dialect's INSERT ... ON CONFLICT DO UPDATE so that
        concurrent writers for the same key never create duplicates.

        Args:
            index_elements: Columns of the unique key
            values: Full row values
            update_columns: Columns to overwrite on conflict
                (default: every non-key column in ``values``)
        """
        stmt = self._dialect_insert(values)

        if update_columns is None:
            update_columns = [k for k in values if k not in index_elements]

        stmt = stmt.on_conflict_do_update(
            index_elements=list(index_elements),
            set_={col: stmt.excluded[col] for col in update_columns},
        )
        await self.execute_write(stmt, "upsert")

    async def insert_or_ignore(
        self,
        index_elements: Sequence[str],
        values: dict[str, Any],
        index_where=None,
    ) -> Any | None:
        """
        Insert a row unless it collides with a unique key.

        Uses INSERT ... ON CONFLICT DO NOTHING, so of several concurrent
        writers of the same key exactly one inserts.

        Args:
            index_elements: Columns of the unique key
            values: Full row values
            index_where: Predicate of a partial unique index

        Returns:
            Primary key of the new row, or None if the key already existed
        """
        stmt = (
            self._dialect_insert(values)
            .on_conflict_do_nothing(
                index_elements=list(index_elements),
                index_where=index_where,
            )
            .returning(*self.model.__table__.primary_key.columns)
        )
        result = await self.execute_write(stmt, "insert")
        return result.scalar_one_or_none()

    async def delete(self, entity: T) -> None:
        """
        Delete entity.

        Args:
            entity: Entity to delete
        """
        await self.db.delete(entity)
        try:
            await self.db.flush()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreError(f"Failed to delete {self.model.__name__}: {e}") from e

    async def delete_where(self, **kwargs) -> int:
        """
        Delete all rows matching criteria.

        Returns:
            Number of rows deleted
        """
        stmt = delete(self.model)
        for key, value in kwargs.items():
            stmt = stmt.where(getattr(self.model, key) == value)
        result = await self.execute_write(stmt, "delete")
        return result.rowcount

    async def count(self, **kwargs) -> int:
        """
        Count entities matching criteria.

        Args:
            **kwargs: Field name-value pairs to filter by

        Returns:
            Number of matching entities
        """
        query = select(func.count()).select_from(self.model)
        for key, value in kwargs.items():
            query = query.where(getattr(self.model, key) == value)
        result = await self.db.execute(query)
        return result.scalar() or 0

    async def commit(self) -> None:
        """
        Commit the session.

        Raises:
            StoreError: If the commit fails (session is rolled back)
        """
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreError(f"Failed to persist {self.model.__name__}: {e}") from e
