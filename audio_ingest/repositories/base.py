"""Base repository with common database operations."""

from typing import Any, Generic, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

ModelType = TypeVar("ModelType", bound=DeclarativeBase)


class BaseRepository(Generic[ModelType]):
    """Base repository with common CRUD operations."""

    def __init__(self, session: AsyncSession, model: type[ModelType]):
        """
        Initialize repository.
        Args:
            session: Async database session
            model: SQLAlchemy model class
        """
        self.session = session
        self.model = model

    async def get_by_id(self, id: Any) -> Optional[ModelType]:
        """Get entity by ID, bypassing stale identity-map state."""
        stmt = (
            select(self.model)
            .where(self.model.id == id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, **kwargs) -> ModelType:
        """Create new entity and commit."""
        entity = self.model(**kwargs)
        self.session.add(entity)
        await self.session.commit()
        await self.session.refresh(entity)
        return entity

    async def update(self, id: Any, **kwargs) -> Optional[ModelType]:
        """Update entity by ID and return the fresh row."""
        # Direct update so concurrent progress writes don't fight the ORM
        values = {getattr(self.model, key): value for key, value in kwargs.items()}
        await self.session.execute(
            update(self.model).where(self.model.id == id).values(values)
        )
        await self.session.commit()
        return await self.get_by_id(id)
