"""
User repositories.

Data access layer for the User model.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from app.shared.repository import BaseRepository
from .models import User


class UserRepository(BaseRepository[User]):
    """Repository for User operations."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, User)

    async def get_by_id(self, user_id: str) -> User | None:
        return await self.get_by(id=user_id)
