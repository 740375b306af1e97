"""
User-related models.

Models:
- User: Application user owning integrations
"""

import uuid

from sqlalchemy import Column, DateTime, String

from app.models.base import Base
from app.shared.clock import utcnow


class User(Base):
    """
    Application user.

    Integrations reference users by id only, so the credential
    lifecycle never depends on this table.
    """

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, index=True, nullable=True)

    # Profile
    name = Column(String(100), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<User {self.id} ({self.name})>"
