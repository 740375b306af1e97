"""
User management module.

Usage:
    from app.features.users import User, UserRepository, AccountDeletionService

Models:
- User: Application user

Services:
- AccountDeletionService: Revoke integrations, then delete the account
"""

from .models import User
from .schemas import AccountDeletionResponse
from .repository import UserRepository
from .service import AccountDeletionService, AccountDeletionResult

__all__ = [
    # Models
    "User",
    # Schemas
    "AccountDeletionResponse",
    # Repositories
    "UserRepository",
    # Services
    "AccountDeletionService",
    "AccountDeletionResult",
]
