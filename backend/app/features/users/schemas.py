"""
User schemas.

Pydantic models for user operations.
"""

from pydantic import BaseModel
from typing import Any


class AccountDeletionResponse(BaseModel):
    """Account deletion result. Revocation outcome is advisory."""

    user_id: str
    deleted: bool
    revocation: dict[str, Any]
