"""
User Routes

Endpoints for user account management.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.deps import get_oauth_factory, to_http_exception
from app.db.session import get_async_db
from app.features.integrations import StoreError
from app.features.users import AccountDeletionResponse, AccountDeletionService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.delete("/{user_id}", response_model=AccountDeletionResponse)
async def delete_account(
    user_id: str,
    db: AsyncSession = Depends(get_async_db),
    oauth_factory=Depends(get_oauth_factory),
):
    """
    Delete a user account.

    Integrations are revoked first. Revocation failures are reported in
    the response but never block deletion.
    """
    try:
        result = await AccountDeletionService(db, oauth_factory).delete_account(user_id)
    except StoreError as e:
        raise to_http_exception(e)

    if not result.found:
        raise HTTPException(status_code=404, detail="User not found")

    return AccountDeletionResponse(
        user_id=user_id,
        deleted=True,
        revocation=result.revocation.to_dict(),
    )
