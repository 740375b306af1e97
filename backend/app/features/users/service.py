"""
Account deletion.

Revokes every integration first, then removes the user's local data.
Revocation results are advisory: deletion proceeds even if every
provider call fails.
"""

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.features.integrations.oauth import ProviderOAuth
from app.features.integrations.repository import (
    IntegrationRepository,
    PendingAuthorizationRepository,
)
from app.features.integrations.revocation import RevocationHandler, RevocationReport
from .repository import UserRepository

logger = logging.getLogger(__name__)


@dataclass
class AccountDeletionResult:
    user_id: str
    user_deleted: bool
    revocation: RevocationReport

    @property
    def found(self) -> bool:
        return self.user_deleted or bool(self.revocation.results)


class AccountDeletionService:
    """
    Deletes a user account.

    Usage:
        result = await AccountDeletionService(db).delete_account(user_id)
    """

    def __init__(
        self,
        db: AsyncSession,
        oauth_factory: Callable[[str], ProviderOAuth] = ProviderOAuth.for_provider,
    ):
        self.db = db
        self.revocation = RevocationHandler(db, oauth_factory)
        self.users = UserRepository(db)
        self.integrations = IntegrationRepository(db)
        self.pending = PendingAuthorizationRepository(db)

    async def delete_account(self, user_id: str) -> AccountDeletionResult:
        """
        Revoke integrations, then delete the user and leftover rows.

        Raises:
            StoreError: Local deletion failed
        """
        report = await self.revocation.revoke_all(user_id)
        if not report.all_deleted:
            logger.warning(f"Account deletion for {user_id}: some integrations failed to revoke")

        # Rows whose revocation failed before local deletion
        await self.integrations.delete_for_user(user_id)
        await self.pending.delete_for_user(user_id)
        user_deleted = await self.users.delete_where(id=user_id) > 0
        await self.users.commit()

        logger.info(
            f"Account deleted: user={user_id} user_row={user_deleted} "
            f"integrations={len(report.results)}"
        )
        return AccountDeletionResult(
            user_id=user_id,
            user_deleted=user_deleted,
            revocation=report,
        )
