"""
Integration repositories (the credential store).

Data access layer for Integration, PendingAuthorization and WebhookEvent.
Writes to integrations are keyed on (user_id, provider): either an
INSERT ... ON CONFLICT upsert or a keyed UPDATE. No in-process locking.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, desc, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.shared.clock import utcnow
from app.shared.repository import BaseRepository
from .models import Integration, PendingAuthorization, WebhookEvent


class IntegrationRepository(BaseRepository[Integration]):
    """Repository for provider integrations."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, Integration)

    async def get_for(self, user_id: str, provider: str) -> Integration | None:
        """
        Get integration for (user, provider).

        Args:
            user_id: Internal user ID
            provider: Provider id

        Returns:
            Integration if connected, None otherwise
        """
        return await self.get_by(user_id=user_id, provider=provider)

    async def list_for_user(self, user_id: str) -> list[Integration]:
        return await self.get_all(user_id=user_id)

    async def get_by_provider_user_id(
        self,
        provider: str,
        provider_user_id: str
    ) -> Integration | None:
        """
        Find the integration owning a provider-side account.

        Returns the most recently updated row if the same provider account
        was ever connected by more than one user.
        """
        query = (
            select(Integration)
            .where(
                Integration.provider == provider,
                Integration.provider_user_id == provider_user_id,
            )
            .order_by(desc(Integration.updated_at))
            .limit(1)
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def upsert_integration(
        self,
        user_id: str,
        provider: str,
        **values: Any
    ) -> Integration:
        """
        Create or fully overwrite the integration for (user, provider).

        Args:
            user_id: Internal user ID
            provider: Provider id
            **values: Column values (tokens, expiries, provider_user_id, ...)

        Returns:
            The stored integration
        """
        now = utcnow()
        row = {
            "user_id": user_id,
            "provider": provider,
            "refresh_token_invalid": False,
            "updated_at": now,
            **values,
        }
        update_columns = [k for k in row if k not in ("user_id", "provider")]
        row.setdefault("created_at", now)

        await self.upsert(
            index_elements=("user_id", "provider"),
            values=row,
            update_columns=update_columns,
        )
        return await self.get_for(user_id, provider)

    async def update_for(self, user_id: str, provider: str, **values: Any) -> int:
        """
        Update an existing integration in place.

        A keyed UPDATE (not an upsert): if the row was deleted concurrently,
        nothing is written and 0 is returned.

        Returns:
            Number of rows updated (0 or 1)
        """
        values.setdefault("updated_at", utcnow())
        stmt = (
            update(Integration)
            .where(
                Integration.user_id == user_id,
                Integration.provider == provider,
            )
            .values(**values)
        )
        result = await self.execute_write(stmt, "update")
        return result.rowcount

    async def mark_refresh_invalid(
        self,
        user_id: str,
        provider: str,
        unchanged_since: Optional[datetime] = None
    ) -> int:
        """
        Flag the stored refresh token as rejected by the provider.

        Args:
            user_id: Internal user ID
            provider: Provider id
            unchanged_since: Only flag the row if its updated_at still equals
                this value. A rejection of a token that a concurrent refresh
                has already replaced must not flag the replacement.

        Returns:
            1 if flagged, 0 if the row is gone or was rewritten meanwhile
        """
        stmt = update(Integration).where(
            Integration.user_id == user_id,
            Integration.provider == provider,
        )
        if unchanged_since is not None:
            stmt = stmt.where(Integration.updated_at == unchanged_since)
        stmt = stmt.values(refresh_token_invalid=True, updated_at=utcnow())
        result = await self.execute_write(stmt, "update")
        return result.rowcount

    async def find_access_expiring(
        self,
        cutoffs: dict[str, datetime]
    ) -> list[Integration]:
        """
        Integrations whose access token expires before the provider cutoff.

        Args:
            cutoffs: provider -> now + access refresh threshold

        Returns:
            Matching integrations, excluding refresh_token_invalid ones
        """
        if not cutoffs:
            return []
        predicate = or_(*[
            and_(
                Integration.provider == provider,
                Integration.access_token_expires_at < cutoff,
            )
            for provider, cutoff in cutoffs.items()
        ])
        return await self._find_refreshable(predicate)

    async def find_refresh_expiring(
        self,
        cutoffs: dict[str, datetime]
    ) -> list[Integration]:
        """
        Integrations whose refresh token itself expires before the cutoff.

        Args:
            cutoffs: provider -> now + refresh expiry threshold

        Returns:
            Matching integrations, excluding refresh_token_invalid ones
        """
        if not cutoffs:
            return []
        predicate = or_(*[
            and_(
                Integration.provider == provider,
                Integration.refresh_token_expires_at.is_not(None),
                Integration.refresh_token_expires_at < cutoff,
            )
            for provider, cutoff in cutoffs.items()
        ])
        return await self._find_refreshable(predicate)

    async def _find_refreshable(self, predicate) -> list[Integration]:
        query = (
            select(Integration)
            .where(predicate)
            .where(Integration.refresh_token_invalid.is_(False))
            .order_by(Integration.id)
        )
        result = await self.db.execute(
            query.execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def delete_for(self, user_id: str, provider: str) -> int:
        return await self.delete_where(user_id=user_id, provider=provider)

    async def delete_for_user(self, user_id: str) -> int:
        return await self.delete_where(user_id=user_id)


class PendingAuthorizationRepository(BaseRepository[PendingAuthorization]):
    """Repository for in-flight PKCE authorizations."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, PendingAuthorization)

    async def save(
        self,
        user_id: str,
        provider: str,
        state: str,
        code_verifier: str
    ) -> None:
        """Store a pending flow, replacing any earlier one for this user."""
        await self.upsert(
            index_elements=("user_id",),
            values={
                "user_id": user_id,
                "provider": provider,
                "state": state,
                "code_verifier": code_verifier,
                "created_at": utcnow(),
            },
        )

    async def get_for_user(self, user_id: str) -> PendingAuthorization | None:
        return await self.get_by(user_id=user_id)

    async def delete_for_user(self, user_id: str) -> int:
        return await self.delete_where(user_id=user_id)


class WebhookEventRepository(BaseRepository[WebhookEvent]):
    """Repository for the webhook event log."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, WebhookEvent)

    async def find_duplicate(
        self,
        provider: str,
        provider_user_id: Optional[str],
        event_type: str,
        activity_id: Optional[str]
    ) -> WebhookEvent | None:
        """
        Find an already recorded delivery of the same event.

        Only events carrying an activity id can be deduplicated.
        """
        if activity_id is None:
            return None
        query = (
            select(WebhookEvent)
            .where(
                WebhookEvent.provider == provider,
                WebhookEvent.provider_user_id == provider_user_id,
                WebhookEvent.event_type == event_type,
                WebhookEvent.activity_id == activity_id,
            )
            .order_by(WebhookEvent.id)
            .limit(1)
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_id(self, event_id: int) -> WebhookEvent | None:
        return await self.get_by(id=event_id)

    async def mark_processed(self, event_id: int, error: Optional[str] = None) -> int:
        """
        Transition an event from unprocessed to processed.

        Args:
            event_id: Event ID
            error: Processing error reported by the sync worker, if any

        Returns:
            1 if the event moved to processed, 0 if missing or already processed
        """
        stmt = (
            update(WebhookEvent)
            .where(
                WebhookEvent.id == event_id,
                WebhookEvent.processed.is_(False),
            )
            .values(processed=True, process_error=error, processed_at=utcnow())
        )
        result = await self.execute_write(stmt, "update")
        return result.rowcount

    async def stats_for(
        self,
        provider: str,
        provider_user_id: str,
        since: datetime
    ) -> dict:
        """
        Aggregate counts for one provider account.

        Args:
            provider: Provider id
            provider_user_id: Provider's user id
            since: Start of the "recent" window

        Returns:
            Dict with total, processed, failed, pending, recent
        """
        failed_case = and_(
            WebhookEvent.processed.is_(True),
            WebhookEvent.process_error.is_not(None),
        )
        query = (
            select(
                func.count(WebhookEvent.id),
                func.count(WebhookEvent.id).filter(WebhookEvent.processed.is_(True)),
                func.count(WebhookEvent.id).filter(failed_case),
                func.count(WebhookEvent.id).filter(WebhookEvent.processed.is_(False)),
                func.count(WebhookEvent.id).filter(WebhookEvent.received_at >= since),
            )
            .where(
                WebhookEvent.provider == provider,
                WebhookEvent.provider_user_id == provider_user_id,
            )
        )
        result = await self.db.execute(query)
        total, processed, failed, pending, recent = result.one()
        return {
            "total": total or 0,
            "processed": processed or 0,
            "failed": failed or 0,
            "pending": pending or 0,
            "last_24h": recent or 0,
        }

    async def recent_for(
        self,
        provider: str,
        provider_user_id: str,
        limit: int = 10
    ) -> list[WebhookEvent]:
        """Latest events for one provider account, newest first."""
        query = (
            select(WebhookEvent)
            .where(
                WebhookEvent.provider == provider,
                WebhookEvent.provider_user_id == provider_user_id,
            )
            .order_by(desc(WebhookEvent.received_at), desc(WebhookEvent.id))
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def correlation_counts(self, provider: Optional[str] = None) -> dict:
        """
        Matched vs. orphaned event totals.

        Args:
            provider: Restrict to one provider (default: all)

        Returns:
            Dict with total, matched, orphaned
        """
        query = select(
            func.count(WebhookEvent.id),
            func.count(WebhookEvent.id).filter(WebhookEvent.user_id.is_not(None)),
        )
        if provider:
            query = query.where(WebhookEvent.provider == provider)
        result = await self.db.execute(query)
        total, matched = result.one()
        total = total or 0
        matched = matched or 0
        return {"total": total, "matched": matched, "orphaned": total - matched}
