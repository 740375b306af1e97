"""
Token maintenance.

Periodic sweep that refreshes tokens before either expiry clock runs out:
- access token expiring within the provider's access threshold
- refresh token (where it expires at all) expiring within the refresh threshold

Each integration is refreshed in its own session; one failure never
stops the batch.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.shared.clock import utcnow
from app.shared.repository import StoreError
from .exceptions import IntegrationError, IntegrationNotFound
from .health import evaluate_status
from .models import Integration
from .oauth import ProviderOAuth
from .providers import PROVIDERS
from .refresh import TokenRefreshEngine
from .repository import IntegrationRepository

logger = logging.getLogger(__name__)


# =============================================================================
# Results
# =============================================================================

@dataclass
class SweepError:
    user_id: str
    provider: str
    error: str
    requires_reconnect: bool
    health_status: Optional[str] = None


@dataclass
class SweepResult:
    started_at: datetime
    finished_at: Optional[datetime] = None
    checked: int = 0
    refreshed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[SweepError] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


@dataclass(frozen=True)
class _Candidate:
    user_id: str
    provider: str
    has_refresh_token: bool


# =============================================================================
# Candidate selection
# =============================================================================

async def find_due_integrations(db: AsyncSession, now: Optional[datetime] = None) -> list[Integration]:
    """
    Integrations needing a proactive refresh, deduplicated by id.

    Union of the access-expiring and refresh-expiring predicates, with
    per-provider thresholds. refresh_token_invalid rows never match.
    """
    now = now or utcnow()
    repo = IntegrationRepository(db)

    access_cutoffs = {
        spec.provider.value: now + spec.access_refresh_threshold
        for spec in PROVIDERS.values()
    }
    refresh_cutoffs = {
        spec.provider.value: now + spec.refresh_expiry_threshold
        for spec in PROVIDERS.values()
        if spec.supports_refresh_expiry
    }

    due: dict[int, Integration] = {}
    for integration in await repo.find_access_expiring(access_cutoffs):
        due[integration.id] = integration
    for integration in await repo.find_refresh_expiring(refresh_cutoffs):
        due.setdefault(integration.id, integration)

    return sorted(due.values(), key=lambda i: i.id)


# =============================================================================
# Sweep
# =============================================================================

class MaintenanceSweeper:
    """
    Runs one maintenance sweep.

    Usage:
        sweeper = MaintenanceSweeper(AsyncSessionLocal)
        result = await sweeper.run()
    """

    def __init__(
        self,
        db_factory,
        oauth_factory: Callable[[str], ProviderOAuth] = ProviderOAuth.for_provider,
        concurrency: Optional[int] = None,
    ):
        self.db_factory = db_factory
        self.oauth_factory = oauth_factory
        self.concurrency = max(1, concurrency or settings.maintenance_concurrency)

    async def run(self) -> SweepResult:
        """Select due integrations and refresh each one."""
        result = SweepResult(started_at=utcnow())

        async with self.db_factory() as db:
            due = await find_due_integrations(db, result.started_at)
            candidates = [
                _Candidate(i.user_id, i.provider, bool(i.refresh_token))
                for i in due
            ]

        result.checked = len(candidates)
        semaphore = asyncio.Semaphore(self.concurrency)
        await asyncio.gather(*[
            self._process(candidate, result, semaphore) for candidate in candidates
        ])

        result.finished_at = utcnow()
        logger.info(
            f"Maintenance sweep: checked={result.checked} refreshed={result.refreshed} "
            f"failed={result.failed} skipped={result.skipped}"
        )
        return result

    async def _process(
        self,
        candidate: _Candidate,
        result: SweepResult,
        semaphore: asyncio.Semaphore,
    ) -> None:
        if not candidate.has_refresh_token:
            result.skipped += 1
            return

        async with semaphore:
            try:
                async with self.db_factory() as db:
                    engine = TokenRefreshEngine(db, oauth_factory=self.oauth_factory)
                    await engine.refresh(candidate.user_id, candidate.provider)
                result.refreshed += 1
                return
            except IntegrationNotFound:
                # Disconnected between selection and refresh
                result.skipped += 1
                return
            except (IntegrationError, StoreError) as e:
                error = e
                requires_reconnect = getattr(e, "requires_reconnect", False)
            except Exception as e:
                logger.error(
                    f"Unexpected maintenance error for user={candidate.user_id} "
                    f"provider={candidate.provider}: {e}",
                    exc_info=True,
                )
                error = e
                requires_reconnect = False

        result.failed += 1
        result.errors.append(SweepError(
            user_id=candidate.user_id,
            provider=candidate.provider,
            error=str(error),
            requires_reconnect=requires_reconnect,
            health_status=await self._health_after(candidate),
        ))

    async def _health_after(self, candidate: _Candidate) -> Optional[str]:
        """Health status after a failed attempt, for troubleshooting output."""
        try:
            async with self.db_factory() as db:
                integration = await IntegrationRepository(db).get_for(
                    candidate.user_id, candidate.provider
                )
                return evaluate_status(integration).value
        except Exception as e:
            logger.warning(f"Could not evaluate health for user={candidate.user_id}: {e}")
            return None


# =============================================================================
# Background Runner
# =============================================================================

class MaintenanceRunner:
    """
    Background task running the sweep on a fixed interval.

    Usage:
        runner = MaintenanceRunner()
        await runner.start(db_factory)
        # ... later ...
        await runner.stop()
    """

    def __init__(
        self,
        interval_seconds: Optional[int] = None,
        oauth_factory: Callable[[str], ProviderOAuth] = ProviderOAuth.for_provider,
    ):
        self.interval_seconds = interval_seconds or settings.maintenance_interval_seconds
        self.oauth_factory = oauth_factory
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._db_factory = None
        self.last_result: Optional[SweepResult] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, db_factory):
        """Start background maintenance loop."""
        if self._running:
            return

        self._running = True
        self._db_factory = db_factory
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Token maintenance started (every {self.interval_seconds}s)")

    async def stop(self):
        """Stop background maintenance loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Token maintenance stopped")

    async def run_once(self, db_factory=None) -> SweepResult:
        """Run a sweep now and remember its result."""
        sweeper = MaintenanceSweeper(
            db_factory or self._db_factory,
            oauth_factory=self.oauth_factory,
        )
        self.last_result = await sweeper.run()
        return self.last_result

    async def _run_loop(self):
        """Main maintenance loop."""
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Maintenance sweep error: {e}", exc_info=True)

            await asyncio.sleep(self.interval_seconds)
