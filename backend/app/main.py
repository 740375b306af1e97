"""
Fitness Integrations API

FastAPI application managing third-party fitness platform connections.
"""

from contextlib import asynccontextmanager
import logging
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.db.session import init_db, AsyncSessionLocal
from app.api.v1.router import api_router
from app.features.integrations import MaintenanceRunner, ProviderOAuth
from app.shared.encryption import get_cipher
from app.shared.rate_limit import InMemoryRateLimiter


# === Logging Setup ===
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)
logger = logging.getLogger(__name__)


# === Lifespan ===
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    logger.info("Starting Fitness Integrations API...")
    get_cipher()
    await init_db()
    logger.info("Database initialized")

    runner: MaintenanceRunner = app.state.maintenance_runner
    if settings.maintenance_enabled:
        await runner.start(app.state.db_factory)

    yield

    # Shutdown
    if runner.running:
        await runner.stop()
    logger.info("Shutting down...")


# === App Creation ===
def create_app(
    db_factory=AsyncSessionLocal,
    oauth_factory=ProviderOAuth.for_provider,
) -> FastAPI:
    """
    Build the application.

    Args:
        db_factory: Session factory for background work
        oauth_factory: Builds provider OAuth clients
    """
    app = FastAPI(
        title="Fitness Integrations API",
        description="OAuth credential lifecycle for Strava, Garmin, Wahoo and Google Calendar",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.state.db_factory = db_factory
    app.state.oauth_factory = oauth_factory
    app.state.rate_limiter = InMemoryRateLimiter()
    app.state.maintenance_runner = MaintenanceRunner(oauth_factory=oauth_factory)

    # === Middleware ===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Routes ===
    app.include_router(api_router, prefix="/api/v1")

    # === Health Check ===
    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": "0.1.0"}

    return app


app = create_app()
