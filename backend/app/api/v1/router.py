"""
API Router v1

Combines all route modules.
"""

from fastapi import APIRouter

from app.api.v1.routes import integrations, internal, users, webhooks

api_router = APIRouter()

api_router.include_router(integrations.router, tags=["Integrations"])
api_router.include_router(users.router, prefix="/users", tags=["Users"])
api_router.include_router(webhooks.router)
api_router.include_router(internal.router)
