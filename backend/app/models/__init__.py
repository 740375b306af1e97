"""
Database Models

The declarative Base lives here; tables are defined in feature modules.

Note: Feature models are imported lazily to avoid circular imports.
Use direct imports from features/ modules when possible.
"""

from app.models.base import Base


def _get_user_models():
    """Lazy import of User models."""
    from app.features.users.models import User
    return User


def _get_integration_models():
    """Lazy import of integration models."""
    from app.features.integrations.models import (
        Integration,
        PendingAuthorization,
        WebhookEvent,
    )
    return Integration, PendingAuthorization, WebhookEvent


def __getattr__(name):
    if name == "User":
        return _get_user_models()

    if name in ("Integration", "PendingAuthorization", "WebhookEvent"):
        models = _get_integration_models()
        model_map = {
            "Integration": models[0],
            "PendingAuthorization": models[1],
            "WebhookEvent": models[2],
        }
        return model_map[name]

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "Base",
    "User",
    "Integration",
    "PendingAuthorization",
    "WebhookEvent",
]
