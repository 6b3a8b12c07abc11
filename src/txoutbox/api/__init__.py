"""
Admin HTTP API.
"""

from .admin import router as admin_router
from .app import create_app
from .errors import register_error_handlers
from .middleware import ActorMiddleware, api_key_authenticator, parse_api_keys, require_actor

__all__ = [
    "admin_router",
    "create_app",
    "register_error_handlers",
    "ActorMiddleware",
    "api_key_authenticator",
    "parse_api_keys",
    "require_actor",
]
