"""
Authentication Middleware

Resolves the calling Actor from the Authorization header and stores it
in request.state. Endpoints never trust caller-supplied identity
headers; an actor exists only if an authenticator vouched for it.

API keys are configured as ADMIN_API_KEYS="token:actor_id:role,...".
"""

import hmac
import logging
import os
from typing import Awaitable, Callable, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from ..auth import Actor
from ..config import is_auth_required
from ..errors import AuthenticationRequired

logger = logging.getLogger(__name__)

Authenticator = Callable[[Request], Awaitable[Optional[Actor]]]

# Paths that don't require authentication (even when AUTH_REQUIRED=true)
PUBLIC_PATHS = {
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
}

DEV_ACTOR = Actor(id="dev", role="admin")


def is_public_path(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith("/docs") or path.startswith("/redoc")


def parse_api_keys(raw: Optional[str] = None) -> Dict[str, Actor]:
    """
    Parse "token:actor_id:role" triples separated by commas.

    Raises:
        ValueError: A triple is malformed
    """
    if raw is None:
        raw = os.getenv("ADMIN_API_KEYS", "")

    keys: Dict[str, Actor] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        parts = item.split(":")
        if len(parts) != 3 or not all(parts):
            raise ValueError("ADMIN_API_KEYS entries must look like token:actor_id:role")
        token, actor_id, role = parts
        keys[token] = Actor(id=actor_id, role=role)
    return keys


def api_key_authenticator(keys: Dict[str, Actor]) -> Authenticator:
    """Authenticator mapping Bearer tokens to configured actors."""

    async def authenticate(request: Request) -> Optional[Actor]:
        header = request.headers.get("authorization", "")
        if not header.startswith("Bearer "):
            return None

        token = header[7:].encode()
        for known, actor in keys.items():
            if hmac.compare_digest(token, known.encode()):
                return actor

        logger.warning(f"Rejected unknown API key for {request.url.path}")
        return None

    return authenticate


class ActorMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    1. Leaves public paths alone
    2. Uses a development actor when AUTH_REQUIRED=false
    3. Otherwise loads the authenticated actor into request.state

    A request without a valid credential still reaches the endpoint;
    require_actor decides whether that is acceptable.
    """

    def __init__(self, app, authenticate: Authenticator):
        super().__init__(app)
        self.authenticate = authenticate

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.actor = None

        if is_public_path(request.url.path):
            return await call_next(request)

        if not is_auth_required():
            request.state.actor = DEV_ACTOR
            return await call_next(request)

        request.state.actor = await self.authenticate(request)
        return await call_next(request)


def get_current_actor(request: Request) -> Optional[Actor]:
    return getattr(request.state, "actor", None)


def require_actor(request: Request) -> Actor:
    """
    Require an authenticated actor.

    Raises:
        AuthenticationRequired: No actor and AUTH_REQUIRED is on
    """
    actor = get_current_actor(request)

    if actor is None:
        if is_auth_required():
            raise AuthenticationRequired()
        return DEV_ACTOR

    return actor
