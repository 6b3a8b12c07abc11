"""
Admin API Application

FastAPI app exposing the admin router and a health endpoint. The
lifespan connects the database, applies the schema and optionally runs
the outbox relay inside the API process.

Usage:
    uvicorn txoutbox.api.app:app
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .. import __version__
from ..database import close_database, create_schema, get_database
from ..outbox.models import EventSink
from ..outbox.relay import get_outbox_relay, start_outbox_relay, stop_outbox_relay
from .admin import router as admin_router
from .errors import register_error_handlers
from .middleware import ActorMiddleware, Authenticator, api_key_authenticator, parse_api_keys

logger = logging.getLogger(__name__)


def create_app(
    relay_sink: Optional[EventSink] = None,
    authenticate: Optional[Authenticator] = None
) -> FastAPI:
    """
    Build the admin application.

    Args:
        relay_sink: When given, an outbox relay delivering to this sink
            runs for the lifetime of the app. In multi-instance
            deployments the standalone runner is usually preferred.
        authenticate: Resolves the calling actor from a request. Defaults
            to Bearer API keys read from ADMIN_API_KEYS.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = await get_database()
        await create_schema(db)
        if relay_sink is not None:
            logger.info("Starting outbox relay...")
            await start_outbox_relay(relay_sink, db=db)
        try:
            yield
        finally:
            if relay_sink is not None:
                logger.info("Stopping outbox relay...")
                await stop_outbox_relay()
            await close_database()

    app = FastAPI(
        title="txoutbox Admin API",
        description="Operator endpoints for the transactional outbox",
        version=__version__,
        lifespan=lifespan
    )

    if authenticate is None:
        authenticate = api_key_authenticator(parse_api_keys())
    app.add_middleware(ActorMiddleware, authenticate=authenticate)

    register_error_handlers(app)
    app.include_router(admin_router)

    @app.get("/health")
    async def health():
        """Database reachability and relay state."""
        db = await get_database()
        await db.fetchval("SELECT 1")
        relay = get_outbox_relay()
        return {
            "status": "healthy",
            "database": db.backend.value,
            "relay_running": relay.is_running if relay else False
        }

    return app


app = create_app()
