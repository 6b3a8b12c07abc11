"""
Outbox Relay Runner

Standalone process running the outbox relay and retention janitor as a
background service, with graceful shutdown on SIGTERM/SIGINT.

Usage:
    txoutbox-relay
    python -m txoutbox.outbox.runner

Environment Variables:
    DATABASE_BACKEND / DATABASE_URL / SQLITE_PATH: Database selection
    OUTBOX_*: Relay and retention settings (see txoutbox.config.OutboxConfig)
    OUTBOX_SINK_URL: Deliver to this webhook; events are only logged when unset
    LOG_LEVEL: Logging level (default: INFO)
    LOG_STRUCTURED: JSON logs (default: true)
    OTEL_EXPORTER_OTLP_ENDPOINT: Export traces and metrics over OTLP
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from ..config import OutboxConfig
from ..database import DatabaseAdapter, create_schema, get_database, close_database
from ..observability import configure_logging, init_metrics, init_tracing
from .janitor import RetentionJanitor
from .models import EventSink
from .relay import OutboxRelay
from .sinks import HttpEventSink, LoggingEventSink

logger = logging.getLogger(__name__)


def build_sink(config: OutboxConfig) -> EventSink:
    """HTTP sink when OUTBOX_SINK_URL is set, logging sink otherwise."""
    if config.sink_url:
        return HttpEventSink(config.sink_url, timeout=config.publish_timeout)
    logger.warning("OUTBOX_SINK_URL not set, events will only be logged")
    return LoggingEventSink()


class OutboxRunner:
    """
    Manages the relay and janitor lifecycle with graceful shutdown.
    """

    def __init__(
        self,
        db: Optional[DatabaseAdapter] = None,
        sink: Optional[EventSink] = None,
        config: Optional[OutboxConfig] = None
    ):
        self.config = config or OutboxConfig()
        self.db = db
        self.sink = sink
        self.relay: Optional[OutboxRelay] = None
        self.janitor: Optional[RetentionJanitor] = None
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

    def _handle_shutdown_signal(self, sig: signal.Signals):
        """Handle shutdown signal."""
        if self._shutdown_requested:
            logger.warning(f"Received {sig.name} again, forcing exit")
            sys.exit(1)

        logger.info(f"Received {sig.name}, initiating graceful shutdown")
        self.request_shutdown()

    def request_shutdown(self):
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def run(self, install_signal_handlers: bool = True):
        """Run the relay and janitor until shutdown is requested."""
        logger.info("Starting outbox relay runner")
        logger.info(f"  {self.config!r}")

        if install_signal_handlers:
            self._setup_signal_handlers()

        if self.db is None:
            self.db = await get_database()
        await create_schema(self.db)

        if self.sink is None:
            self.sink = build_sink(self.config)

        self.relay = OutboxRelay(self.sink, db=self.db, config=self.config)
        self.janitor = RetentionJanitor(db=self.db, interval=self.config.janitor_interval)

        try:
            await self.relay.start()
            await self.janitor.start()
            logger.info("Outbox relay is running")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Outbox relay runner error: {e}", exc_info=True)
            raise
        finally:
            # Graceful shutdown
            logger.info("Stopping outbox relay")
            await self.janitor.stop()
            await self.relay.stop()
            if isinstance(self.sink, HttpEventSink):
                await self.sink.close()
            logger.info("Outbox relay stopped")

    async def health_check(self) -> dict:
        """Return health status for monitoring."""
        running = self.relay.is_running if self.relay else False
        return {
            "status": "healthy" if running else "unhealthy",
            "running": running,
            "shutdown_requested": self._shutdown_requested
        }


async def main():
    """Main entry point."""
    configure_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        structured=os.getenv("LOG_STRUCTURED", "true").lower() == "true",
        service_name="txoutbox-relay"
    )
    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    init_tracing(service_name="txoutbox-relay", otlp_endpoint=otlp_endpoint)
    init_metrics(service_name="txoutbox-relay", otlp_endpoint=otlp_endpoint)

    runner = OutboxRunner()
    try:
        await runner.run()
    finally:
        await close_database()


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
