"""
Outbox Relay Runner

Standalone entry point: runs the polling loop and the health server until
SIGTERM/SIGINT, then shuts down gracefully.

Usage:
    python -m outbox_relay.runner
    outbox-relay

Environment Variables:
    DATABASE_URL (or PGHOST/PGPORT/PGDATABASE/PGUSER/PGPASSWORD)
    KAFKA_BROKERS, KAFKA_SSL, KAFKA_USERNAME, KAFKA_PASSWORD
    OUTBOX_SCHEMAS: comma separated schema names
    POLLING_INTERVAL_MS: pause between cycles (default: 1000)
    LOG_LEVEL: Logging level (default: INFO)
    See outbox_relay.config for the full list.
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Any, List, Optional

import uvicorn

from .api import create_app
from .config import RelayConfig
from .database import DatabaseAdapter, DatabaseConfig
from .exceptions import ConfigurationError
from .observability import RelayMetrics, configure_logging, init_metrics, init_tracing
from .relay import (
    DeadLetterSink,
    EventPublisher,
    OutboxPoller,
    PollScheduler,
    RelayStateReader,
    RetryPolicy,
    SchemaRegistry,
    SchemaSource,
)
from .relay.broker import start_producer

logger = logging.getLogger(__name__)


@dataclass
class RelayResources:
    """
    Process-wide connections, created once at startup and closed once at
    shutdown.
    """
    db: DatabaseAdapter
    producer: Any

    @classmethod
    async def open(cls, config: RelayConfig) -> "RelayResources":
        db = DatabaseAdapter(DatabaseConfig(
            config.database_url,
            min_size=config.db_pool_min_size,
            max_size=config.db_pool_max_size,
        ))
        await db.connect()
        try:
            producer = await start_producer(config)
        except Exception:
            await db.disconnect()
            raise
        return cls(db=db, producer=producer)

    async def close(self) -> None:
        """Disconnect the producer, then close the pool."""
        try:
            logger.info("Disconnecting Kafka producer")
            await self.producer.stop()
        except Exception as e:
            logger.error(f"Error stopping Kafka producer: {e}", exc_info=True)

        try:
            logger.info("Closing PostgreSQL connection pool")
            await self.db.disconnect()
        except Exception as e:
            logger.error(f"Error closing PostgreSQL pool: {e}", exc_info=True)


def build_scheduler(
    config: RelayConfig,
    resources: RelayResources,
    sources: List[SchemaSource],
    metrics: Optional[RelayMetrics] = None
) -> PollScheduler:
    """Wire the relay components around the shared resources."""
    return PollScheduler(
        sources,
        poller=OutboxPoller(resources.db, batch_size=config.batch_size),
        publisher=EventPublisher(resources.producer, resources.db),
        dead_letters=DeadLetterSink(resources.db),
        retry_policy=RetryPolicy(
            max_retries=config.retry_max_retries,
            initial_delay_ms=config.retry_initial_delay_ms,
            max_delay_ms=config.retry_max_delay_ms,
        ),
        metrics=metrics,
        interval_ms=config.polling_interval_ms,
    )


class RelayRunner:
    """
    Manages the relay lifecycle with graceful shutdown.
    """

    def __init__(self, config: RelayConfig):
        self.config = config
        self.resources: Optional[RelayResources] = None
        self.scheduler: Optional[PollScheduler] = None
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task] = None
        self._providers: List[Any] = []
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

    def request_shutdown(self) -> None:
        self._shutdown_requested = True
        self._shutdown_event.set()

    def _init_telemetry(self) -> None:
        config = self.config
        self._providers.append(init_metrics(
            service_name=config.service_name,
            otlp_endpoint=config.otlp_endpoint,
            console_export=config.otel_console_export,
        ))
        self._providers.append(init_tracing(
            service_name=config.service_name,
            otlp_endpoint=config.otlp_endpoint,
            console_export=config.otel_console_export,
        ))

    async def _start_http_server(self) -> None:
        app = create_app(
            RelayStateReader(self.resources.db),
            scheduler=self.scheduler,
            max_poll_age_seconds=self.config.readiness_max_poll_age_seconds,
            dead_letters=DeadLetterSink(self.resources.db),
        )
        self._server = uvicorn.Server(uvicorn.Config(
            app,
            host=self.config.host,
            port=self.config.port,
            log_config=None,
            access_log=False,
        ))
        # Signals are handled by the runner, not by uvicorn
        self._server.install_signal_handlers = lambda: None
        self._server_task = asyncio.create_task(self._server.serve(), name="health-server")
        logger.info("HTTP server listening", extra={"port": self.config.port})

    async def run(self):
        """Run the relay until shutdown is requested."""
        config = self.config
        logger.info("Starting outbox-relay service", extra={"config": repr(config)})

        sources = SchemaRegistry().resolve(config.outbox_schemas)

        self._setup_signal_handlers()
        self._init_telemetry()

        try:
            self.resources = await RelayResources.open(config)

            poller = OutboxPoller(self.resources.db, batch_size=config.batch_size)
            for source in sources:
                await poller.ensure_relay_state(source.schema, source.table)

            self.scheduler = build_scheduler(config, self.resources, sources, RelayMetrics())
            await self._start_http_server()

            if sources:
                self.scheduler.start()
            else:
                logger.warning("Polling loop not started: no schemas configured")

            logger.info("Outbox-relay service started")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Outbox-relay error: {e}", exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Stop the loop (letting the current cycle finish), then release resources."""
        logger.info("Graceful shutdown initiated")

        if self.scheduler is not None:
            await self.scheduler.stop()

        if self._server is not None:
            self._server.should_exit = True
            if self._server_task is not None:
                await self._server_task
            self._server = None

        if self.resources is not None:
            await self.resources.close()
            self.resources = None

        for provider in self._providers:
            provider.shutdown()
        self._providers.clear()

        logger.info("Graceful shutdown completed")


async def main():
    """Main entry point."""
    try:
        config = RelayConfig()
    except ConfigurationError as e:
        configure_logging()
        logger.error(str(e))
        sys.exit(1)

    configure_logging(
        level=config.log_level,
        structured=config.log_structured,
        service_name=config.service_name,
    )

    issues = config.validate()
    for issue in issues:
        if issue.startswith("ERROR"):
            logger.error(issue)
        else:
            logger.warning(issue)
    if any(issue.startswith("ERROR") for issue in issues):
        sys.exit(1)

    runner = RelayRunner(config)
    try:
        await runner.run()
    except Exception:
        logger.error("Failed to run outbox-relay service")
        sys.exit(1)


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
