"""
Outbox Delivery Runner

Standalone entry point for the delivery worker.

Usage:
    python -m src.core.outbox.runner --config config.yaml
    python -m src.core.outbox.runner --config config.yaml --drain [--skip-failed]
                                     [--max-failed-attempts 5]

Service mode runs until SIGTERM/SIGINT (a second signal forces exit).
Drain mode delivers everything that is pending and exits.

Environment Variables:
    RELAY_CONFIG: Config file when --config is not given (default: config.yaml)
    RELAY_DB_PATH: SQLite database path (default: {app.data_dir}/relay.db)
    LOG_LEVEL: Logging level (default: INFO)
    LOG_FORMAT: "json" for structured logs, anything else for plain text
    OTEL_EXPORTER_OTLP_ENDPOINT: Enables OTLP trace and metric export
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import List, Optional

from ..config import Settings, load_config
from ..database.adapter import DatabaseAdapter, DatabaseConfig
from ..database.migrate import apply_migrations
from ..documents.base import DocumentClient
from ..documents.notion import NotionDocumentClient
from ..errors import ConfigError
from ..observability import configure_logging, init_metrics, init_tracing
from ..timeutil import utcnow
from .processor import DeliveryWorker

logger = logging.getLogger(__name__)

DEFAULT_MAX_FAILED_ATTEMPTS = 5
# Upper bound on one drain-mode wait for backed-off tasks
MAX_DRAIN_WAIT_SECONDS = 10.0
PROGRESS_EVERY = 10


@dataclass
class DrainResult:
    """Summary of a drain run."""
    processed: int
    remaining: int
    last_processed_id: int
    reason: str

    @property
    def complete(self) -> bool:
        return self.remaining == 0


class OutboxRunner:
    """
    Manages the delivery worker lifecycle with graceful shutdown.
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[DocumentClient] = None,
        db: Optional[DatabaseAdapter] = None,
    ):
        self.settings = settings
        self._client = client
        self._owns_client = client is None
        self._db = db
        self._owns_db = db is None
        self.worker: Optional[DeliveryWorker] = None
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

    async def _open(self) -> DeliveryWorker:
        if self._db is None:
            self._db = DatabaseAdapter(DatabaseConfig(sqlite_path=self.settings.app.database_path))
        await self._db.connect()
        await apply_migrations(self._db)

        if self._client is None:
            self._client = NotionDocumentClient(
                self.settings.notion,
                timeout=self.settings.app.delivery_timeout_seconds,
            )

        self.worker = DeliveryWorker.from_settings(self.settings, self._client, self._db)
        return self.worker

    async def _close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        if self._db is not None and self._owns_db:
            await self._db.disconnect()

    async def run(self):
        """Run the delivery worker until shutdown is requested."""
        app = self.settings.app
        logger.info("Starting Outbox Delivery Runner")
        logger.info(f"  Poll interval: {app.poll_interval_seconds}s")
        logger.info(f"  Backoff: base {app.base_backoff_seconds}s, max {app.max_backoff_seconds}s")
        logger.info(f"  Delivery timeout: {app.delivery_timeout_seconds}s")
        logger.info(f"  Max attempts: {app.max_attempts or 'unlimited'}")

        self._setup_signal_handlers()

        try:
            worker = await self._open()
            await worker.start()
            logger.info("Delivery worker is running")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Delivery worker error: {e}", exc_info=True)
            raise
        finally:
            logger.info("Stopping delivery worker")
            if self.worker:
                await self.worker.stop()
            await self._close()
            logger.info("Delivery worker stopped")

    async def drain(
        self,
        skip_failed: bool = False,
        max_failed_attempts: int = DEFAULT_MAX_FAILED_ATTEMPTS,
    ) -> DrainResult:
        """
        Deliver every pending task, then return.

        When only backed-off tasks remain, returns immediately with
        `skip_failed`, or once any task reaches `max_failed_attempts`;
        otherwise waits for the next due time and carries on.
        """
        try:
            worker = await self._open()
            await worker.queue.release_claims()
            return await self._drain(worker, skip_failed, max_failed_attempts)
        finally:
            await self._close()

    async def _drain(
        self,
        worker: DeliveryWorker,
        skip_failed: bool,
        max_failed_attempts: int,
    ) -> DrainResult:
        queue = worker.queue
        remaining = await queue.count_remaining()
        logger.info(
            f"Initial sync state: remaining_tasks={remaining}, "
            f"last_processed_id={await queue.cursor.get()}"
        )

        processed = 0
        reason = "empty"

        while not self._shutdown_requested:
            try:
                stepped = await worker.process_next()
            except Exception as e:
                logger.error(f"Error processing outbox task: {e}", exc_info=True)
                await asyncio.sleep(worker.poll_interval)
                continue

            if stepped:
                processed += 1
                if processed % PROGRESS_EVERY == 0:
                    logger.info(
                        f"Sync progress: processed={processed}, "
                        f"remaining={await queue.count_remaining()}, "
                        f"last_processed_id={await queue.cursor.get()}"
                    )
                continue

            remaining = await queue.count_remaining()
            if remaining == 0:
                reason = "empty"
                break

            max_attempt = await queue.max_attempt()
            next_due = await queue.next_due_at()
            logger.warning(
                f"No due tasks but {remaining} remain in backoff "
                f"(max attempt {max_attempt}, next due {next_due.isoformat() if next_due else 'unknown'})"
            )

            if max_attempt >= max_failed_attempts:
                logger.error(
                    f"Tasks have reached {max_attempt} failed attempts "
                    f"(threshold {max_failed_attempts}), exiting"
                )
                reason = "max_failed_attempts"
                break

            if skip_failed:
                logger.warning("--skip-failed specified, exiting with failed tasks remaining")
                reason = "skip_failed"
                break

            wait = MAX_DRAIN_WAIT_SECONDS
            if next_due is not None:
                wait = min(wait, max(worker.poll_interval, (next_due - utcnow()).total_seconds()))
            await asyncio.sleep(wait)
        else:
            reason = "shutdown"

        result = DrainResult(
            processed=processed,
            remaining=await queue.count_remaining(),
            last_processed_id=await queue.cursor.get(),
            reason=reason,
        )
        logger.info(
            f"Drain finished ({result.reason}): processed={result.processed}, "
            f"remaining={result.remaining}, last_processed_id={result.last_processed_id}"
        )
        return result

    async def health_check(self) -> dict:
        """Return health status for monitoring."""
        running = bool(self.worker and self.worker.is_running)
        return {
            "status": "healthy" if running else "unhealthy",
            "running": running,
            "shutdown_requested": self._shutdown_requested
        }


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Deliver pending outbox tasks to the document database")
    parser.add_argument("--config", default=None, help="Path to YAML config file (default: $RELAY_CONFIG or config.yaml)")
    parser.add_argument("--drain", action="store_true", help="Deliver all pending tasks and exit")
    parser.add_argument(
        "--skip-failed",
        action="store_true",
        help="In drain mode, exit when only backed-off tasks remain",
    )
    parser.add_argument(
        "--max-failed-attempts",
        type=int,
        default=DEFAULT_MAX_FAILED_ATTEMPTS,
        help="In drain mode, exit once a task has failed this many times (default: 5)",
    )
    return parser.parse_args(argv)


def setup_observability(settings: Settings):
    configure_logging(
        level=settings.log_level,
        structured=os.getenv("LOG_FORMAT", "text").lower() == "json",
    )
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        init_tracing(otlp_endpoint=endpoint)
        init_metrics(otlp_endpoint=endpoint)


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        settings = load_config(args.config)
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(str(e))
        return 2

    setup_observability(settings)
    settings.ensure_dirs()

    runner = OutboxRunner(settings)
    if args.drain:
        result = await runner.drain(
            skip_failed=args.skip_failed,
            max_failed_attempts=args.max_failed_attempts,
        )
        return 0 if result.complete else 1

    await runner.run()
    return 0


def cli():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
