"""
Submission Pipeline Runner

Standalone script to run the processing and monitoring loops as a
background service, separate from the API container.

Usage:
    python -m src.core.submissions.runner

Environment Variables:
    DATABASE_BACKEND: sqlite or postgresql (default: sqlite)
    DATABASE_URL: PostgreSQL connection string (required for postgresql)
    SUBMISSION_PROCESS_INTERVAL: Seconds between batches (default: 30, minimum 5)
    SUBMISSION_BATCH_SIZE: Entries claimed per batch (default: 20)
    SUBMISSION_MAX_CONCURRENCY: Parallel dispatches (default: 5)
    MONITORING_INTERVAL: Seconds between health checks (default: 60)
    LOG_LEVEL: Logging level (default: INFO)
    LOG_FORMAT: json or text (default: json)
"""

import os
import sys
import signal
import asyncio
import logging
from typing import Optional

from ..database import DatabaseBackend, DatabaseConfig
from ..observability import configure_logging
from .pipeline import SubmissionPipeline

logger = logging.getLogger(__name__)


class PipelineRunner:
    """
    Manages the pipeline lifecycle with graceful shutdown.
    """

    def __init__(self):
        self.pipeline: Optional[SubmissionPipeline] = None
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
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def run(self):
        """Run the pipeline loops until shutdown is requested."""
        self._setup_signal_handlers()

        self.pipeline = await SubmissionPipeline.from_environment()
        config = self.pipeline.config

        logger.info("Starting Submission Pipeline Runner")
        logger.info(f"  Process interval: {config.effective_process_interval}s")
        logger.info(f"  Batch size: {config.batch_size}")
        logger.info(f"  Max concurrency: {config.max_concurrency}")
        logger.info(f"  Max attempts: {config.max_attempts}")

        try:
            await self.pipeline.start()
            logger.info("Submission Pipeline is running")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Submission Pipeline error: {e}", exc_info=True)
            raise
        finally:
            logger.info("Stopping Submission Pipeline")
            await self.pipeline.close()
            logger.info("Submission Pipeline stopped")

    async def health_check(self) -> dict:
        """Return health status for monitoring."""
        running = bool(self.pipeline and self.pipeline.processor.running)
        return {
            "status": "healthy" if running else "unhealthy",
            "running": running,
            "monitoring": bool(self.pipeline and self.pipeline.monitoring.running),
            "shutdown_requested": self._shutdown_requested
        }


async def main():
    """Main entry point."""
    configure_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        structured=os.getenv("LOG_FORMAT", "json").lower() == "json",
    )

    db_config = DatabaseConfig()
    if db_config.backend == DatabaseBackend.POSTGRESQL and not os.getenv("DATABASE_URL"):
        logger.error("DATABASE_URL environment variable is required")
        sys.exit(1)

    runner = PipelineRunner()
    await runner.run()


if __name__ == "__main__":
    asyncio.run(main())
