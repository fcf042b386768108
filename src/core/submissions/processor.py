"""
Submission Processor

Background worker that drives the queue on a fixed interval: each tick
claims a bounded batch of ready entries and dispatches them through a
bounded-concurrency pool, so one slow recipient never holds up the rest.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from .config import MIN_LOOP_INTERVAL
from .dispatcher import DeliveryDispatcher
from .models import DeliveryOutcome, QueueEntry, SubmissionStatus
from .scheduler import QueueScheduler
from .store import SubmissionStore

logger = logging.getLogger(__name__)


class SubmissionProcessor:
    """
    Processes the submission queue.

    Features:
    - Polls the queue every `interval` seconds (minimum 5s)
    - Claims at most `batch_size` entries per tick
    - Runs at most `max_concurrency` dispatches at once
    - stop() lets the in-flight batch finish before returning
    """

    def __init__(
        self,
        scheduler: QueueScheduler,
        dispatcher: DeliveryDispatcher,
        store: SubmissionStore,
        interval: float = 30.0,
        batch_size: int = 20,
        max_concurrency: int = 5,
    ):
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self.store = store
        self.interval = max(MIN_LOOP_INTERVAL, interval)
        self.batch_size = batch_size
        self.max_concurrency = max(1, max_concurrency)
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._batch_lock = asyncio.Lock()
        self._stats: Dict[str, int] = {"batches": 0, "dispatched": 0, "errors": 0}

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the processor. Does nothing if already running."""
        if self._running:
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"SubmissionProcessor started (interval={self.interval}s, "
            f"batch_size={self.batch_size}, max_concurrency={self.max_concurrency})"
        )

    async def stop(self):
        """Stop the processor after the in-flight batch completes."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("SubmissionProcessor stopped")

    async def _run(self):
        """Main processing loop."""
        while self._running:
            try:
                await self.process_batch()
            except Exception as e:
                self._stats["errors"] += 1
                logger.error(f"SubmissionProcessor error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def process_batch(self) -> int:
        """
        Claim and dispatch one batch.

        Safe to call while the loop is running; batches never overlap within
        a process. Returns the number of entries dispatched.
        """
        async with self._batch_lock:
            entries = await self.scheduler.dequeue_ready(self.batch_size)
            if not entries:
                return 0

            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def run(entry: QueueEntry):
                async with semaphore:
                    await self._process_entry(entry)

            results = await asyncio.gather(*(run(entry) for entry in entries), return_exceptions=True)
            for entry, result in zip(entries, results):
                if isinstance(result, Exception):
                    self._stats["errors"] += 1
                    logger.error(
                        f"Processing queue entry {entry.submission_id} failed: {result}",
                        exc_info=result,
                    )
                    await self._release(entry.submission_id)

            self._stats["batches"] += 1
            self._stats["dispatched"] += len(entries)
            logger.debug(f"Processed batch of {len(entries)} submissions")
            return len(entries)

    async def _process_entry(self, entry: QueueEntry) -> Optional[DeliveryOutcome]:
        record = await self.store.get(entry.submission_id)
        if record is None or record.status != SubmissionStatus.PENDING:
            # Entry without a pending record; drop it so the queue stays 1:1
            logger.warning(
                f"Queue entry {entry.submission_id} has no pending record "
                f"({record.status.value if record else 'missing'}), removing"
            )
            await self.scheduler.record_outcome(
                entry.submission_id, DeliveryOutcome.permanent("orphaned queue entry")
            )
            return None

        outcome = await self.dispatcher.dispatch(record)
        await self.scheduler.record_outcome(record.id, outcome)
        return outcome

    async def _release(self, submission_id: str) -> None:
        try:
            await self.scheduler.release_claim(submission_id)
        except Exception as e:
            logger.error(f"Could not release claim on {submission_id}: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "interval": self.interval,
            "batch_size": self.batch_size,
            "max_concurrency": self.max_concurrency,
            **self._stats,
        }
