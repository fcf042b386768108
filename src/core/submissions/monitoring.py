"""
Monitoring Loop

Periodic health checks over the pipeline:

- stale submissions: delivered but unconfirmed past the confirmation window
- stalled queue: entries neither rescheduled nor touched past the stall threshold
- failure rate: share of failed outcomes in the recent window

Findings become telemetry alerts. Repeats of the same alert inside the
cooldown are suppressed and counted. Records are only changed when
auto_retry is enabled, and then only API deliveries are re-sent, at most
max_auto_retries times per record. Email and manual deliveries cannot be
told apart from a slow reply, so they only raise the alert.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from .collaborators import TelemetrySink
from .config import MIN_LOOP_INTERVAL, PipelineConfig
from .errors import InvalidStateTransitionError, SubmissionNotFoundError
from .models import AuditEntry, DeliveryMethod, SubmissionRecord, SubmissionStatus
from .notifications import NotificationBridge
from .scheduler import QueueScheduler
from .store import Clock, SubmissionStore, utcnow

logger = logging.getLogger(__name__)

MONITORING_ACTOR = "monitoring"

STALE_ALERT = "monitoring.stale_submissions"
STALLED_ALERT = "monitoring.stalled_queue"
FAILURE_RATE_ALERT = "monitoring.failure_rate"

CONFIRMATION_TIMEOUT_ACTION = "confirmation_timeout"

# Per-university performance: universities with fewer submissions are not rated
PERFORMANCE_MIN_SUBMISSIONS = 5
DOWN_SUCCESS_RATE = 50.0
DOWN_FAILED_COUNT = 10
DEGRADED_SUCCESS_RATE = 80.0
DEGRADED_CONFIRM_SECONDS = 300.0


@dataclass
class MonitoringFinding:
    """Result of one check that found a problem."""
    alert: str
    severity: str
    message: str
    count: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert": self.alert,
            "severity": self.severity,
            "message": self.message,
            "count": self.count,
            "details": self.details,
        }


class AlertAggregator:
    """Rate-limits alerts per key with a cooldown."""

    def __init__(self, cooldown: float, now: Optional[Clock] = None):
        self.cooldown = timedelta(seconds=cooldown)
        self._now = now or utcnow
        self._last_emitted: Dict[str, datetime] = {}
        self._suppressed: Dict[str, int] = {}

    def should_emit(self, key: str) -> Tuple[bool, int]:
        """
        Decide whether an alert goes out now.

        Returns (emit, suppressed) where suppressed is the number of
        occurrences swallowed since the previous emission.
        """
        now = self._now()
        last = self._last_emitted.get(key)
        if last is not None and now - last < self.cooldown:
            self._suppressed[key] = self._suppressed.get(key, 0) + 1
            return False, self._suppressed[key]

        suppressed = self._suppressed.pop(key, 0)
        self._last_emitted[key] = now
        return True, suppressed

    def suppressed_count(self, key: str) -> int:
        return self._suppressed.get(key, 0)


class MonitoringLoop:
    """Independent watchdog over the delivery pipeline."""

    def __init__(
        self,
        store: SubmissionStore,
        scheduler: QueueScheduler,
        telemetry: Optional[TelemetrySink] = None,
        config: Optional[PipelineConfig] = None,
        notifications: Optional[NotificationBridge] = None,
        now: Optional[Clock] = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.telemetry = telemetry
        self.config = config or PipelineConfig()
        self.notifications = notifications
        self._now = now or utcnow
        self.aggregator = AlertAggregator(self.config.alert_cooldown, now=self._now)
        self.interval = max(MIN_LOOP_INTERVAL, self.config.monitoring_interval)

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._last_findings: List[MonitoringFinding] = []
        self._last_run_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(f"MonitoringLoop started (interval={self.interval}s, auto_retry={self.config.auto_retry})")

    async def stop(self):
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("MonitoringLoop stopped")

    async def _run(self):
        while self._running:
            try:
                await self.run_checks()
            except Exception as e:
                logger.error(f"MonitoringLoop error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def run_checks(self) -> List[MonitoringFinding]:
        """Run every check once and emit alerts for what they find."""
        findings: List[MonitoringFinding] = []

        for check in (self.check_stale_submissions, self.check_stalled_queue, self.check_failure_rate):
            try:
                finding = await check()
            except Exception as e:
                logger.error(f"Monitoring check {check.__name__} failed: {e}", exc_info=True)
                continue
            if finding is not None:
                findings.append(finding)
                self._alert(finding)

        self._last_findings = findings
        self._last_run_at = self._now()
        return findings

    async def check_stale_submissions(self) -> Optional[MonitoringFinding]:
        cutoff = self._now() - timedelta(seconds=self.config.confirmation_window_seconds)
        stale = await self.store.list_stale_submitted(cutoff)
        if not stale:
            return None

        requeued: List[str] = []
        capped: List[str] = []
        if self.config.auto_retry:
            for record in stale:
                if record.delivery_method != DeliveryMethod.API:
                    continue
                timeouts = await self.store.count_audit(record.id, CONFIRMATION_TIMEOUT_ACTION)
                if timeouts >= self.config.max_auto_retries:
                    capped.append(record.id)
                    continue
                if await self._requeue_stale(record):
                    requeued.append(record.id)

        return MonitoringFinding(
            alert=STALE_ALERT,
            severity="warning",
            message=(
                f"{len(stale)} submissions unconfirmed for more than "
                f"{self.config.confirmation_window_hours:g}h"
            ),
            count=len(stale),
            details={
                "submission_ids": [r.id for r in stale[:50]],
                "auto_retry": self.config.auto_retry,
                "requeued": requeued[:50],
                "retry_limit_reached": capped[:50],
            },
        )

    async def check_stalled_queue(self) -> Optional[MonitoringFinding]:
        cutoff = self._now() - timedelta(seconds=self.config.stall_threshold)
        stalled = await self.scheduler.list_stalled(cutoff)
        if not stalled:
            return None

        released = 0
        if self.config.auto_retry:
            for entry in stalled:
                if entry.claimed and await self.scheduler.release_claim(entry.submission_id):
                    released += 1

        return MonitoringFinding(
            alert=STALLED_ALERT,
            severity="critical",
            message=f"{len(stalled)} queue entries stalled for more than {self.config.stall_threshold:g}s",
            count=len(stalled),
            details={
                "submission_ids": [e.submission_id for e in stalled[:50]],
                "claimed": sum(1 for e in stalled if e.claimed),
                "released": released,
            },
        )

    async def check_failure_rate(self) -> Optional[MonitoringFinding]:
        since = self._now() - timedelta(seconds=self.config.failure_window)
        counts = await self.store.count_outcomes_since(since)

        failed = counts.get(SubmissionStatus.FAILED.value, 0)
        total = (
            failed
            + counts.get(SubmissionStatus.SUBMITTED.value, 0)
            + counts.get(SubmissionStatus.CONFIRMED.value, 0)
        )
        if total < self.config.failure_min_sample:
            return None

        rate = failed / total
        if rate <= self.config.failure_rate_threshold:
            return None

        return MonitoringFinding(
            alert=FAILURE_RATE_ALERT,
            severity="critical",
            message=(
                f"Failure rate {rate:.0%} over the last {self.config.failure_window:g}s "
                f"exceeds {self.config.failure_rate_threshold:.0%}"
            ),
            count=failed,
            details={"failed": failed, "total": total, "rate": round(rate, 4)},
        )

    async def _requeue_stale(self, record: SubmissionRecord) -> bool:
        submission_id = record.id
        window = self.config.confirmation_window_hours
        audit = AuditEntry(
            submission_id=submission_id,
            action=CONFIRMATION_TIMEOUT_ACTION,
            actor=MONITORING_ACTOR,
            from_status=SubmissionStatus.SUBMITTED,
            to_status=SubmissionStatus.FAILED,
            details={"confirmation_window_hours": window},
            created_at=self._now(),
        )
        failed = await self.store.mark_failed(
            submission_id,
            f"No confirmation received within {window:g}h",
            expected_status=SubmissionStatus.SUBMITTED,
            audit=audit,
        )
        if failed is None:
            return False
        if self.notifications:
            await self.notifications.notify(failed, SubmissionStatus.SUBMITTED)

        try:
            await self.scheduler.retry(submission_id, MONITORING_ACTOR)
        except (InvalidStateTransitionError, SubmissionNotFoundError) as e:
            logger.info(f"Auto-retry of {submission_id} skipped: {e}", extra=record.log_context())
            return False
        return True

    def _alert(self, finding: MonitoringFinding) -> None:
        emit, suppressed = self.aggregator.should_emit(finding.alert)
        if not emit:
            logger.debug(f"Alert {finding.alert} suppressed ({suppressed} since last emission)")
            return

        logger.warning(f"Monitoring alert {finding.alert}: {finding.message}")
        if self.telemetry is None:
            return
        payload = finding.to_dict()
        payload["suppressed_since_last"] = suppressed
        try:
            self.telemetry.record_event(finding.alert, payload)
        except Exception as e:
            logger.warning(f"Telemetry sink failed for {finding.alert}: {e}")

    async def get_university_performance(self, window_hours: float = 24) -> List[Dict[str, Any]]:
        """
        Delivery performance per university over the last `window_hours`.

        success_rate is the confirmed share in percent; avg_confirmation_seconds
        runs from submission to confirmation. Status is "down" below 50% or with
        10+ failures, "degraded" below 80% or when confirmations average over
        five minutes, otherwise "healthy". Universities with fewer than five
        submissions in the window are left out.
        """
        since = self._now() - timedelta(hours=window_hours)
        records = await self.store.list_created_since(since)

        by_university: Dict[str, List[SubmissionRecord]] = {}
        for record in records:
            by_university.setdefault(record.university_id, []).append(record)

        report = []
        for university_id, group in by_university.items():
            total = len(group)
            if total < PERFORMANCE_MIN_SUBMISSIONS:
                continue
            confirmed = [r for r in group if r.status == SubmissionStatus.CONFIRMED]
            failed = sum(1 for r in group if r.status == SubmissionStatus.FAILED)
            success_rate = round(len(confirmed) / total * 100, 2)

            durations = [
                (r.confirmed_at - r.submitted_at).total_seconds()
                for r in confirmed
                if r.submitted_at and r.confirmed_at
            ]
            avg_seconds = round(sum(durations) / len(durations), 1) if durations else None

            if success_rate < DOWN_SUCCESS_RATE or failed >= DOWN_FAILED_COUNT:
                status = "down"
            elif success_rate < DEGRADED_SUCCESS_RATE or (avg_seconds or 0) > DEGRADED_CONFIRM_SECONDS:
                status = "degraded"
            else:
                status = "healthy"

            report.append({
                "university_id": university_id,
                "total": total,
                "confirmed": len(confirmed),
                "failed": failed,
                "success_rate": success_rate,
                "avg_confirmation_seconds": avg_seconds,
                "status": status,
            })

        report.sort(key=lambda item: (item["success_rate"], item["university_id"]))
        return report

    async def get_health_report(self) -> Dict[str, Any]:
        """Latest findings, current queue occupancy and per-university performance."""
        queue = await self.scheduler.queue_status()
        universities = await self.get_university_performance()
        critical = any(f.severity == "critical" for f in self._last_findings)
        status = "critical" if critical else ("warning" if self._last_findings else "healthy")
        return {
            "status": status,
            "running": self._running,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "findings": [f.to_dict() for f in self._last_findings],
            "queue": queue.model_dump(),
            "universities": universities,
        }
