"""
Submission Pipeline

Wires the pipeline components together. Every collaborator is passed in
explicitly; `from_environment()` builds the production set from
configuration.

Usage:
    pipeline = await SubmissionPipeline.from_environment(sessions=sse_manager)
    await pipeline.start()
    ...
    await pipeline.close()
"""

import logging
from typing import Optional

import httpx

from ..database import DatabaseAdapter, create_database, init_schema
from .collaborators import (
    HttpRecommendationProvider,
    Notifier,
    ObservabilityTelemetrySink,
    RecipientDirectory,
    RecommendationProvider,
    SessionRegistry,
    SmtpNotifier,
    StaticRecipientDirectory,
    TelemetrySink,
)
from .config import PipelineConfig
from .confirmation import ConfirmationReceiver
from .deliverers import DelivererRegistry, default_registry
from .dispatcher import DeliveryDispatcher
from .monitoring import MonitoringLoop
from .notifications import NotificationBridge
from .processor import SubmissionProcessor
from .scheduler import QueueScheduler
from .service import SubmissionService
from .store import Clock, SubmissionStore, utcnow

logger = logging.getLogger(__name__)


class SubmissionPipeline:
    """Container for one process's pipeline components."""

    def __init__(
        self,
        db: DatabaseAdapter,
        provider: RecommendationProvider,
        directory: RecipientDirectory,
        notifier: Notifier,
        config: Optional[PipelineConfig] = None,
        telemetry: Optional[TelemetrySink] = None,
        sessions: Optional[SessionRegistry] = None,
        deliverers: Optional[DelivererRegistry] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        now: Optional[Clock] = None,
        owns_db: bool = False,
    ):
        self.db = db
        self.config = config or PipelineConfig()
        self.telemetry = telemetry
        self._owns_db = owns_db
        now = now or utcnow

        self.store = SubmissionStore(db, now=now)
        self.notifications = NotificationBridge(sessions)
        self.scheduler = QueueScheduler(
            db,
            self.store,
            config=self.config,
            telemetry=telemetry,
            notifications=self.notifications,
            now=now,
        )
        self.deliverers = deliverers or default_registry(
            notifier,
            signing_secret=self.config.signing_secret,
            timeout=self.config.dispatch_timeout,
            client=http_client,
        )
        self.dispatcher = DeliveryDispatcher(
            self.store,
            self.deliverers,
            provider,
            directory,
            notifications=self.notifications,
            dispatch_timeout=self.config.dispatch_timeout,
        )
        self.processor = SubmissionProcessor(
            self.scheduler,
            self.dispatcher,
            self.store,
            interval=self.config.effective_process_interval,
            batch_size=self.config.batch_size,
            max_concurrency=self.config.max_concurrency,
        )
        self.confirmations = ConfirmationReceiver(self.store, notifications=self.notifications, now=now)
        self.monitoring = MonitoringLoop(
            self.store,
            self.scheduler,
            telemetry=telemetry,
            config=self.config,
            notifications=self.notifications,
            now=now,
        )
        self.service = SubmissionService(
            self.store,
            provider,
            directory,
            config=self.config,
            notifications=self.notifications,
        )

    @classmethod
    async def from_environment(
        cls,
        config: Optional[PipelineConfig] = None,
        sessions: Optional[SessionRegistry] = None,
        db: Optional[DatabaseAdapter] = None,
    ) -> "SubmissionPipeline":
        """Build the production pipeline: database, HTTP provider, YAML directory, SMTP."""
        config = config or PipelineConfig()
        config.check()

        owns_db = db is None
        if db is None:
            db = await create_database()
        await init_schema(db)

        return cls(
            db=db,
            provider=HttpRecommendationProvider(
                config.recommendation_api_url, api_key=config.recommendation_api_key
            ),
            directory=StaticRecipientDirectory.from_yaml(config.recipients_file),
            notifier=SmtpNotifier(
                host=config.smtp_host,
                port=config.smtp_port,
                sender=config.smtp_sender,
                username=config.smtp_username,
                password=config.smtp_password,
                use_tls=config.smtp_use_tls,
                timeout=config.effective_smtp_timeout,
            ),
            config=config,
            telemetry=ObservabilityTelemetrySink(),
            sessions=sessions,
            owns_db=owns_db,
        )

    async def start(self):
        """Start the background loops enabled in configuration."""
        if self.config.processor_enabled:
            await self.processor.start()
        else:
            logger.info("Submission processor disabled: SUBMISSION_PROCESSOR_ENABLED=false")

        if self.config.monitoring_enabled:
            await self.monitoring.start()
        else:
            logger.info("Monitoring loop disabled: MONITORING_ENABLED=false")

    async def stop(self):
        await self.processor.stop()
        await self.monitoring.stop()

    async def close(self):
        await self.stop()
        if self._owns_db:
            await self.db.disconnect()
