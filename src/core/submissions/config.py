"""
Submission Pipeline Configuration

Settings for the processing loop, backoff policy, monitoring thresholds and
delivery credentials, read from the environment (.env supported).
"""

import logging
import os
from typing import Callable, List, Optional, TypeVar

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Loop intervals below this are raised to it
MIN_LOOP_INTERVAL = 5.0

# SMTP sessions must finish inside this share of the dispatch timeout
SMTP_TIMEOUT_SHARE = 0.8


class ConfigurationError(ValueError):
    """Raised when the pipeline configuration has ERROR-level issues."""

    def __init__(self, issues: List[str]):
        self.issues = issues
        super().__init__("; ".join(issues))


def _as_bool(raw: str) -> bool:
    return raw.lower() in ("true", "1", "yes")


def _setting(value: Optional[T], name: str, default: str, cast: Callable[[str], T]) -> T:
    """Explicit value, else the environment variable. The environment is only read when needed."""
    if value is not None:
        return value
    return cast(os.getenv(name, default))


class PipelineConfig:
    """
    Configuration for the delivery pipeline.

    Every value can be passed explicitly; anything left as None falls back to
    the corresponding environment variable.
    """

    def __init__(
        self,
        process_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        dispatch_timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
        max_delay_ms: Optional[int] = None,
        backoff_multiplier: Optional[float] = None,
        monitoring_interval: Optional[float] = None,
        confirmation_window_hours: Optional[float] = None,
        stall_threshold: Optional[float] = None,
        failure_window: Optional[float] = None,
        failure_rate_threshold: Optional[float] = None,
        failure_min_sample: Optional[int] = None,
        auto_retry: Optional[bool] = None,
        max_auto_retries: Optional[int] = None,
        alert_cooldown: Optional[float] = None,
        signing_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        webhook_insecure: Optional[bool] = None,
        admin_api_key: Optional[str] = None,
        recipients_file: Optional[str] = None,
        smtp_timeout: Optional[float] = None,
        processor_enabled: Optional[bool] = None,
        monitoring_enabled: Optional[bool] = None,
    ):
        # Processing loop
        self.process_interval = _setting(process_interval, "SUBMISSION_PROCESS_INTERVAL", "30", float)
        self.batch_size = _setting(batch_size, "SUBMISSION_BATCH_SIZE", "20", int)
        self.max_concurrency = _setting(max_concurrency, "SUBMISSION_MAX_CONCURRENCY", "5", int)
        self.dispatch_timeout = _setting(dispatch_timeout, "SUBMISSION_DISPATCH_TIMEOUT", "30", float)

        # Backoff policy
        self.max_attempts = _setting(max_attempts, "SUBMISSION_MAX_ATTEMPTS", "5", int)
        self.base_delay_ms = _setting(base_delay_ms, "SUBMISSION_BASE_DELAY_MS", "1000", int)
        self.max_delay_ms = _setting(max_delay_ms, "SUBMISSION_MAX_DELAY_MS", "3600000", int)
        self.backoff_multiplier = _setting(backoff_multiplier, "SUBMISSION_BACKOFF_MULTIPLIER", "2.0", float)

        # Monitoring
        self.monitoring_interval = _setting(monitoring_interval, "MONITORING_INTERVAL", "60", float)
        self.confirmation_window_hours = _setting(
            confirmation_window_hours, "MONITORING_CONFIRMATION_WINDOW_HOURS", "24", float
        )
        self.stall_threshold = _setting(stall_threshold, "MONITORING_STALL_THRESHOLD", "600", float)
        self.failure_window = _setting(failure_window, "MONITORING_FAILURE_WINDOW", "3600", float)
        self.failure_rate_threshold = _setting(
            failure_rate_threshold, "MONITORING_FAILURE_RATE_THRESHOLD", "0.25", float
        )
        self.failure_min_sample = _setting(failure_min_sample, "MONITORING_FAILURE_MIN_SAMPLE", "10", int)
        self.auto_retry = _setting(auto_retry, "MONITORING_AUTO_RETRY", "false", _as_bool)
        self.max_auto_retries = _setting(max_auto_retries, "MONITORING_MAX_AUTO_RETRIES", "3", int)
        self.alert_cooldown = _setting(alert_cooldown, "MONITORING_ALERT_COOLDOWN", "900", float)

        # Credentials
        self.signing_secret = _setting(signing_secret, "DELIVERY_SIGNING_SECRET", "", str)
        self.webhook_secret = _setting(webhook_secret, "CONFIRMATION_WEBHOOK_SECRET", "", str)
        self.webhook_insecure = _setting(webhook_insecure, "CONFIRMATION_WEBHOOK_INSECURE", "false", _as_bool)
        self.admin_api_key = _setting(admin_api_key, "ADMIN_API_KEY", "", str)

        # Collaborators
        self.recipients_file = _setting(recipients_file, "RECIPIENTS_FILE", "recipients.yaml", str)
        self.recommendation_api_url = os.getenv("RECOMMENDATION_API_URL", "http://localhost:8000")
        self.recommendation_api_key = os.getenv("RECOMMENDATION_API_KEY", "")
        self.smtp_host = os.getenv("SMTP_HOST", "localhost")
        self.smtp_port = int(os.getenv("SMTP_PORT", "25"))
        self.smtp_username = os.getenv("SMTP_USERNAME", "")
        self.smtp_password = os.getenv("SMTP_PASSWORD", "")
        self.smtp_use_tls = _as_bool(os.getenv("SMTP_USE_TLS", "false"))
        self.smtp_sender = os.getenv("SMTP_SENDER", "noreply@recdelivery.local")
        self.smtp_timeout = _setting(smtp_timeout, "SMTP_TIMEOUT", "20", float)

        # Feature flags
        self.processor_enabled = _setting(processor_enabled, "SUBMISSION_PROCESSOR_ENABLED", "true", _as_bool)
        self.monitoring_enabled = _setting(monitoring_enabled, "MONITORING_ENABLED", "true", _as_bool)

    @property
    def effective_process_interval(self) -> float:
        return max(MIN_LOOP_INTERVAL, self.process_interval)

    @property
    def effective_smtp_timeout(self) -> float:
        """SMTP deadline, kept under the dispatch timeout so a late send cannot outlive its attempt."""
        return min(self.smtp_timeout, self.dispatch_timeout * SMTP_TIMEOUT_SHARE)

    @property
    def confirmation_window_seconds(self) -> float:
        return self.confirmation_window_hours * 3600

    def validate(self) -> List[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if self.process_interval < MIN_LOOP_INTERVAL:
            issues.append(
                f"WARNING: SUBMISSION_PROCESS_INTERVAL={self.process_interval} raised to {MIN_LOOP_INTERVAL}s"
            )
        if self.batch_size < 1:
            issues.append("ERROR: SUBMISSION_BATCH_SIZE must be at least 1")
        if self.max_concurrency < 1:
            issues.append("ERROR: SUBMISSION_MAX_CONCURRENCY must be at least 1")
        if self.backoff_multiplier < 1:
            issues.append("ERROR: SUBMISSION_BACKOFF_MULTIPLIER must be >= 1")
        if self.max_delay_ms < self.base_delay_ms:
            issues.append("ERROR: SUBMISSION_MAX_DELAY_MS is below SUBMISSION_BASE_DELAY_MS")
        if self.stall_threshold <= self.dispatch_timeout:
            issues.append(
                "ERROR: MONITORING_STALL_THRESHOLD must exceed SUBMISSION_DISPATCH_TIMEOUT"
            )
        if not 0 < self.failure_rate_threshold <= 1:
            issues.append("ERROR: MONITORING_FAILURE_RATE_THRESHOLD must be in (0, 1]")
        if self.max_auto_retries < 0:
            issues.append("ERROR: MONITORING_MAX_AUTO_RETRIES must be >= 0")
        if self.smtp_timeout > self.effective_smtp_timeout:
            issues.append(
                f"WARNING: SMTP_TIMEOUT={self.smtp_timeout} lowered to {self.effective_smtp_timeout}s "
                "to stay under SUBMISSION_DISPATCH_TIMEOUT"
            )
        if not self.webhook_secret:
            if self.webhook_insecure:
                issues.append(
                    "WARNING: CONFIRMATION_WEBHOOK_INSECURE is set, unsigned confirmation webhooks are accepted"
                )
            else:
                issues.append(
                    "WARNING: No webhook secret configured (CONFIRMATION_WEBHOOK_SECRET), "
                    "confirmation webhooks will be rejected"
                )
        if not self.signing_secret:
            issues.append("WARNING: No delivery signing secret configured (DELIVERY_SIGNING_SECRET)")
        if not self.admin_api_key:
            issues.append("WARNING: No admin API key configured (ADMIN_API_KEY)")

        return issues

    def check(self) -> List[str]:
        """
        Log warnings and raise ConfigurationError if any ERROR issue is present.

        Returns the warnings.
        """
        issues = self.validate()
        errors = [issue for issue in issues if issue.startswith("ERROR")]
        warnings = [issue for issue in issues if not issue.startswith("ERROR")]
        for warning in warnings:
            logger.warning(f"Pipeline config: {warning}")
        if errors:
            raise ConfigurationError(errors)
        return warnings
