"""
Notification Bridge

Best-effort push of submission status changes to the owner's live sessions.
There is no durable queue: a push that fails is logged and dropped, and the
client can always poll the submission endpoints.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..observability import record_counter
from .collaborators import SessionRegistry
from .models import SubmissionRecord, SubmissionStatus

logger = logging.getLogger(__name__)

EVENT_TYPE = "submission.status"


def build_status_event(
    record: SubmissionRecord,
    previous_status: Optional[SubmissionStatus] = None,
) -> Dict[str, Any]:
    """Event payload for one status change of one submission."""
    return {
        "type": EVENT_TYPE,
        "event_key": f"{record.id}:{record.status.value}",
        "submission_id": record.id,
        "recommendation_id": record.recommendation_id,
        "university_id": record.university_id,
        "status": record.status.value,
        "previous_status": previous_status.value if previous_status else None,
        "external_reference": record.external_reference,
        "error_message": record.error_message,
        "retry_count": record.retry_count,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class NotificationBridge:
    """Forwards status changes to the session registry."""

    def __init__(self, sessions: Optional[SessionRegistry] = None):
        self.sessions = sessions

    async def notify(
        self,
        record: SubmissionRecord,
        previous_status: Optional[SubmissionStatus] = None,
    ) -> bool:
        """
        Push a status event to the record's owner.

        Returns True if at least one live session received it. Never raises.
        """
        if self.sessions is None:
            return False
        if not record.owner_id:
            logger.debug(f"Submission {record.id} has no owner, notification skipped")
            return False

        event = build_status_event(record, previous_status)
        try:
            delivered = await self.sessions.push(record.owner_id, event)
        except Exception as e:
            logger.warning(f"Notification for {event['event_key']} failed: {e}")
            return False

        if delivered:
            record_counter("notifications_pushed_total", attributes={"status": record.status.value})
        logger.debug(f"Notified {record.owner_id} of {event['event_key']} ({delivered} sessions)")
        return bool(delivered)
