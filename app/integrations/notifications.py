# app/integrations/notifications.py

"""
Notification hooks fired after every reconciliation run.

The UI / notification center consumes the counts of each action tier.
"""

import logging

import httpx

from app.models import ReconciliationCounts

logger = logging.getLogger(__name__)


class WebhookNotifier:
    """POSTs the run counts to the notification service."""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def notify(self, session_id: str, counts: ReconciliationCounts) -> None:
        payload = {
            "event": "reconciliation.completed",
            "session_id": session_id,
            **counts.model_dump(),
        }
        response = httpx.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        logger.debug("Notified %s for session %s", self.url, session_id)


class LogNotifier:
    """Logs the counts. Used when no webhook is configured."""

    def notify(self, session_id: str, counts: ReconciliationCounts) -> None:
        logger.info(
            "Session %s: %d auto-matched, %d for review, %d unmatched",
            session_id, counts.auto_matched, counts.manual_review, counts.unmatched,
        )
