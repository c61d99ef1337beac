# app/dependencies.py

"""
Service wiring for FastAPI.

Builds one ReconciliationService per process from settings. Routes get it
through Depends(get_reconciliation_service), so tests can override it.
"""

from functools import lru_cache
import logging

from app.config import get_settings
from app.core.session import ReconciliationService
from app.database import (
    InMemoryDocumentStore,
    InMemoryResultSink,
    SupabaseDocumentStore,
    SupabaseResultSink,
    get_supabase_admin,
)
from app.integrations.notifications import LogNotifier, WebhookNotifier

logger = logging.getLogger(__name__)


@lru_cache()
def get_reconciliation_service() -> ReconciliationService:
    settings = get_settings()

    if settings.supabase_url and settings.supabase_service_role_key:
        client = get_supabase_admin()
        documents = SupabaseDocumentStore(client)
        results = SupabaseResultSink(client)
    else:
        logger.warning("Supabase not configured, using in-memory stores")
        documents = InMemoryDocumentStore()
        results = InMemoryResultSink()

    if settings.notification_webhook_url:
        notifier = WebhookNotifier(
            settings.notification_webhook_url,
            timeout=settings.notification_timeout_seconds,
        )
    else:
        notifier = LogNotifier()

    return ReconciliationService(
        documents=documents,
        results=results,
        config=settings.matching_config(),
        notifier=notifier,
    )
