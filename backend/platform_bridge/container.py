"""
Lazy DI container — singleton access to clients, stores, and services.

Works in both FastAPI (async) and Celery (sync) contexts. Routes depend
on these getters, so tests swap them through app.dependency_overrides.
Version: 1.0.0
"""

from functools import lru_cache

from platform_bridge.clients.supabase_client import SupabaseClient
from platform_bridge.core.config import settings
from platform_bridge.db.compliance_store import ComplianceStore
from platform_bridge.db.connection_store import ConnectionStore
from platform_bridge.db.webhook_event_store import WebhookEventStore
from platform_bridge.services.compliance_service import ComplianceService
from platform_bridge.services.webhook_service import WebhookIngestionService
from platform_bridge.utils.oauth_state import OAuthStateStore
from platform_bridge.utils.webhook_signatures import build_verifier_registry


# -- Clients ---------------------------------------------------------------

@lru_cache(maxsize=1)
def get_supabase_client():
    return SupabaseClient(settings)


@lru_cache(maxsize=1)
def get_verifier_registry():
    return build_verifier_registry(settings)


@lru_cache(maxsize=1)
def get_oauth_state_store():
    return OAuthStateStore()


# -- DB Stores -------------------------------------------------------------

@lru_cache(maxsize=1)
def get_webhook_event_store():
    return WebhookEventStore(get_supabase_client())


@lru_cache(maxsize=1)
def get_compliance_store():
    return ComplianceStore(get_supabase_client())


@lru_cache(maxsize=1)
def get_connection_store():
    return ConnectionStore(get_supabase_client())


# -- Background queue ------------------------------------------------------

def _enqueue_webhook_retry(event_id: str):
    from platform_bridge.celery_app.tasks.webhooks import reprocess_webhook_event

    return reprocess_webhook_event.delay(event_id)


def _enqueue_webhook_store(record: dict):
    from platform_bridge.celery_app.tasks.webhooks import store_webhook_event

    return store_webhook_event.delay(record)


def _enqueue_compliance_record(record: dict):
    from platform_bridge.celery_app.tasks.webhooks import record_compliance_request

    return record_compliance_request.delay(record)


# -- Services --------------------------------------------------------------

@lru_cache(maxsize=1)
def get_compliance_service():
    return ComplianceService(
        store=get_compliance_store(),
        connections=get_connection_store(),
        enqueue_record=_enqueue_compliance_record,
    )


@lru_cache(maxsize=1)
def get_webhook_service():
    return WebhookIngestionService(
        verifiers=get_verifier_registry(),
        events=get_webhook_event_store(),
        compliance=get_compliance_service(),
        connections=get_connection_store(),
        enqueue_retry=_enqueue_webhook_retry,
        enqueue_store=_enqueue_webhook_store,
    )
