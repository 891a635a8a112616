"""
Celery tasks package.
Exports all tasks for convenient imports.
"""
from platform_bridge.celery_app.tasks.webhooks import reprocess_webhook_event, record_compliance_request

__all__ = [
    "reprocess_webhook_event",
    "record_compliance_request",
]
