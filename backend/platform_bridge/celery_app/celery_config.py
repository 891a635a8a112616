"""
Celery application configuration.
Configures the Redis broker, the webhooks queue and retry policies.

Webhook deliveries are acknowledged to the platform immediately; any
processing that fails is retried here instead of through the platform's
own webhook retry schedule.

=============================================================================
RUNNING WORKERS
=============================================================================
    celery -A platform_bridge.celery_app worker -Q webhooks,default -l info

On Windows, Celery's prefork pool doesn't work properly; add --pool=solo.

=============================================================================
ENVIRONMENT VARIABLES
=============================================================================
    CELERY_BROKER_URL / CELERY_RESULT_BACKEND: default to REDIS_URL
    WEBHOOK_RETRY_RATE_LIMIT: reprocess tasks per worker (default: 60/m)
"""
import logging
import os
import platform

from celery import Celery
from kombu import Queue

from platform_bridge.core.config import settings

logger = logging.getLogger(__name__)

# Detect Windows platform for pool configuration
IS_WINDOWS = platform.system() == "Windows"

WEBHOOK_RETRY_RATE_LIMIT = os.getenv("WEBHOOK_RETRY_RATE_LIMIT", "60/m")

celery_app = Celery(
    "platform_bridge",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "platform_bridge.celery_app.tasks.webhooks",
    ],
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    task_queues=(
        Queue("webhooks"),
        Queue("default"),
    ),
    task_default_queue="default",
    task_routes={
        "tasks.webhooks.*": {"queue": "webhooks"},
    },

    task_annotations={
        "tasks.webhooks.reprocess_webhook_event": {
            "rate_limit": WEBHOOK_RETRY_RATE_LIMIT,
        },
    },

    # Result expiration
    result_expires=3600,  # 1 hour

    # Retry settings
    task_default_retry_delay=30,
    task_max_retries=5,

    worker_pool="solo" if IS_WINDOWS else "prefork",

    # Visibility timeout (how long before unacknowledged task is redelivered)
    broker_transport_options={"visibility_timeout": 3600},

    worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
    worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s] [%(task_name)s] %(message)s",
)
