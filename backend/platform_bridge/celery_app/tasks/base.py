"""
Base task class with common functionality.

Provides:
- Standardized success / retry / failure logging
- Retry backoff defaults
- run_async for calling the async services from a worker
"""
import asyncio
import logging

from celery import Task

logger = logging.getLogger(__name__)


class BaseTask(Task):
    """Base task with common functionality for all workers."""

    abstract = True

    retry_backoff = True
    retry_backoff_max = 300  # 5 minutes max backoff
    retry_jitter = True
    max_retries = 5

    track_started = True

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """Called when task fails after all retries exhausted."""
        logger.error("task failed name=%s id=%s error=%s", self.name, task_id, exc)

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        logger.warning(
            "task retrying name=%s id=%s attempt=%s error=%s",
            self.name, task_id, self.request.retries, exc,
        )

    def on_success(self, retval, task_id, args, kwargs):
        logger.info("task succeeded name=%s id=%s", self.name, task_id)


def run_async(coro):
    """
    Run async function in sync context.

    Each call creates a new event loop to avoid conflicts.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()
