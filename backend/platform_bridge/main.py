import logging
import os
import platform
import signal
import subprocess
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI

from platform_bridge.core.config import settings
from platform_bridge.core.middleware import apply_cors, register_exception_handlers
from platform_bridge.routes import api_router, health_router

logger = logging.getLogger(__name__)

# Track Celery subprocesses for cleanup
_celery_processes: List[subprocess.Popen] = []


def _start_celery_worker() -> Optional[subprocess.Popen]:
    """Start the webhook retry worker as a subprocess."""
    is_windows = platform.system() == "Windows"
    backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

    cmd = [
        sys.executable, "-m", "celery",
        "-A", "platform_bridge.celery_app",
        "worker",
        f"--pool={'solo' if is_windows else 'prefork'}",
        "-Q", "webhooks,default",
        "-l", "info",
        "--concurrency=2",
    ]

    kwargs = {"cwd": backend_dir}
    if is_windows:
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    try:
        process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, **kwargs)
    except OSError as e:
        logger.error("celery worker failed to start error=%s", e)
        return None
    logger.info("celery worker started pid=%s", process.pid)
    return process


def _stop_celery_processes() -> None:
    for process in _celery_processes:
        if process and process.poll() is None:
            logger.info("stopping celery process pid=%s", process.pid)
            if platform.system() == "Windows":
                process.terminate()
            else:
                process.send_signal(signal.SIGTERM)
            try:
                process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                logger.warning("force killing celery process pid=%s", process.pid)
                process.kill()
    _celery_processes.clear()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan event handler.

    On startup: optionally start the Celery worker (AUTO_START_CELERY).
    On shutdown: stop it again.
    """
    logger.info("=== Platform Bridge Starting ===")

    if settings.auto_start_celery:
        worker_process = _start_celery_worker()
        if worker_process:
            _celery_processes.append(worker_process)
    else:
        logger.info("Celery auto-start disabled (AUTO_START_CELERY=false)")

    logger.info("=== Platform Bridge Ready ===")

    yield

    logger.info("=== Platform Bridge Shutting Down ===")
    if _celery_processes:
        _stop_celery_processes()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    app = FastAPI(title="Platform Bridge", lifespan=lifespan)
    apply_cors(app)
    register_exception_handlers(app)
    app.include_router(health_router)
    app.include_router(api_router)
    return app


logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s:%(message)s")

app = create_app()
