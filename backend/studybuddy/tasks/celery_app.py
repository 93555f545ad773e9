# backend/studybuddy/tasks/celery_app.py
"""
Celery application configuration for StudyBuddy.

This module sets up the Celery app with Redis as the broker and backend,
configures task serialization, routing, and the periodic beat schedule.
"""

import logging
import os
from typing import Any, Dict, Type, cast

from celery import Celery, Task
from celery.schedules import crontab
from celery.signals import setup_logging

from ..core.config import settings

logger = logging.getLogger(__name__)

TASK_MODULES = (
    "studybuddy.tasks.payment_tasks",
    "studybuddy.tasks.notification_tasks",
)


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    """Periodic jobs for the booking core."""
    return {
        "process-pending-transfers": {
            "task": "studybuddy.tasks.payment_tasks.process_pending_transfers",
            "schedule": crontab(minute="*/15"),
            "options": {"queue": "payments"},
        },
        "auto-confirm-sessions": {
            "task": "studybuddy.tasks.payment_tasks.auto_confirm_sessions",
            "schedule": crontab(minute="5,35"),
            "options": {"queue": "payments"},
        },
        "retry-deferred-settlements": {
            "task": "studybuddy.tasks.payment_tasks.retry_deferred_settlements",
            "schedule": crontab(minute="*/30"),
            "options": {"queue": "payments"},
        },
    }


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Returns:
        Celery: Configured Celery application instance
    """
    # Priority: CELERY_BROKER_URL -> REDIS_URL -> settings.redis_url
    broker_url = os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL") or settings.redis_url
    # Ensure Redis URL includes database number
    if not any(broker_url.endswith(f"/{i}") for i in range(16)):
        broker_url = f"{broker_url}/0"

    result_backend = os.getenv("CELERY_RESULT_BACKEND") or broker_url

    celery_app = Celery("studybuddy", broker=broker_url, backend=result_backend)

    celery_app.conf.update(
        {
            # Task settings
            "task_serializer": "json",
            "accept_content": ["json"],
            "result_serializer": "json",
            "timezone": "UTC",
            "enable_utc": True,
            # Worker settings
            "worker_prefetch_multiplier": 4,
            "worker_max_tasks_per_child": 1000,
            # Task execution settings
            "task_soft_time_limit": 300,  # 5 minutes soft limit
            "task_time_limit": 600,  # 10 minutes hard limit
            "task_acks_late": True,
            "task_reject_on_worker_lost": True,
            "task_default_retry_delay": 60,
            "worker_hijack_root_logger": False,
            "task_always_eager": settings.celery_task_always_eager,
            "task_eager_propagates": False,
            "broker_transport_options": {
                "visibility_timeout": 3600,
                "polling_interval": 10.0,
            },
        }
    )

    # Force import of task modules so tasks are registered
    celery_app.conf.imports = tuple(set(celery_app.conf.imports or ()) | set(TASK_MODULES))

    celery_app.conf.task_routes = {
        "studybuddy.tasks.payment_tasks.*": {"queue": "payments"},  # Money-moving tasks
        "studybuddy.tasks.notification_tasks.*": {"queue": "notifications"},
    }

    celery_app.conf.beat_schedule = get_beat_schedule()

    return celery_app


# Disable Celery's default logging configuration
@setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Configure logging to integrate with the application's logging setup."""
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


celery_app = create_celery_app()


class BaseTask(Task):  # type: ignore[misc]
    """Base task with logging of failures, retries and completions."""

    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logger.error(
            f"Task {self.name}[{task_id}] failed with exception: {exc}",
            exc_info=True,
            extra={
                "task_id": task_id,
                "task_name": self.name,
                "task_args": str(args),
                "task_kwargs": str(kwargs),
            },
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logger.warning(
            f"Task {self.name}[{task_id}] retry {self.request.retries} due to: {exc}",
            extra={
                "task_id": task_id,
                "task_name": self.name,
                "retry_count": self.request.retries,
            },
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval: Any, task_id: str, args: Any, kwargs: Any) -> None:
        logger.info(
            f"Task {self.name}[{task_id}] completed successfully",
            extra={"task_id": task_id, "task_name": self.name},
        )
        super().on_success(retval, task_id, args, kwargs)


# Register BaseTask as default task base for the app
celery_app.Task = cast(Type[Task], BaseTask)
