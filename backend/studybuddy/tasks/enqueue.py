"""
Centralized task enqueue helper.

Services enqueue by task name so they never import task modules (which in
turn import services).
"""

import logging
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


def enqueue_task(
    task_name: str,
    args: Optional[Tuple[Any, ...]] = None,
    kwargs: Optional[Dict[str, Any]] = None,
    **options: Any,
) -> Any:
    """
    Enqueue a Celery task by its registered name.

    Args:
        task_name: Fully qualified task name
        args: Positional arguments for the task
        kwargs: Keyword arguments for the task
        **options: Additional Celery apply_async options (countdown, eta, etc.)

    Returns:
        AsyncResult from Celery
    """
    from .celery_app import celery_app

    # Registration happens through conf.imports; load them when running in-process
    celery_app.loader.import_default_modules()
    task = celery_app.tasks[task_name]
    return task.apply_async(args=args or (), kwargs=kwargs or {}, **options)
