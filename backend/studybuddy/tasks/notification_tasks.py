# backend/studybuddy/tasks/notification_tasks.py
"""
Celery task delivering session notifications to the configured sink.

Delivery is fire-and-forget: a failed POST is logged and dropped, never
retried into the booking flow.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

from celery.utils.log import get_task_logger
import httpx

from ..core.config import settings
from .celery_app import celery_app

logger = get_task_logger(__name__)


@celery_app.task(
    name="studybuddy.tasks.notification_tasks.deliver_notification",
    max_retries=0,
    queue="notifications",
)
def deliver_notification(
    event_type: str, user_ids: List[str], payload: Dict[str, Any]
) -> Dict[str, Any]:
    """POST the event to ``notification_webhook_url``; log it when no sink is configured."""
    body = {
        "event_type": event_type,
        "user_ids": user_ids,
        "payload": payload,
        "sent_at": datetime.now(timezone.utc).isoformat(),
    }
    url = settings.notification_webhook_url
    if not url:
        logger.info(f"Notification {event_type} for {user_ids}: {payload}")
        return {"delivered": False, "reason": "no_sink"}

    try:
        response = httpx.post(url, json=body, timeout=settings.notification_timeout_seconds)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"Notification {event_type} delivery failed: {str(e)}")
        return {"delivered": False, "reason": str(e)}

    return {"delivered": True, "status_code": response.status_code}
