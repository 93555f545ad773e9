# backend/studybuddy/services/notification_service.py
"""
Notification sink for session lifecycle events.

``publish`` hands the event to a Celery task and returns immediately. Any
failure (broker down, serialization) is logged and swallowed; callers never
see notification errors.
"""

import logging
from typing import Any, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

DELIVER_TASK = "studybuddy.tasks.notification_tasks.deliver_notification"

SESSION_BOOKED = "session_booked"
SESSION_COMPLETED = "session_completed"
SESSION_CANCELLED = "session_cancelled"


class NotificationService:
    """Fire-and-forget publisher."""

    def __init__(self, enqueue: Optional[Callable[..., Any]] = None):
        if enqueue is None:
            from ..tasks.enqueue import enqueue_task

            enqueue = enqueue_task
        self._enqueue = enqueue
        self.logger = logging.getLogger(self.__class__.__name__)

    def publish(self, event_type: str, user_ids: Iterable[str], payload: Dict[str, Any]) -> bool:
        """Enqueue delivery. Returns False (after logging) if it could not be enqueued."""
        recipients = [uid for uid in user_ids if uid]
        try:
            self._enqueue(DELIVER_TASK, args=(event_type, recipients, payload))
            return True
        except Exception as e:
            self.logger.warning(
                f"Failed to publish {event_type} notification: {str(e)}",
                extra={"event_type": event_type, "user_ids": recipients},
            )
            return False
