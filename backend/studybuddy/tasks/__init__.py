"""
Celery tasks for StudyBuddy.

This package contains the Celery app, the payment/settlement jobs and the
notification delivery task.
"""

from .celery_app import celery_app

__all__ = ["celery_app"]
