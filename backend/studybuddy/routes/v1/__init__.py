# backend/studybuddy/routes/v1/__init__.py
"""
API v1 Routes

Versioned API endpoints under /api/v1.
"""

from . import availability, payments, sessions

__all__ = [
    "availability",
    "payments",
    "sessions",
]
