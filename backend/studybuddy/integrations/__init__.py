"""External service integrations for the StudyBuddy platform."""

from .zoom_client import FakeZoomClient, ZoomClient, ZoomClientError, build_zoom_client

__all__ = ["FakeZoomClient", "ZoomClient", "ZoomClientError", "build_zoom_client"]
