"""Zoom Meetings Integration Client.

Server-to-server OAuth (account credentials grant) plus the single meeting
operation the booking core needs: deleting a session's meeting when the
session is cancelled.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional, cast

import httpx
from pydantic import SecretStr

logger = logging.getLogger(__name__)


class ZoomClientError(RuntimeError):
    """Raised when the Zoom API responds with an error."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        details: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


class ZoomClient:
    """HTTP client for the Zoom REST API."""

    def __init__(
        self,
        *,
        account_id: str,
        client_id: str,
        client_secret: str | SecretStr,
        base_url: str = "https://api.zoom.us/v2",
        oauth_url: str = "https://zoom.us/oauth/token",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._account_id = account_id
        self._client_id = client_id
        self._client_secret = (
            client_secret.get_secret_value()
            if isinstance(client_secret, SecretStr)
            else client_secret
        )
        self._base_url = base_url.rstrip("/")
        self._oauth_url = oauth_url
        self._timeout = timeout
        self._transport = transport
        self._access_token: str | None = None
        self._token_refresh_at: float = 0.0

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self._timeout, transport=self._transport)

    def _fetch_access_token(self) -> tuple[str, int]:
        try:
            with self._client() as client:
                response = client.post(
                    self._oauth_url,
                    params={"grant_type": "account_credentials", "account_id": self._account_id},
                    auth=(self._client_id, self._client_secret),
                )
        except httpx.TransportError as exc:
            logger.error("Zoom OAuth unreachable: %s", exc)
            raise ZoomClientError(message=f"Zoom OAuth unreachable: {exc}") from exc

        if response.status_code >= 400:
            logger.error("Zoom OAuth error %s: %s", response.status_code, response.text[:500])
            raise ZoomClientError(
                message="Zoom OAuth token request failed",
                status_code=response.status_code,
                details={"raw": response.text[:500]},
            )
        body = response.json()
        return body["access_token"], int(body.get("expires_in", 3600))

    def _get_access_token(self) -> str:
        """Return a cached access token, refreshing before expiry."""
        now = time.monotonic()
        if self._access_token is None or now >= self._token_refresh_at:
            token, expires_in = self._fetch_access_token()
            self._access_token = token
            # Rotate five minutes early
            self._token_refresh_at = now + max(expires_in - 300, 60)
        return self._access_token

    def _request(self, method: str, path: str) -> httpx.Response:
        """Make an authenticated request to the Zoom API."""
        url = f"{self._base_url}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {self._get_access_token()}"}
        try:
            with self._client() as client:
                return client.request(method, url, headers=headers)
        except httpx.TransportError as exc:
            logger.error("Zoom API unreachable for %s %s: %s", method, path, exc)
            raise ZoomClientError(message=f"Zoom API unreachable: {exc}") from exc

    def delete_meeting(self, meeting_id: str) -> bool:
        """Delete a meeting. A meeting that no longer exists counts as deleted."""
        response = self._request("DELETE", f"meetings/{meeting_id}")
        if response.status_code == 404:
            logger.info("Zoom meeting %s already deleted", meeting_id)
            return True
        if response.status_code >= 400:
            error_body: dict[str, Any] = {}
            try:
                parsed = response.json()
                error_body = parsed if isinstance(parsed, dict) else {"raw": response.text[:500]}
            except ValueError:
                error_body = {"raw": response.text[:500]}
            logger.error(
                "Zoom API error %s deleting meeting %s: %s",
                response.status_code,
                meeting_id,
                response.text[:500],
            )
            raise ZoomClientError(
                message=cast(str, error_body.get("message") or response.text),
                status_code=response.status_code,
                details=error_body,
            )
        return True


class FakeZoomClient:
    """In-memory stub for testing/non-production environments."""

    def __init__(self, **kwargs: Any) -> None:
        self.calls: list[dict[str, Any]] = []
        self._errors: dict[str, ZoomClientError] = {}

    def set_error(self, method: str, error: ZoomClientError) -> None:
        """Inject a method-specific error for deterministic failure testing."""
        self._errors[method] = error

    def clear_errors(self) -> None:
        self._errors.clear()

    def delete_meeting(self, meeting_id: str) -> bool:
        self.calls.append({"method": "delete_meeting", "meeting_id": meeting_id})
        error = self._errors.get("delete_meeting")
        if error is not None:
            raise error
        return True


def build_zoom_client() -> ZoomClient | FakeZoomClient:
    """Real client when credentials are configured, otherwise the fake."""
    from ..core.config import settings

    if not settings.zoom_configured:
        return FakeZoomClient()
    return ZoomClient(
        account_id=settings.zoom_account_id,
        client_id=settings.zoom_client_id,
        client_secret=settings.zoom_client_secret,
        base_url=settings.zoom_api_base_url,
        oauth_url=settings.zoom_oauth_url,
    )
