"""
Session API client.

Forwards the finalized gesture statistics of a practice session to the
conversation backend, once, at session end.
"""

import logging
from typing import Any, Dict, Optional

import requests

import config

log = logging.getLogger(__name__)


class SessionApiError(Exception):
    """The session API rejected the request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SessionApiClient:
    """
    Thin requests-based client for the session backend.

    Usage:
        client = SessionApiClient()
        if client.enabled:
            client.save_gesture_metrics(session_id, summary.to_payload())
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.base_url = (config.SESSION_API_URL if base_url is None else base_url).rstrip("/")
        self.timeout = config.SESSION_API_TIMEOUT_SEC if timeout is None else timeout
        self.http = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def save_gesture_metrics(self, session_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST the gesture payload to /sessions/{id}/gestures.

        Raises:
            SessionApiError: not configured, HTTP error status, timeout or connection failure
        """
        return self._post(f"/sessions/{session_id}/gestures", payload)

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.enabled:
            raise SessionApiError("SESSION_API_URL is not configured")
        url = f"{self.base_url}{path}"
        try:
            response = self.http.post(url, json=body, timeout=self.timeout)
        except requests.Timeout as e:
            raise SessionApiError(f"Session API request timed out after {self.timeout} seconds: {url}") from e
        except requests.ConnectionError as e:
            raise SessionApiError(f"Session API connection error: {e}. Check SESSION_API_URL ({self.base_url})") from e
        except requests.RequestException as e:
            raise SessionApiError(f"Session API request failed: {e}") from e

        if response.status_code >= 400:
            error_msg = f"Session API returned status {response.status_code}"
            try:
                error_body = response.json()
                if isinstance(error_body, dict) and "error" in error_body:
                    error_msg += f": {error_body['error']}"
            except ValueError:
                error_msg += f": {response.text[:200]}"
            raise SessionApiError(error_msg, status_code=response.status_code)

        log.info("Posted %s (%d)", path, response.status_code)
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}


_client: Optional[SessionApiClient] = None


def get_session_api_client() -> SessionApiClient:
    """Return the session API client, creating it on first call (lazy init)."""
    global _client
    if _client is None:
        _client = SessionApiClient()
    return _client
