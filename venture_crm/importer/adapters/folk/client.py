"""
Thin HTTP client for the Folk REST API.

Wraps ``requests`` with bearer authentication, a mandatory timeout on every
call, and JSON error extraction for write operations. Each thread gets its
own ``requests.Session`` unless one is injected; an injected session must be
safe to share across the push workers.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Mapping

import requests

from . import FolkConfigurationError, FolkRequestError

DEFAULT_BASE_URL = "https://api.folk.app"
DEFAULT_TIMEOUT = 30.0


def _error_detail(response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return (getattr(response, "text", "") or "").strip()[:500]
    if isinstance(payload, Mapping):
        error = payload.get("error")
        if isinstance(error, Mapping):
            return str(error.get("message") or error)
        return str(payload.get("message") or error or payload)
    return str(payload)


class FolkClient:
    """Authenticated access to Folk collections."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if not api_key:
            raise FolkConfigurationError("FOLK_API_KEY is not configured.")
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._shared_session = session
        self._local = threading.local()
        self.logger = logger or logging.getLogger(__name__)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        }

    @property
    def session(self) -> requests.Session:
        if self._shared_session is not None:
            return self._shared_session
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._local.session = requests.Session()
        return session

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs) -> "FolkClient":
        return cls(
            api_key=config.get("FOLK_API_KEY") or "",
            base_url=config.get("FOLK_API_BASE_URL") or DEFAULT_BASE_URL,
            timeout=float(config.get("FOLK_REQUEST_TIMEOUT") or DEFAULT_TIMEOUT),
            **kwargs,
        )

    def collection_url(self, collection: str) -> str:
        return f"{self.base_url}/v1/{collection}"

    # Reads ----------------------------------------------------------------------

    def get(self, url: str, params: Mapping[str, Any] | None = None):
        """Issue an authenticated GET; the caller inspects the response status."""
        return self.session.get(url, headers=self._headers, params=params, timeout=self.timeout)

    def test_connection(self) -> bool:
        try:
            response = self.get(self.collection_url("people"), params={"limit": 1})
        except requests.RequestException as exc:
            raise FolkRequestError(f"Folk API unreachable: {exc}") from exc
        if not response.ok:
            raise FolkRequestError(
                f"Folk API returned {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )
        return True

    # Writes ---------------------------------------------------------------------

    def create(self, collection: str, body: Mapping[str, Any]) -> Mapping[str, Any]:
        return self._write("post", self.collection_url(collection), body)

    def update(self, collection: str, external_id: str, body: Mapping[str, Any]) -> Mapping[str, Any]:
        return self._write("patch", f"{self.collection_url(collection)}/{external_id}", body)

    def _write(self, method: str, url: str, body: Mapping[str, Any]) -> Mapping[str, Any]:
        sender = getattr(self.session, method)
        try:
            response = sender(
                url,
                headers={**self._headers, "Content-Type": "application/json"},
                json=dict(body),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise FolkRequestError(f"{method.upper()} {url} failed: {exc}") from exc
        if not response.ok:
            detail = _error_detail(response)
            self.logger.warning(
                "Folk write request rejected",
                extra={
                    "importer_folk_method": method.upper(),
                    "importer_folk_url": url,
                    "importer_folk_status": response.status_code,
                    "importer_folk_error": detail,
                },
            )
            raise FolkRequestError(
                f"Folk API {method.upper()} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError:
            return {}
        if isinstance(payload, Mapping):
            data = payload.get("data")
            return data if isinstance(data, Mapping) else payload
        return {}
