"""
Cursor-following fetcher for Folk collections.

Requests the first page with the workspace group filter, then follows
``data.pagination.nextLink`` until the API omits it or returns an empty page.
Failures surface as ``FetchError`` carrying the page index and the cursor to
resume from; retries are opt-in and bounded.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Mapping

import requests

from venture_crm.importer.metrics import record_fetch_page, record_fetch_retry

from . import FolkAdapterError
from .client import FolkClient

GROUP_FILTER_PARAM = "filter[groups][in][id]"
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class FetchError(FolkAdapterError):
    """Raised when a page cannot be fetched; aborts the current run."""

    def __init__(
        self,
        message: str,
        *,
        page_index: int,
        last_cursor: str | None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.page_index = page_index
        self.last_cursor = last_cursor
        self.status_code = status_code


@dataclass(frozen=True)
class FolkPage:
    """One page of external records."""

    index: int
    items: List[Mapping[str, Any]]
    cursor: str | None
    next_cursor: str | None


class PaginatedFetcher:
    """Retrieve every record of a collection for one workspace group."""

    def __init__(
        self,
        client: FolkClient,
        *,
        page_limit: int = 100,
        max_retries: int = 0,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        sleep_fn: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.page_limit = max(1, min(100, int(page_limit)))
        self.max_retries = max(0, int(max_retries))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        self.backoff_max_seconds = max(0.0, float(backoff_max_seconds))
        self.sleep = sleep_fn
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, client: FolkClient, config: Mapping[str, Any], **kwargs) -> "PaginatedFetcher":
        return cls(
            client,
            page_limit=config.get("FOLK_PAGE_LIMIT", 100),
            max_retries=config.get("FOLK_FETCH_MAX_RETRIES", 0),
            backoff_seconds=config.get("FOLK_FETCH_BACKOFF_SECONDS", 1.0),
            backoff_max_seconds=config.get("FOLK_FETCH_BACKOFF_MAX_SECONDS", 30.0),
            **kwargs,
        )

    # Public API -----------------------------------------------------------------

    def fetch_all(
        self,
        collection: str,
        workspace_id: str,
        *,
        start_cursor: str | None = None,
    ) -> list[Mapping[str, Any]]:
        records: list[Mapping[str, Any]] = []
        for page in self.iter_pages(collection, workspace_id, start_cursor=start_cursor):
            records.extend(page.items)
        return records

    def iter_pages(
        self,
        collection: str,
        workspace_id: str,
        *,
        start_cursor: str | None = None,
    ) -> Iterator[FolkPage]:
        """Yield non-empty pages in order; stops on a missing next link or an empty page."""

        cursor = start_cursor
        page_index = 0
        while True:
            if cursor is None:
                url = self.client.collection_url(collection)
                params: Mapping[str, Any] | None = {"limit": self.page_limit, GROUP_FILTER_PARAM: workspace_id}
            else:
                url = cursor
                params = None

            payload = self._request_page(collection, url, params, page_index=page_index, cursor=cursor)
            data = payload.get("data") if isinstance(payload, Mapping) else None
            data = data if isinstance(data, Mapping) else {}
            items = list(data.get("items") or [])
            pagination = data.get("pagination") if isinstance(data.get("pagination"), Mapping) else {}
            next_cursor = pagination.get("nextLink") or None

            self.logger.debug(
                "Fetched Folk page",
                extra={
                    "importer_collection": collection,
                    "importer_page_index": page_index,
                    "importer_page_items": len(items),
                    "importer_has_next": bool(next_cursor),
                },
            )
            if not items:
                break
            yield FolkPage(index=page_index, items=items, cursor=cursor, next_cursor=next_cursor)
            if not next_cursor:
                break
            cursor = next_cursor
            page_index += 1

    # Internal helpers -----------------------------------------------------------

    def _request_page(
        self,
        collection: str,
        url: str,
        params: Mapping[str, Any] | None,
        *,
        page_index: int,
        cursor: str | None,
    ) -> Mapping[str, Any]:
        attempt = 0
        while True:
            try:
                response = self.client.get(url, params=params)
            except requests.RequestException as exc:
                if attempt < self.max_retries:
                    self._backoff(collection, attempt, page_index, reason=str(exc))
                    attempt += 1
                    continue
                record_fetch_page(collection, status="failure")
                raise FetchError(
                    f"Fetching {collection} page {page_index} failed: {exc}",
                    page_index=page_index,
                    last_cursor=cursor,
                ) from exc

            if not response.ok:
                if response.status_code in RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                    self._backoff(collection, attempt, page_index, reason=f"HTTP {response.status_code}")
                    attempt += 1
                    continue
                record_fetch_page(collection, status="failure")
                raise FetchError(
                    f"Fetching {collection} page {page_index} returned HTTP {response.status_code}",
                    page_index=page_index,
                    last_cursor=cursor,
                    status_code=response.status_code,
                )

            try:
                payload = response.json()
            except ValueError as exc:
                record_fetch_page(collection, status="failure")
                raise FetchError(
                    f"Fetching {collection} page {page_index} returned invalid JSON",
                    page_index=page_index,
                    last_cursor=cursor,
                    status_code=response.status_code,
                ) from exc
            record_fetch_page(collection, status="success")
            return payload

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2**attempt), self.backoff_max_seconds)

    def _backoff(self, collection: str, attempt: int, page_index: int, *, reason: str) -> None:
        delay = self.backoff_delay(attempt)
        record_fetch_retry(collection)
        self.logger.warning(
            "Retrying Folk page fetch after transient failure",
            extra={
                "importer_collection": collection,
                "importer_page_index": page_index,
                "importer_retry_attempt": attempt + 1,
                "importer_retry_delay": delay,
                "importer_retry_reason": reason,
            },
        )
        self.sleep(delay)
