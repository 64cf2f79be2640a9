from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Iterator

import httpx
from loguru import logger

from .errors import FetchError
from .models import Page

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
TODO_LISTS_ENDPOINT = f"{GRAPH_BASE_URL}/me/todo/lists"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: float = 0.5

    def exponential_delay(self, attempt: int) -> float:
        return self.backoff * (2**attempt)

    def rate_limit_delay(self, retry_after: str | None) -> float:
        return max(_parse_retry_after(retry_after), self.backoff)


def _parse_retry_after(value: str | None) -> float:
    if not value:
        return 0.0
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return 0.0
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class GraphClient:
    def __init__(
        self,
        token: str,
        retry: RetryPolicy | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.headers = {"Authorization": f"Bearer {token}"}
        self.retry = retry or RetryPolicy()
        self.sleep = sleep
        self.client = httpx.Client(timeout=timeout, headers=self.headers, transport=transport)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> GraphClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def request(self, url: str) -> httpx.Response:
        """GET ``url``, retrying rate limits and transient failures.

        A 429 waits for the server's Retry-After (never less than the base
        backoff); anything else waits ``backoff * 2**attempt``. Raises
        FetchError once ``max_attempts`` requests have been made.
        """
        attempts = self.retry.max_attempts
        last_status: int | None = None
        last_error: BaseException | None = None
        for attempt in range(attempts):
            final = attempt == attempts - 1
            try:
                response = self.client.get(url)
            except httpx.RequestError as exc:
                last_status, last_error = None, exc
                logger.debug(f"attempt {attempt + 1}/{attempts} for {url} failed: {exc!r}")
                if not final:
                    self.sleep(self.retry.exponential_delay(attempt))
                continue

            if response.is_success:
                return response

            last_status, last_error = response.status_code, None
            if response.status_code == 429:
                wait = self.retry.rate_limit_delay(response.headers.get("Retry-After"))
                logger.info(f"rate limited on {url}, waiting {wait:.1f}s")
            else:
                wait = self.retry.exponential_delay(attempt)
                logger.debug(f"attempt {attempt + 1}/{attempts} for {url} returned {response.status_code}")
            if not final:
                self.sleep(wait)

        raise FetchError(url, status_code=last_status, cause=last_error)

    def iter_pages(self, url: str) -> Iterator[Page]:
        """Yield every page of a Graph collection, following ``@odata.nextLink``."""
        next_url: str | None = url
        while next_url:
            response = self.request(next_url)
            try:
                payload = response.json()
            except ValueError as exc:
                raise FetchError(next_url, response.status_code, exc, "Response body is not JSON") from exc
            if not isinstance(payload, dict) or not isinstance(payload.get("value"), list):
                raise FetchError(next_url, response.status_code, message="Response has no 'value' array")
            cursor = payload.get("@odata.nextLink") or payload.get("nextLink") or None
            linked = cursor is None or isinstance(cursor, str)
            yield Page(items=payload["value"], next_cursor=cursor if linked else None)
            if not linked:
                # The items above stay usable; only the link to the next page is not.
                raise FetchError(next_url, response.status_code, message="Response nextLink is not a URL string")
            next_url = cursor

    def get_paginated(self, url: str) -> list[dict[str, Any]]:
        collected: list[dict[str, Any]] = []
        for page in self.iter_pages(url):
            collected.extend(page.items)
        return collected
