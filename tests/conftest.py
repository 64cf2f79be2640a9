import json
import threading
from pathlib import Path
from typing import Any

import httpx
import pytest
from loguru import logger

LISTS_URL = "https://graph.microsoft.com/v1.0/me/todo/lists"


def load_fixture(name: str) -> Any:
    path = Path(__file__).parent / "fixtures" / name
    return json.loads(path.read_text())


def _route_key(url: httpx.URL) -> tuple[str, str | None]:
    token = url.params.get("$skiptoken") or url.params.get("$skip")
    return url.path, token


class GraphStub:
    """Canned Graph responses keyed by path and page token.

    Each route holds a list of replies consumed in order; the last reply
    repeats. A reply is ``(status, body, headers)`` or an exception to raise.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str | None], list[Any]] = {}
        self.requests: list[httpx.Request] = []
        self._lock = threading.Lock()

    def add(self, url: str, *replies: Any) -> None:
        self.routes[_route_key(httpx.URL(url))] = list(replies)

    def ok(self, url: str, body: Any) -> None:
        self.add(url, (200, body, {}))

    def calls(self, url: str) -> int:
        key = _route_key(httpx.URL(url))
        return sum(1 for request in self.requests if _route_key(request.url) == key)

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            replies = self.routes.get(_route_key(request.url))
            if not replies:
                return httpx.Response(404, json={"error": {"code": "NotFound"}})
            reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        status, body, headers = reply
        if isinstance(body, (bytes, str)):
            return httpx.Response(status, content=body, headers=headers)
        return httpx.Response(status, json=body, headers=headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def graph() -> GraphStub:
    return GraphStub()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def log_messages():
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(str(message)), level="DEBUG")
    yield messages
    logger.remove(handler_id)
