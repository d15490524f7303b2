"""Stub Roblox transport shared by the test modules."""

from __future__ import annotations

from typing import Callable, List, Optional

import httpx
import pytest

from http_shared import RetryPolicy


def reply(status: int = 200, json=None, text: Optional[str] = None, headers=None) -> Callable[[httpx.Request], httpx.Response]:
    """Factory producing a fresh response per request."""

    def make(request: httpx.Request) -> httpx.Response:
        if text is not None:
            return httpx.Response(status, text=text, headers=headers)
        if json is not None:
            return httpx.Response(status, json=json, headers=headers)
        return httpx.Response(status, headers=headers)

    return make


class StubRoblox:
    """Routes by method + host + path. Each route plays its replies in order
    and repeats the last one once exhausted."""

    def __init__(self) -> None:
        self.routes = []
        self.requests: List[httpx.Request] = []

    def on(self, method: str, url: str, *replies) -> "StubRoblox":
        u = httpx.URL(url)
        queue = list(replies)

        def handle(request: httpx.Request) -> httpx.Response:
            item = queue.pop(0) if len(queue) > 1 else queue[0]
            return item(request)

        self.routes.append((method.upper(), u.host, u.path, handle))
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, host, path, handle in self.routes:
            if request.method == method and request.url.host == host and request.url.path == path:
                return handle(request)
        return httpx.Response(404, json={"errors": [{"message": "no stub route"}]})

    def count(self, host: Optional[str] = None, path: Optional[str] = None, method: Optional[str] = None) -> int:
        return sum(
            1
            for r in self.requests
            if (host is None or r.url.host == host)
            and (path is None or r.url.path == path)
            and (method is None or r.method == method)
        )

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self), follow_redirects=False)


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def backoffs(self) -> List[float]:
        return [s for s in self.calls if s > 0]


def no_delay() -> int:
    return 0


@pytest.fixture
def stub() -> StubRoblox:
    return StubRoblox()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=4, base_delay_ms=600, max_delay_ms=8000)
