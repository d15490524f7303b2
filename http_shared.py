"""
Shared HTTP utilities for the Roblox upstream calls.

Goals:
- Reuse one httpx.AsyncClient (connection pooling) across requests.
- Keep every outbound target inside an explicit host allowlist, redirects included.
- One retry/backoff policy for every call site (GET client and catalog POST).
"""

from __future__ import annotations

import asyncio
import email.utils
import math
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional
from urllib.parse import urljoin, urlsplit

import httpx

from config import CFG

_DEFAULT_TIMEOUT = httpx.Timeout(CFG.UPSTREAM_TIMEOUT, connect=10.0)
_LIMITS = httpx.Limits(max_connections=100, max_keepalive_connections=20, keepalive_expiry=30.0)

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

Sleep = Callable[[float], Awaitable[Any]]


def upstream_delay_ms() -> int:
    """Small jitter before each dispatch so concurrent callers don't burst together."""
    return random.randint(CFG.UPSTREAM_DELAY_MIN_MS, CFG.UPSTREAM_DELAY_MAX_MS)


def _clamp_int(n: float, lo: int, hi: int) -> int:
    return max(lo, min(hi, int(n)))


def parse_retry_after_ms(raw: Optional[str], max_ms: int = CFG.RETRY_MAX_DELAY_MS) -> Optional[int]:
    """Retry-After as seconds or HTTP-date, clamped; None when absent or not positive."""
    if not raw:
        return None
    s = str(raw).strip()
    try:
        secs = float(s)
    except ValueError:
        secs = None
    if secs is not None:
        if math.isfinite(secs) and secs > 0:
            return _clamp_int(secs * 1000, 0, max_ms)
        return None
    try:
        dt = email.utils.parsedate_to_datetime(s)
    except (TypeError, ValueError):
        return None
    if dt is None:
        return None
    diff = dt.timestamp() * 1000 - time.time() * 1000
    if diff > 0:
        return _clamp_int(diff, 0, max_ms)
    return None


@dataclass(frozen=True)
class RateLimitHint:
    retryAfter: Optional[str] = None
    remaining: Optional[str] = None
    limit: Optional[str] = None
    reset: Optional[str] = None

    @classmethod
    def from_headers(cls, headers) -> "RateLimitHint":
        def pick(*names):
            for n in names:
                v = headers.get(n)
                if v:
                    return v
            return None

        return cls(
            retryAfter=pick("retry-after"),
            remaining=pick("x-ratelimit-remaining", "x-rate-limit-remaining"),
            limit=pick("x-ratelimit-limit", "x-rate-limit-limit"),
            reset=pick("x-ratelimit-reset", "x-rate-limit-reset"),
        )

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"retryAfter": self.retryAfter, "remaining": self.remaining, "limit": self.limit, "reset": self.reset}


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = CFG.MAX_ATTEMPTS
    base_delay_ms: int = CFG.RETRY_BASE_DELAY_MS
    max_delay_ms: int = CFG.RETRY_MAX_DELAY_MS
    jitter_ms: int = 250
    retryable_statuses: frozenset = field(default=RETRYABLE_STATUSES)

    def is_retryable(self, status: int) -> bool:
        return status in self.retryable_statuses

    def can_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def backoff_ms(self, attempt: int, retry_after_ms: Optional[int] = None) -> int:
        """attempt: 1 for the first retry, 2 for the second, etc."""
        if retry_after_ms is not None and retry_after_ms > 0:
            return _clamp_int(retry_after_ms, 0, self.max_delay_ms)
        exp = self.base_delay_ms * (2 ** max(0, attempt - 1))
        jitter = random.randint(0, max(0, self.jitter_ms - 1))
        return _clamp_int(exp + jitter, self.base_delay_ms, self.max_delay_ms)


DEFAULT_RETRY_POLICY = RetryPolicy()


def url_host(url: str) -> str:
    """host[:port] of an absolute http(s) URL; ValueError when malformed."""
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError(f"not an absolute http(s) url: {url!r}")
    port = parts.port
    return f"{parts.hostname}:{port}" if port else parts.hostname


def host_allowed(host: str, allowed_hosts: Iterable[str]) -> bool:
    return host in set(allowed_hosts)


def safe_upstream_label(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.netloc}{parts.path}"


@dataclass
class Fetched:
    """Outcome of one attempt (at most one redirect hop)."""
    status: int
    ms: int
    text: str = ""
    content_type: str = ""
    rate: Optional[RateLimitHint] = None
    redirect_blocked: Optional[Dict[str, str]] = None
    payload: Any = None
    has_payload: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


async def send_with_timeout(client: httpx.AsyncClient, method: str, url: str, *, timeout: float, **kwargs) -> httpx.Response:
    # hard cap on the whole attempt, not just per-phase httpx timeouts
    return await asyncio.wait_for(client.request(method, url, **kwargs), timeout=timeout)


async def fetch_one_hop(
    client: httpx.AsyncClient,
    url: str,
    headers: Dict[str, str],
    allowed_hosts: Iterable[str],
    *,
    timeout: float = CFG.UPSTREAM_TIMEOUT,
    sleep: Sleep = asyncio.sleep,
    delay_ms: Callable[[], int] = upstream_delay_ms,
) -> Fetched:
    """GET with one redirect hop followed using the same headers.

    The redirect target is re-validated against the allowlist before it is
    dispatched. A second redirect is returned as-is.
    """
    await sleep(delay_ms() / 1000.0)
    start = time.monotonic()
    resp = await send_with_timeout(client, "GET", url, timeout=timeout, headers=headers)

    if 300 <= resp.status_code < 400 and resp.headers.get("location"):
        next_url = urljoin(url, resp.headers["location"])
        try:
            next_host = url_host(next_url)
        except ValueError:
            next_host = ""
        if not next_host or not host_allowed(next_host, allowed_hosts):
            return Fetched(
                status=0,
                ms=int((time.monotonic() - start) * 1000),
                redirect_blocked={"from": url, "to": next_url, "host": next_host},
            )
        await sleep(delay_ms() / 1000.0)
        resp = await send_with_timeout(client, "GET", next_url, timeout=timeout, headers=headers)

    return Fetched(
        status=resp.status_code,
        ms=int((time.monotonic() - start) * 1000),
        text=resp.text or "",
        content_type=resp.headers.get("content-type") or "",
        rate=RateLimitHint.from_headers(resp.headers),
    )


# -------- Shared client --------

_clients: Dict[str, httpx.AsyncClient] = {}
_clients_lock = asyncio.Lock()


async def get_client() -> httpx.AsyncClient:
    """Return the process-wide AsyncClient; redirects are handled manually."""
    key = "__direct__"
    async with _clients_lock:
        client = _clients.get(key)
        if client is None or client.is_closed:
            client = httpx.AsyncClient(
                timeout=_DEFAULT_TIMEOUT,
                limits=_LIMITS,
                follow_redirects=False,
            )
            _clients[key] = client
    return client


async def close_clients() -> None:
    async with _clients_lock:
        items = list(_clients.items())
        _clients.clear()
    for _, c in items:
        await c.aclose()
