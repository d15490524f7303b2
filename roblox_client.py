from __future__ import annotations

# roblox_client.py: resilient GET client + catalog details POST with CSRF negotiation
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from config import CFG, BASE_HEADERS, auth_headers
from http_shared import (
    DEFAULT_RETRY_POLICY,
    Fetched,
    RateLimitHint,
    RetryPolicy,
    Sleep,
    fetch_one_hop,
    host_allowed,
    parse_retry_after_ms,
    safe_upstream_label,
    send_with_timeout,
    upstream_delay_ms,
    url_host,
)
from models import FaultLog, to_int

CATALOG_DETAILS_URL = "https://catalog.roblox.com/v1/catalog/items/details"
CSRF_HEADER = "x-csrf-token"
SNIPPET_LOG = 180
SNIPPET_FAULT = 300

log = logging.getLogger("roblox_client")

_TRANSPORT_ERRORS = (httpx.HTTPError, asyncio.TimeoutError)


def _snippet(text: str, n: int = SNIPPET_LOG) -> str:
    return " ".join((text or "")[:n].split())


def _failure_reason(e: BaseException) -> str:
    if isinstance(e, (asyncio.TimeoutError, httpx.TimeoutException)):
        return "timeout"
    return "network"


def _error_text(e: BaseException) -> str:
    return str(e) or type(e).__name__


def _safe_json(text: str):
    """(ok, value); the body must be valid JSON, empty is not."""
    try:
        return True, json.loads(text)
    except ValueError:
        return False, None


@dataclass
class UpstreamMetrics:
    upstream_calls: int = 0
    upstream_retries: int = 0
    upstream_429: int = 0
    upstream_non2xx: int = 0

    def count_failure(self, status: int) -> None:
        self.upstream_non2xx += 1
        if status == 429:
            self.upstream_429 += 1

    def summary(self) -> str:
        return (
            f"upstreamCalls={self.upstream_calls} retries={self.upstream_retries} "
            f"429={self.upstream_429} non2xx={self.upstream_non2xx}"
        )


class CsrfTokenCache:
    """Holds the last x-csrf-token handed out by the catalog API."""

    def __init__(self, token: Optional[str] = None) -> None:
        self._token = token

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: Optional[str]) -> None:
        self._token = token


class UpstreamClient:
    """Single logical GET against an allowlisted Roblox host.

    Never raises: failures land in ``errors`` and ``get_json`` returns None.
    With ``gateway_url`` set the call goes through the forwarding gateway and
    its envelope is unwrapped; otherwise the host is called directly with
    the configured credentials.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        errors: FaultLog,
        *,
        allowed_hosts: Iterable[str],
        headers: Optional[Dict[str, str]] = None,
        gateway_url: Optional[str] = None,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        timeout: float = CFG.UPSTREAM_TIMEOUT,
        sleep: Sleep = asyncio.sleep,
        delay_ms: Callable[[], int] = upstream_delay_ms,
        metrics: Optional[UpstreamMetrics] = None,
        logger=None,
    ) -> None:
        self.http = http
        self.errors = errors
        self.allowed_hosts = tuple(allowed_hosts)
        self.headers = auth_headers() if headers is None else dict(headers)
        self.gateway_url = gateway_url or None
        self.policy = policy
        self.timeout = timeout
        self.sleep = sleep
        self.delay_ms = delay_ms
        self.metrics = metrics if metrics is not None else UpstreamMetrics()
        self.log = logger or log

    async def get_json(self, url: str, step: str, context: Optional[Dict[str, Any]] = None) -> Any:
        context = dict(context or {})
        try:
            host = url_host(url)
        except ValueError:
            self.errors.add(step, "Invalid URL format", **{**context, "url": url})
            self.log.warning(f"FAIL step={step} reason=invalid_url")
            return None

        if not host_allowed(host, self.allowed_hosts):
            self.errors.add(step, "Host not allowed", **{**context, "host": host, "url": url})
            self.log.warning(f"FAIL step={step} reason=host_not_allowed host={host}")
            return None

        self.metrics.upstream_calls += 1
        label = safe_upstream_label(url)
        max_attempts = self.policy.max_attempts

        for attempt in range(1, max_attempts + 1):
            try:
                self.log.debug(f"GET step={step} attempt={attempt}/{max_attempts} host={host} path={label}")
                result = await self._attempt(url)
            except _TRANSPORT_ERRORS as e:
                reason = _failure_reason(e)
                if self.policy.can_retry(attempt):
                    wait_ms = self.policy.backoff_ms(attempt)
                    self.metrics.upstream_retries += 1
                    self.log.warning(
                        f"RETRY step={step} reason={reason} attempt={attempt}/{max_attempts} "
                        f"wait={wait_ms}ms error=\"{_error_text(e)}\""
                    )
                    await self.sleep(wait_ms / 1000.0)
                    continue
                self.errors.add(step, "Upstream fetch failed", **{**context, "url": url, "reason": reason, "error": _error_text(e)})
                self.log.error(f"FAIL step={step} reason=fetch_failed error=\"{_error_text(e)}\"")
                return None

            if result.redirect_blocked:
                self.errors.add(step, "Redirect host not allowed", **{**context, **result.redirect_blocked})
                self.log.warning(f"FAIL step={step} reason=redirect_host_not_allowed host={result.redirect_blocked['host']}")
                return None

            if not result.ok:
                self.metrics.count_failure(result.status)
                self.log.warning(f"FAIL step={step} status={result.status} ms={result.ms} snippet=\"{_snippet(result.text)}\"")
                rate = result.rate or RateLimitHint()
                if self.policy.is_retryable(result.status) and self.policy.can_retry(attempt):
                    wait_ms = self.policy.backoff_ms(attempt, parse_retry_after_ms(rate.retryAfter, self.policy.max_delay_ms))
                    self.metrics.upstream_retries += 1
                    self.log.warning(
                        f"RETRY step={step} status={result.status} attempt={attempt}/{max_attempts} wait={wait_ms}ms "
                        f"rate={{remaining:{rate.remaining or '?'}, reset:{rate.reset or '?'}}}"
                    )
                    await self.sleep(wait_ms / 1000.0)
                    continue
                self.errors.add(
                    step,
                    "Upstream error",
                    **{
                        **context,
                        "url": url,
                        "upstreamStatus": result.status,
                        "ms": result.ms,
                        "rateLimit": rate.as_dict(),
                        "bodySnippet": result.text[:SNIPPET_FAULT],
                    },
                )
                return None

            self.log.debug(f"OK step={step} status={result.status} ms={result.ms}")
            if result.has_payload:
                return result.payload
            ok, value = _safe_json(result.text)
            if not ok:
                self.errors.add(
                    step,
                    "Upstream returned non-JSON response",
                    **{
                        **context,
                        "url": url,
                        "upstreamStatus": result.status,
                        "ms": result.ms,
                        "upstreamContentType": result.content_type,
                        "bodySnippet": result.text[:SNIPPET_FAULT],
                    },
                )
                self.log.warning(f"FAIL step={step} reason=non_json status={result.status} ms={result.ms}")
                return None
            return value

        return None

    async def _attempt(self, url: str) -> Fetched:
        if self.gateway_url:
            return await self._via_gateway(url)
        return await fetch_one_hop(
            self.http,
            url,
            self.headers,
            self.allowed_hosts,
            timeout=self.timeout,
            sleep=self.sleep,
            delay_ms=self.delay_ms,
        )

    async def _via_gateway(self, url: str) -> Fetched:
        await self.sleep(self.delay_ms() / 1000.0)
        start = time.monotonic()
        resp = await send_with_timeout(
            self.http, "GET", self.gateway_url, timeout=self.timeout, params={"url": url}, headers=dict(BASE_HEADERS)
        )
        ms = int((time.monotonic() - start) * 1000)
        rate = RateLimitHint.from_headers(resp.headers)
        gateway_ok = 200 <= resp.status_code < 300

        try:
            env = resp.json()
        except ValueError:
            env = None
        if not isinstance(env, dict):
            return Fetched(status=resp.status_code if not gateway_ok else 502, ms=ms, text=resp.text or "", rate=rate)

        status = to_int(env.get("upstreamStatus")) or 0
        if status == 0:
            status = resp.status_code if not gateway_ok else 502
        elif env.get("ok") is not True and 200 <= status < 300:
            status = 502

        payload = env.get("json")
        text = env.get("text")
        if not isinstance(text, str):
            text = str(env.get("error") or "")
        return Fetched(
            status=status,
            ms=ms,
            text=text,
            content_type=str(env.get("upstreamContentType") or ""),
            rate=rate,
            payload=payload,
            has_payload=payload is not None,
        )


class CatalogDetailsClient:
    """POST /v1/catalog/items/details with x-csrf-token negotiation.

    A 403 carrying a new token refreshes the shared cache and the POST is
    sent once more. Transport failures and retryable statuses follow the
    same RetryPolicy as the GET client. Never raises.
    """

    STEP = "catalog.details"

    def __init__(
        self,
        http: httpx.AsyncClient,
        errors: FaultLog,
        *,
        tokens: CsrfTokenCache,
        allowed_hosts: Iterable[str],
        headers: Optional[Dict[str, str]] = None,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        timeout: float = CFG.UPSTREAM_TIMEOUT,
        sleep: Sleep = asyncio.sleep,
        delay_ms: Callable[[], int] = upstream_delay_ms,
        metrics: Optional[UpstreamMetrics] = None,
        logger=None,
        url: str = CATALOG_DETAILS_URL,
    ) -> None:
        self.http = http
        self.errors = errors
        self.tokens = tokens
        self.allowed_hosts = tuple(allowed_hosts)
        self.headers = auth_headers() if headers is None else dict(headers)
        self.policy = policy
        self.timeout = timeout
        self.sleep = sleep
        self.delay_ms = delay_ms
        self.metrics = metrics if metrics is not None else UpstreamMetrics()
        self.log = logger or log
        self.url = url

    async def _post(self, headers: Dict[str, str], body: Dict[str, Any]) -> httpx.Response:
        await self.sleep(self.delay_ms() / 1000.0)
        return await send_with_timeout(self.http, "POST", self.url, timeout=self.timeout, headers=headers, json=body)

    async def fetch(self, asset_ids: List[int], context: Optional[Dict[str, Any]] = None) -> Optional[List[Any]]:
        step = self.STEP
        context = dict(context or {})
        try:
            host = url_host(self.url)
        except ValueError:
            self.errors.add(step, "Invalid URL format", **{**context, "url": self.url})
            return None
        if not host_allowed(host, self.allowed_hosts):
            self.errors.add(step, "Host not allowed", **{**context, "host": host, "url": self.url})
            self.log.warning(f"FAIL step={step} reason=host_not_allowed host={host}")
            return None

        body = {"items": [{"itemType": 1, "id": int(aid)} for aid in asset_ids]}
        headers = {**self.headers, "Content-Type": "application/json", "Accept": "application/json"}
        self.metrics.upstream_calls += 1
        max_attempts = self.policy.max_attempts

        for attempt in range(1, max_attempts + 1):
            token = self.tokens.get()
            if token:
                headers[CSRF_HEADER] = token
            try:
                start = time.monotonic()
                resp = await self._post(headers, body)

                # CSRF is required -> 403 + x-csrf-token; compare against what this POST sent
                if resp.status_code == 403:
                    new_token = resp.headers.get(CSRF_HEADER)
                    if new_token and new_token != headers.get(CSRF_HEADER):
                        self.tokens.set(new_token)
                        headers[CSRF_HEADER] = new_token
                        self.log.warning(f"CSRF step={step} token_refreshed attempt={attempt}/{max_attempts}")
                        resp = await self._post(headers, body)
            except _TRANSPORT_ERRORS as e:
                reason = _failure_reason(e)
                if self.policy.can_retry(attempt):
                    wait_ms = self.policy.backoff_ms(attempt)
                    self.metrics.upstream_retries += 1
                    self.log.warning(
                        f"RETRY step={step} reason={reason} attempt={attempt}/{max_attempts} "
                        f"wait={wait_ms}ms error=\"{_error_text(e)}\""
                    )
                    await self.sleep(wait_ms / 1000.0)
                    continue
                self.errors.add(step, "Catalog POST failed", **{**context, "reason": reason, "error": _error_text(e)})
                self.log.error(f"FAIL step={step} reason=post_failed error=\"{_error_text(e)}\"")
                return None

            ms = int((time.monotonic() - start) * 1000)
            text = resp.text or ""
            rate = RateLimitHint.from_headers(resp.headers)

            if not (200 <= resp.status_code < 300):
                self.metrics.count_failure(resp.status_code)
                self.log.warning(f"FAIL step={step} status={resp.status_code} ms={ms} snippet=\"{_snippet(text)}\"")
                if self.policy.is_retryable(resp.status_code) and self.policy.can_retry(attempt):
                    wait_ms = self.policy.backoff_ms(attempt, parse_retry_after_ms(rate.retryAfter, self.policy.max_delay_ms))
                    self.metrics.upstream_retries += 1
                    self.log.warning(
                        f"RETRY step={step} status={resp.status_code} attempt={attempt}/{max_attempts} wait={wait_ms}ms "
                        f"rate={{remaining:{rate.remaining or '?'}, reset:{rate.reset or '?'}}}"
                    )
                    await self.sleep(wait_ms / 1000.0)
                    continue
                parsed_ok, parsed = _safe_json(text)
                self.errors.add(
                    step,
                    "Catalog upstream error",
                    **{
                        **context,
                        "status": resp.status_code,
                        "ms": ms,
                        "rateLimit": rate.as_dict(),
                        "bodySnippet": text[:SNIPPET_FAULT],
                        "response": parsed if parsed_ok else None,
                    },
                )
                return None

            self.log.debug(f"OK step={step} status={resp.status_code} ms={ms} items={len(asset_ids)}")
            parsed_ok, parsed = _safe_json(text)
            if not parsed_ok:
                self.errors.add(
                    step,
                    "Catalog returned non-JSON response",
                    **{**context, "status": resp.status_code, "ms": ms, "bodySnippet": text[:SNIPPET_FAULT]},
                )
                self.log.warning(f"FAIL step={step} reason=non_json status={resp.status_code} ms={ms}")
                return None

            data = parsed.get("data") if isinstance(parsed, dict) else None
            if not isinstance(data, list):
                self.errors.add(
                    step,
                    "Catalog response missing data[]",
                    **{**context, "status": resp.status_code, "ms": ms, "response": parsed},
                )
                self.log.warning(f"FAIL step={step} reason=missing_data status={resp.status_code} ms={ms}")
                return None
            return data

        return None
