"""
Allowlisting forwarding gateway.

Relays exactly one GET to a Roblox host (one redirect hop, re-validated),
attaching the Open Cloud key and .ROBLOSECURITY cookie server-side so
callers never hold credentials. The body is always JSON.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Iterable, Optional, Tuple
from urllib.parse import unquote

import httpx

from config import CFG, GATEWAY_HOSTS, auth_headers
from http_shared import Sleep, fetch_one_hop, host_allowed, safe_upstream_label, url_host

log = logging.getLogger("gateway")

Reply = Tuple[int, Dict[str, Any], Dict[str, str]]


class _GatewayLog(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[Gateway:{self.extra['request_id']}] {msg}", kwargs


def _reject(status: int, error: str, extra_headers: Optional[Dict[str, str]] = None) -> Reply:
    return status, {"ok": False, "error": error}, dict(extra_headers or {})


async def relay(
    method: str,
    target: Optional[str],
    *,
    http: httpx.AsyncClient,
    api_key: Optional[str] = None,
    cookie: Optional[str] = None,
    allowed_hosts: Iterable[str] = GATEWAY_HOSTS,
    timeout: float = CFG.UPSTREAM_TIMEOUT,
    sleep: Sleep = asyncio.sleep,
    delay_ms=lambda: 0,
    request_id: Optional[str] = None,
) -> Reply:
    """Returns (http status, JSON body, extra response headers)."""
    rlog = _GatewayLog(log, {"request_id": request_id or uuid.uuid4().hex})
    api_key = CFG.ROBLOX_OPEN_CLOUD_KEY if api_key is None else api_key
    cookie = CFG.ROBLOX_SECURITY_COOKIE if cookie is None else cookie

    if (method or "").upper() != "GET":
        rlog.info("405 Method Not Allowed")
        return _reject(405, "Method Not Allowed", {"Allow": "GET"})

    if not target:
        rlog.info("400 Missing url param")
        return _reject(400, "Missing 'url' query parameter")

    try:
        target_url = unquote(target, errors="strict")
    except UnicodeDecodeError:
        rlog.info("400 Invalid URL encoding")
        return _reject(400, "Invalid URL encoding")

    try:
        host = url_host(target_url)
    except ValueError:
        rlog.info("400 Invalid URL format")
        return _reject(400, "Invalid URL format")

    if not host_allowed(host, allowed_hosts):
        rlog.info(f"403 Host not allowed: {host}")
        return _reject(403, "Host not allowed")

    headers = auth_headers(api_key=api_key, cookie=cookie)
    tried = [name for name, present in (("apiKey", "x-api-key" in headers), ("cookie", "cookie" in headers)) if present]
    cookie_len = len(headers.get("cookie", ""))

    rlog.info(f"START host={host} path={safe_upstream_label(target_url)}")
    rlog.info(f"env openCloudKeyLen={len(api_key or '')} cookieLen={cookie_len}")

    try:
        result = await fetch_one_hop(http, target_url, headers, allowed_hosts, timeout=timeout, sleep=sleep, delay_ms=delay_ms)
    except (httpx.HTTPError, asyncio.TimeoutError) as e:
        rlog.error(f"HANDLER ERROR: {e!r}")
        return 200, {
            "ok": False,
            "upstreamStatus": 0,
            "upstreamContentType": "",
            "json": None,
            "text": "",
            "error": str(e) or type(e).__name__,
            "authSent": {"tried": [], "cookieLen": 0, "apiKeyLen": 0},
        }, {}

    if result.redirect_blocked:
        rlog.info(f"403 Redirect host not allowed: {result.redirect_blocked['host']}")
        return _reject(403, "Redirect host not allowed")

    parsed = None
    if "application/json" in result.content_type and result.text:
        try:
            parsed = json.loads(result.text)
        except ValueError:
            parsed = None

    rlog.info(f"END ok={str(result.ok).lower()} status={result.status} tried={','.join(tried)}")
    return 200, {
        "ok": result.ok,
        "upstreamStatus": result.status,
        "upstreamContentType": result.content_type,
        "json": parsed,
        "text": result.text,
        "authSent": {"tried": tried, "cookieLen": cookie_len, "apiKeyLen": len(api_key or "")},
    }, {}
