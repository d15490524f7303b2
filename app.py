from contextlib import asynccontextmanager
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import CFG, GAMEPASS_HOSTS, AGGREGATOR_HOSTS
import gateway
import http_shared
from roblox_client import CsrfTokenCache
from services_donation_assets import handle_donation_assets

NO_STORE = {"Cache-Control": "no-store"}


def _setup_logging():
    root = logging.getLogger()
    if root.handlers:
        return
    root.setLevel(logging.DEBUG if CFG.DEBUG_LOG_ALL else logging.INFO)
    fmt = logging.Formatter('%(asctime)s | %(levelname)s | %(name)s | %(message)s')
    fh = RotatingFileHandler(CFG.LOG_PATH, maxBytes=2_000_000, backupCount=3, encoding='utf-8')
    fh.setFormatter(fmt)
    root.addHandler(fh)
    sh = logging.StreamHandler()
    sh.setFormatter(fmt)
    root.addHandler(sh)
    # httpx logs every request at INFO; keep our own lines readable
    logging.getLogger('httpx').setLevel(logging.WARNING)


def create_app(http: Optional[httpx.AsyncClient] = None, **pipeline_kwargs) -> FastAPI:
    """http / pipeline_kwargs let callers (tests) swap transport, sleep and delays."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _setup_logging()
        yield
        if http is None:
            await http_shared.close_clients()

    app = FastAPI(title="Roblox Donation Assets", version="1.0.0", lifespan=lifespan)
    # one token per process, shared by all requests
    app.state.csrf_tokens = CsrfTokenCache()

    async def _client() -> httpx.AsyncClient:
        return http if http is not None else await http_shared.get_client()

    async def _aggregate(request: Request, allowed_hosts, allow_clothing: bool, label: str) -> JSONResponse:
        body = await handle_donation_assets(
            request.method,
            request.query_params,
            http=await _client(),
            tokens=app.state.csrf_tokens,
            allowed_hosts=allowed_hosts,
            allow_clothing=allow_clothing,
            label=label,
            **pipeline_kwargs,
        )
        # always 200: the game server must be able to decode every reply
        return JSONResponse(body, status_code=200, headers=NO_STORE)

    @app.api_route("/api/get-donation-asset", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def get_donation_asset(request: Request):
        return await _aggregate(request, AGGREGATOR_HOSTS, allow_clothing=True, label="GetDonationAsset")

    @app.api_route("/api/get-gamepass", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def get_gamepass(request: Request):
        return await _aggregate(request, GAMEPASS_HOSTS, allow_clothing=False, label="GetGamepass")

    @app.api_route("/api/fetch-url", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    @app.api_route("/api/proxy", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def fetch_url(request: Request):
        gw_kwargs = {k: v for k, v in pipeline_kwargs.items() if k in ("sleep", "delay_ms")}
        status, body, headers = await gateway.relay(
            request.method,
            request.query_params.get("url"),
            http=await _client(),
            **gw_kwargs,
        )
        return JSONResponse(body, status_code=status, headers={**NO_STORE, **headers})

    @app.get("/health")
    async def health():
        return JSONResponse({"ok": True}, headers=NO_STORE)

    return app


app = create_app()


def main():
    _setup_logging()
    print(f'✅ donation assets api on {CFG.HOST}:{CFG.PORT}')
    uvicorn.run(app, host=CFG.HOST, port=CFG.PORT, log_config=None)


if __name__ == '__main__':
    try:
        main()
    except (KeyboardInterrupt, SystemExit):
        print('🛑 api stopped')
