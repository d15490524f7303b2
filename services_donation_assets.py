# services_donation_assets.py
# userId -> games -> universes -> game passes; inventory -> catalog details -> ownership
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple
from urllib.parse import urlencode

import httpx

from config import (
    AGGREGATOR_HOSTS,
    ASSET_TYPE_IDS,
    CFG,
    GAMEPASS_TYPE_ID,
    INVENTORY_ASSET_TYPES,
)
from http_shared import DEFAULT_RETRY_POLICY, RetryPolicy, Sleep, upstream_delay_ms
from limiter import Limiter
from models import (
    AggregationResult,
    AssetEntry,
    FaultLog,
    PipelineOptions,
    is_positive_id,
    parse_robux_price,
    to_int,
)
from ownership import CreatorRef, GroupOwnerCache, classify_creator, owns_asset, parse_group_owner_user_id
from roblox_client import CatalogDetailsClient, CsrfTokenCache, UpstreamClient, UpstreamMetrics

log = logging.getLogger("services.donation_assets")

GAMES_URL = "https://games.roblox.com/v2/users/{uid}/games?sortOrder=Asc&limit=50"
UNIVERSE_URL = "https://apis.roblox.com/universes/v1/places/{pid}/universe"
GAMEPASSES_URL = "https://apis.roblox.com/game-passes/v1/universes/{universe_id}/game-passes"
INVENTORY_ITEMS_URL = "https://apis.roblox.com/cloud/v2/users/{uid}/inventory-items"
GROUP_URL = "https://apis.roblox.com/cloud/v2/groups/{gid}"


class RequestLog(logging.LoggerAdapter):
    """Prefixes every line with [<label>:<request id>]."""

    def process(self, msg, kwargs):
        return f"[{self.extra['label']}:{self.extra['request_id']}] {msg}", kwargs


def next_page_token(obj: Any) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    t = obj.get("nextPageToken")
    if t is None:
        return None
    s = str(t).strip()
    return s or None


def _non_blank(v) -> Optional[str]:
    if isinstance(v, str) and v.strip():
        return v
    return None


def gamepass_name(gp: Dict[str, Any], gp_id: int) -> str:
    return _non_blank(gp.get("name")) or _non_blank(gp.get("displayName")) or f"Game Pass {gp_id}"


def is_catalog_for_sale(item: Any) -> bool:
    if not isinstance(item, dict):
        return False
    if item.get("isOffSale") is True:
        return False
    price = parse_robux_price(item.get("price"))
    if price is None or price <= 0:
        return False
    ps = item.get("priceStatus")
    if isinstance(ps, str) and ps.strip().lower() == "offsale":
        return False
    return True


def _unique(values: Iterable[int]) -> List[int]:
    seen: Set[int] = set()
    out: List[int] = []
    for v in values:
        if v is None or v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


class DonationAssetsPipeline:
    """Five-stage discovery walk for one user.

    Fan-out units return their own results; merging into the catalog
    happens in one synchronous pass after each gather.
    """

    def __init__(
        self,
        upstream: UpstreamClient,
        options: PipelineOptions,
        *,
        catalog: Optional[CatalogDetailsClient] = None,
        limiter: Optional[Limiter] = None,
        group_owners: Optional[GroupOwnerCache] = None,
        logger=None,
    ) -> None:
        self.upstream = upstream
        self.catalog = catalog
        self.options = options
        self.limiter = limiter or Limiter(options.concurrency)
        self.group_owners = group_owners if group_owners is not None else GroupOwnerCache()
        self.log = logger or log

    @property
    def errors(self) -> FaultLog:
        return self.upstream.errors

    async def run(self, result: AggregationResult) -> AggregationResult:
        user_id = result.user_id

        place_ids = await self.fetch_place_ids(user_id)
        result.places = len(place_ids)

        universe_ids = await self.fetch_universe_ids(user_id, place_ids)
        result.universes = len(universe_ids)

        if self.options.include_gamepasses:
            passes = await self.fetch_gamepasses(user_id, universe_ids)
            result.data["GAMEPASS"].update(passes)

        if self.options.include_clothing:
            assets_by_type = await self.fetch_inventory(user_id)
            clothing = await self.resolve_clothing(user_id, assets_by_type)
            for inv_key, entries in clothing.items():
                result.data[inv_key].update(entries)

        return result

    # ---- A) games -> place ids ----
    async def fetch_place_ids(self, user_id: int) -> List[int]:
        js = await self.upstream.get_json(GAMES_URL.format(uid=user_id), "games.list", {"userId": user_id})
        games = js.get("data") if isinstance(js, dict) else None
        raw: List[int] = []
        for item in games if isinstance(games, list) else []:
            root = item.get("rootPlace") if isinstance(item, dict) else None
            pid = root.get("id") if isinstance(root, dict) else None
            if is_positive_id(pid):
                raw.append(int(pid))
        return _unique(raw)[: self.options.max_places]

    # ---- B) place -> universe ----
    async def _universe_for_place(self, user_id: int, place_id: int) -> Optional[int]:
        js = await self.upstream.get_json(
            UNIVERSE_URL.format(pid=place_id), "universes.fromPlace", {"userId": user_id, "placeId": place_id}
        )
        universe_id = js.get("universeId") if isinstance(js, dict) else None
        if is_positive_id(universe_id):
            return int(universe_id)
        if js is not None:
            self.errors.add(
                "universes.fromPlace",
                "Invalid universe response (missing universeId)",
                userId=user_id,
                placeId=place_id,
                response=js,
            )
            self.log.warning(f"FAIL step=universes.fromPlace reason=missing_universeId placeId={place_id}")
        return None

    async def fetch_universe_ids(self, user_id: int, place_ids: List[int]) -> List[int]:
        results = await asyncio.gather(
            *(self.limiter.run(lambda pid=pid: self._universe_for_place(user_id, pid)) for pid in place_ids)
        )
        return _unique(results)

    # ---- C) game passes ----
    async def _universe_gamepasses(self, user_id: int, universe_id: int) -> List[Tuple[int, AssetEntry]]:
        out: List[Tuple[int, AssetEntry]] = []
        page_token: Optional[str] = None
        for page in range(self.options.max_universe_pages):
            params = {"passView": "Full", "pageSize": self.options.page_size}
            if page_token:
                params["pageToken"] = page_token
            url = GAMEPASSES_URL.format(universe_id=universe_id) + "?" + urlencode(params)
            js = await self.upstream.get_json(
                url, "gamepasses.list", {"userId": user_id, "universeId": universe_id, "page": page}
            )
            if js is None:
                break

            passes = js.get("gamePasses") if isinstance(js, dict) else None
            for gp in passes if isinstance(passes, list) else []:
                if not isinstance(gp, dict):
                    continue
                gp_id = gp.get("id")
                if not is_positive_id(gp_id):
                    continue
                if gp.get("isForSale") is not True:
                    continue
                price = parse_robux_price(gp.get("price"))
                if price is None or price <= 0:
                    continue
                gp_id = int(gp_id)
                out.append((gp_id, AssetEntry(gamepass_name(gp, gp_id), "GAMEPASS", GAMEPASS_TYPE_ID, price)))

            page_token = next_page_token(js)
            if not page_token:
                break
        return out

    async def fetch_gamepasses(self, user_id: int, universe_ids: List[int]) -> Dict[str, AssetEntry]:
        per_universe = await asyncio.gather(
            *(self.limiter.run(lambda u=u: self._universe_gamepasses(user_id, u)) for u in universe_ids)
        )
        merged: Dict[str, AssetEntry] = {}
        for passes in per_universe:
            for gp_id, entry in passes:
                merged.setdefault(str(gp_id), entry)
        return merged

    # ---- D) inventory ----
    async def _inventory_asset_ids(self, user_id: int, asset_type: str) -> Set[int]:
        ids: Set[int] = set()
        page_token: Optional[str] = None
        for page in range(self.options.max_inventory_pages):
            params = {"maxPageSize": self.options.page_size, "filter": f"inventoryItemAssetTypes={asset_type}"}
            if page_token:
                params["pageToken"] = page_token
            url = INVENTORY_ITEMS_URL.format(uid=user_id) + "?" + urlencode(params)
            js = await self.upstream.get_json(
                url, "inventory.list", {"userId": user_id, "assetType": asset_type, "page": page}
            )
            if js is None:
                break

            items = js.get("inventoryItems") if isinstance(js, dict) else None
            for it in items if isinstance(items, list) else []:
                details = it.get("assetDetails") if isinstance(it, dict) else None
                raw = details.get("assetId") if isinstance(details, dict) else None
                if isinstance(raw, str) and not raw.strip():
                    continue
                aid = to_int(raw)
                if aid is not None and aid > 0:
                    ids.add(aid)

            page_token = next_page_token(js)
            if not page_token:
                break
        return ids

    async def fetch_inventory(self, user_id: int) -> Dict[str, Set[int]]:
        results = await asyncio.gather(
            *(self.limiter.run(lambda t=t: self._inventory_asset_ids(user_id, t)) for t in INVENTORY_ASSET_TYPES)
        )
        return dict(zip(INVENTORY_ASSET_TYPES, results))

    # ---- E) catalog details + ownership ----
    async def _group_owner(self, user_id: int, group_id: int) -> Optional[int]:
        js = await self.upstream.get_json(
            GROUP_URL.format(gid=group_id), "groups.get", {"userId": user_id, "groupId": group_id}
        )
        return parse_group_owner_user_id(js) if js else None

    async def _owns(self, user_id: int, ref: CreatorRef) -> bool:
        owner = await self.group_owners.owner_of(ref.target_id, lambda gid: self._group_owner(user_id, gid))
        return owns_asset(ref, user_id, owner)

    async def resolve_clothing(self, user_id: int, assets_by_type: Mapping[str, Set[int]]) -> Dict[str, Dict[str, AssetEntry]]:
        out: Dict[str, Dict[str, AssetEntry]] = {k: {} for k in INVENTORY_ASSET_TYPES}
        type_lookup: Dict[int, str] = {}
        ordered: List[int] = []
        for inv_key in INVENTORY_ASSET_TYPES:
            for aid in sorted(assets_by_type.get(inv_key) or ()):
                type_lookup[aid] = inv_key
                ordered.append(aid)
        all_ids = _unique(ordered)
        if not all_ids or self.catalog is None:
            return out

        batch_size = self.options.catalog_batch_size
        for i in range(0, len(all_ids), batch_size):
            batch = all_ids[i : i + batch_size]
            details = await self.catalog.fetch(batch, {"userId": user_id})
            if not details:
                continue

            direct: List[Tuple[str, str, AssetEntry]] = []
            probes: List[Tuple[CreatorRef, str, str, AssetEntry]] = []
            for item in details:
                if not isinstance(item, dict):
                    continue
                aid = item.get("id")
                if not is_positive_id(aid):
                    continue
                aid = int(aid)
                inv_key = type_lookup.get(aid)
                if not inv_key or not is_catalog_for_sale(item):
                    continue
                ref = classify_creator(item.get("creatorType"), item.get("creatorTargetId"))
                if ref is None:
                    continue
                name = _non_blank(item.get("name")) or f"Asset {aid}"
                entry = AssetEntry(name, inv_key, ASSET_TYPE_IDS[inv_key], parse_robux_price(item.get("price")))
                if ref.needs_group_probe:
                    probes.append((ref, inv_key, str(aid), entry))
                elif owns_asset(ref, user_id):
                    direct.append((inv_key, str(aid), entry))

            verdicts = await asyncio.gather(
                *(self.limiter.run(lambda ref=ref: self._owns(user_id, ref)) for ref, _, _, _ in probes)
            )
            for inv_key, aid, entry in direct:
                out[inv_key][aid] = entry
            for (ref, inv_key, aid, entry), owned in zip(probes, verdicts):
                if owned:
                    out[inv_key][aid] = entry
        return out


async def handle_donation_assets(
    method: str,
    query: Mapping[str, Any],
    *,
    http: httpx.AsyncClient,
    tokens: CsrfTokenCache,
    allowed_hosts: Iterable[str] = AGGREGATOR_HOSTS,
    allow_clothing: bool = True,
    gateway_url: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    sleep: Sleep = asyncio.sleep,
    delay_ms=upstream_delay_ms,
    request_id: Optional[str] = None,
    label: str = "GetDonationAsset",
) -> Dict[str, Any]:
    """Validate the inbound query, run the pipeline, and always return a full body."""
    request_id = request_id or uuid.uuid4().hex
    rlog = RequestLog(log, {"label": label, "request_id": request_id})
    result = AggregationResult()
    started = time.monotonic()

    def finish() -> Dict[str, Any]:
        return result.to_dict()

    try:
        if (method or "").upper() != "GET":
            result.errors.add("validate", "Method not allowed (GET only)")
            rlog.warning("FAIL step=validate reason=method_not_allowed")
            rlog.info(f"END ok=false ms={int((time.monotonic() - started) * 1000)} errors={len(result.errors)}")
            return finish()

        user_id = to_int(query.get("userId"))
        if user_id is None or user_id <= 0:
            result.errors.add(
                "validate", "Missing or invalid userId (must be a positive integer)", userId=query.get("userId")
            )
            rlog.warning("FAIL step=validate reason=invalid_userId")
            rlog.info(f"END ok=false ms={int((time.monotonic() - started) * 1000)} errors={len(result.errors)}")
            return finish()
        result.user_id = user_id

        options = PipelineOptions.from_query(query, allow_clothing=allow_clothing)
        metrics = UpstreamMetrics()
        gateway_url = CFG.GATEWAY_URL if gateway_url is None else gateway_url
        common = dict(
            allowed_hosts=allowed_hosts,
            headers=headers,
            policy=policy,
            sleep=sleep,
            delay_ms=delay_ms,
            metrics=metrics,
            logger=rlog,
        )
        upstream = UpstreamClient(http, result.errors, gateway_url=gateway_url, **common)
        catalog = CatalogDetailsClient(http, result.errors, tokens=tokens, **common) if options.include_clothing else None
        pipeline = DonationAssetsPipeline(upstream, options, catalog=catalog, logger=rlog)

        rlog.info(
            f"START userId={user_id} includeGamepasses={options.include_gamepasses} "
            f"includeClothing={options.include_clothing} concurrency={options.concurrency} "
            f"delayMs={CFG.UPSTREAM_DELAY_MIN_MS}-{CFG.UPSTREAM_DELAY_MAX_MS} "
            f"timeoutMs={int(CFG.UPSTREAM_TIMEOUT * 1000)} maxAttempts={policy.max_attempts} "
            f"mode={'gateway' if gateway_url else 'direct'}"
        )

        await pipeline.run(result)

        rlog.info(
            f"END ok={str(result.ok).lower()} ms={int((time.monotonic() - started) * 1000)} errors={len(result.errors)} "
            f"places={result.places} universes={result.universes} "
            f"gamepasses={result.gamepasses} clothing={result.clothing} {metrics.summary()}"
        )
        return finish()
    except Exception as e:
        result.errors.add("fatal", "Unhandled server error", error=str(e) or type(e).__name__)
        rlog.exception(f"END ok=false reason=fatal ms={int((time.monotonic() - started) * 1000)} error=\"{e}\"")
        return finish()
