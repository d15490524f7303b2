import json
from unittest.mock import patch

import httpx
import pytest

from conftest import no_delay, reply
from roblox_client import CATALOG_DETAILS_URL, CsrfTokenCache
import services_donation_assets
from services_donation_assets import handle_donation_assets, is_catalog_for_sale, next_page_token

USER = 123456
GAMES_URL = f"https://games.roblox.com/v2/users/{USER}/games"
PASSES_42 = "https://apis.roblox.com/game-passes/v1/universes/42/game-passes"


async def aggregate(stub, sleeper, policy, query, method="GET", tokens=None, **kw):
    return await handle_donation_assets(
        method,
        query,
        http=stub.client(),
        tokens=tokens or CsrfTokenCache(),
        headers={},
        gateway_url="",
        policy=policy,
        sleep=sleeper,
        delay_ms=no_delay,
        **kw,
    )


def games_with_places(*place_ids):
    return reply(200, json={"data": [{"id": 1000 + p, "rootPlace": {"id": p, "type": "Place"}} for p in place_ids]})


def universe(uid):
    return reply(200, json={"universeId": uid})


def passes_page(passes, token=None):
    return reply(200, json={"gamePasses": passes, "nextPageToken": token})


class TestValidation:
    @pytest.mark.asyncio
    async def test_zero_user_id(self, stub, sleeper, policy):
        out = await aggregate(stub, sleeper, policy, {"userId": "0"})

        assert out["ok"] is False
        assert [e["step"] for e in out["errors"]] == ["validate"]
        assert len(stub.requests) == 0
        assert set(out["data"]) == {"GAMEPASS", "CLASSIC_TSHIRT", "CLASSIC_SHIRT", "CLASSIC_PANTS"}
        assert out["summary"] == {"places": 0, "universes": 0, "gamepasses": 0, "clothing": 0}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [None, "", "abc", "-4"])
    async def test_invalid_user_id(self, stub, sleeper, policy, raw):
        query = {} if raw is None else {"userId": raw}
        out = await aggregate(stub, sleeper, policy, query)

        assert out["ok"] is False
        assert out["errors"][0]["message"] == "Missing or invalid userId (must be a positive integer)"
        assert len(stub.requests) == 0

    @pytest.mark.asyncio
    async def test_non_get(self, stub, sleeper, policy):
        out = await aggregate(stub, sleeper, policy, {"userId": "5"}, method="POST")

        assert out["ok"] is False
        assert out["errors"] == [{"step": "validate", "message": "Method not allowed (GET only)", "context": {}}]


class TestGamepasses:
    @pytest.mark.asyncio
    async def test_single_pass_end_to_end(self, stub, sleeper, policy):
        stub.on("GET", GAMES_URL, games_with_places(999))
        stub.on("GET", "https://apis.roblox.com/universes/v1/places/999/universe", universe(42))
        stub.on("GET", PASSES_42, passes_page([{"id": 7, "name": "VIP", "price": 100, "isForSale": True}]))

        out = await aggregate(stub, sleeper, policy, {"userId": str(USER), "includeClothing": "false"})

        assert out["ok"] is True
        assert out["userId"] == USER
        assert out["errors"] == []
        assert out["data"]["GAMEPASS"] == {
            "7": {"AssetName": "VIP", "AssetType": "GAMEPASS", "AssetTypeId": 34, "AssetPrice": 100}
        }
        assert out["data"]["CLASSIC_TSHIRT"] == {}
        assert out["summary"] == {"places": 1, "universes": 1, "gamepasses": 1, "clothing": 0}
        assert stub.count(host="catalog.roblox.com") == 0

    @pytest.mark.asyncio
    async def test_filters_and_name_fallbacks(self, stub, sleeper, policy):
        stub.on("GET", GAMES_URL, games_with_places(999))
        stub.on("GET", "https://apis.roblox.com/universes/v1/places/999/universe", universe(42))
        stub.on(
            "GET",
            PASSES_42,
            passes_page(
                [
                    {"id": 1, "name": "", "displayName": "Shown", "price": "25", "isForSale": True},
                    {"id": 2, "price": 10, "isForSale": True},
                    {"id": 3, "name": "Free", "price": 0, "isForSale": True},
                    {"id": 4, "name": "Hidden", "price": 50, "isForSale": False},
                    {"id": 5, "name": "NoPrice", "price": None, "isForSale": True},
                    {"id": "6", "name": "StringId", "price": 5, "isForSale": True},
                ]
            ),
        )

        out = await aggregate(stub, sleeper, policy, {"userId": str(USER), "includeClothing": "0"})

        passes = out["data"]["GAMEPASS"]
        assert set(passes) == {"1", "2"}
        assert passes["1"]["AssetName"] == "Shown"
        assert passes["1"]["AssetPrice"] == 25
        assert passes["2"]["AssetName"] == "Game Pass 2"

    @pytest.mark.asyncio
    async def test_pagination_stops_when_token_missing(self, stub, sleeper, policy):
        tokens = {None: "p2", "p2": "p3", "p3": "p4", "p4": None}

        def paged(request):
            current = request.url.params.get("pageToken")
            n = {None: 1, "p2": 2, "p3": 3, "p4": 4}[current]
            return httpx.Response(
                200,
                json={"gamePasses": [{"id": n, "name": f"P{n}", "price": n, "isForSale": True}], "nextPageToken": tokens[current]},
            )

        stub.on("GET", GAMES_URL, games_with_places(999))
        stub.on("GET", "https://apis.roblox.com/universes/v1/places/999/universe", universe(42))
        stub.on("GET", PASSES_42, paged)

        out = await aggregate(stub, sleeper, policy, {"userId": str(USER), "includeClothing": "false", "pageSize": "1"})

        assert stub.count(path="/game-passes/v1/universes/42/game-passes") == 4
        assert set(out["data"]["GAMEPASS"]) == {"1", "2", "3", "4"}
        assert stub.requests[-1].url.params["pageSize"] == "1"
        assert stub.requests[-1].url.params["passView"] == "Full"

    @pytest.mark.asyncio
    async def test_pagination_cap(self, stub, sleeper, policy):
        stub.on("GET", GAMES_URL, games_with_places(999))
        stub.on("GET", "https://apis.roblox.com/universes/v1/places/999/universe", universe(42))
        stub.on("GET", PASSES_42, passes_page([], token="more"))

        await aggregate(stub, sleeper, policy, {"userId": str(USER), "includeClothing": "false", "maxUniversePages": "2"})

        assert stub.count(path="/game-passes/v1/universes/42/game-passes") == 2

    @pytest.mark.asyncio
    async def test_dedupes_places_universes_and_passes(self, stub, sleeper, policy):
        stub.on("GET", GAMES_URL, games_with_places(1, 2, 2))
        stub.on("GET", "https://apis.roblox.com/universes/v1/places/1/universe", universe(42))
        stub.on("GET", "https://apis.roblox.com/universes/v1/places/2/universe", universe(43))
        stub.on("GET", PASSES_42, passes_page([{"id": 7, "name": "First", "price": 1, "isForSale": True}]))
        stub.on(
            "GET",
            "https://apis.roblox.com/game-passes/v1/universes/43/game-passes",
            passes_page([{"id": 7, "name": "Second", "price": 2, "isForSale": True}]),
        )

        out = await aggregate(stub, sleeper, policy, {"userId": str(USER), "includeClothing": "false"})

        assert out["summary"]["places"] == 2
        assert out["summary"]["universes"] == 2
        assert out["data"]["GAMEPASS"] == {
            "7": {"AssetName": "First", "AssetType": "GAMEPASS", "AssetTypeId": 34, "AssetPrice": 1}
        }

    @pytest.mark.asyncio
    async def test_max_places_truncates(self, stub, sleeper, policy):
        stub.on("GET", GAMES_URL, games_with_places(1, 2, 3))

        out = await aggregate(stub, sleeper, policy, {"userId": str(USER), "includeClothing": "false", "maxPlaces": "2"})

        assert out["summary"]["places"] == 2
        assert stub.count(path="/universes/v1/places/3/universe") == 0

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_data(self, stub, sleeper, policy):
        stub.on("GET", GAMES_URL, games_with_places(1, 2))
        stub.on("GET", "https://apis.roblox.com/universes/v1/places/1/universe", universe(42))
        stub.on("GET", "https://apis.roblox.com/universes/v1/places/2/universe", reply(200, json={"nope": True}))
        stub.on("GET", PASSES_42, passes_page([{"id": 7, "name": "VIP", "price": 100, "isForSale": True}]))

        out = await aggregate(stub, sleeper, policy, {"userId": str(USER), "includeClothing": "false"})

        assert out["ok"] is False
        assert [e["step"] for e in out["errors"]] == ["universes.fromPlace"]
        assert out["errors"][0]["context"]["placeId"] == 2
        assert out["data"]["GAMEPASS"]["7"]["AssetName"] == "VIP"
        assert out["summary"]["universes"] == 1

    @pytest.mark.asyncio
    async def test_games_failure_still_returns_full_body(self, stub, sleeper, policy):
        stub.on("GET", GAMES_URL, reply(400, json={"errors": [{"code": 1}]}))

        out = await aggregate(stub, sleeper, policy, {"userId": str(USER), "includeClothing": "false"})

        assert out["ok"] is False
        assert out["errors"][0]["step"] == "games.list"
        assert out["summary"] == {"places": 0, "universes": 0, "gamepasses": 0, "clothing": 0}

    @pytest.mark.asyncio
    async def test_idempotent(self, stub, sleeper, policy):
        stub.on("GET", GAMES_URL, games_with_places(1, 2))
        stub.on("GET", "https://apis.roblox.com/universes/v1/places/1/universe", universe(42))
        stub.on("GET", "https://apis.roblox.com/universes/v1/places/2/universe", universe(43))
        stub.on("GET", PASSES_42, passes_page([{"id": 7, "name": "A", "price": 1, "isForSale": True}]))
        stub.on(
            "GET",
            "https://apis.roblox.com/game-passes/v1/universes/43/game-passes",
            passes_page([{"id": 8, "name": "B", "price": 2, "isForSale": True}]),
        )
        query = {"userId": str(USER), "includeClothing": "false"}

        first = await aggregate(stub, sleeper, policy, query)
        second = await aggregate(stub, sleeper, policy, query)

        assert first["data"] == second["data"]
        assert first["summary"] == second["summary"]


def _inventory(request):
    by_type = {
        "CLASSIC_TSHIRT": ["1", "2", "3"],
        "CLASSIC_SHIRT": ["4", "5"],
        "CLASSIC_PANTS": ["6", ""],
    }
    asset_type = request.url.params["filter"].split("=", 1)[1]
    return httpx.Response(
        200,
        json={"inventoryItems": [{"assetDetails": {"assetId": a}} for a in by_type[asset_type]], "nextPageToken": ""},
    )


CATALOG_ITEMS = [
    {"id": 1, "name": "Mine", "price": 5, "creatorType": "User", "creatorTargetId": 100},
    {"id": 2, "name": "Theirs", "price": 5, "creatorType": "User", "creatorTargetId": 999},
    {"id": 3, "name": "Offsale", "price": 5, "isOffSale": True, "creatorType": "User", "creatorTargetId": 100},
    {"id": 4, "name": "GroupShirt", "price": 8, "creatorType": "Group", "creatorTargetId": 555},
    {"id": 5, "name": "", "price": 9, "creatorType": 7, "creatorTargetId": 100},
    {"id": 6, "name": "GroupPants", "price": 10, "creatorType": 2, "creatorTargetId": 555},
    {"id": 77, "name": "NotInInventory", "price": 10, "creatorType": "User", "creatorTargetId": 100},
]


class TestClothing:
    def _wire(self, stub):
        stub.on("GET", "https://games.roblox.com/v2/users/100/games", reply(200, json={"data": []}))
        stub.on("GET", "https://apis.roblox.com/cloud/v2/users/100/inventory-items", _inventory)
        stub.on(
            "POST",
            CATALOG_DETAILS_URL,
            reply(403, json={}, headers={"x-csrf-token": "fresh"}),
            reply(200, json={"data": CATALOG_ITEMS}),
        )
        stub.on("GET", "https://apis.roblox.com/cloud/v2/groups/555", reply(200, json={"path": "groups/555", "owner": "users/100"}))
        # id 100 read as a group: readable but ownerless, so it's treated as the user
        stub.on("GET", "https://apis.roblox.com/cloud/v2/groups/100", reply(200, json={"path": "groups/100"}))

    @pytest.mark.asyncio
    async def test_inventory_to_catalog_ownership(self, stub, sleeper, policy):
        self._wire(stub)
        tokens = CsrfTokenCache()

        out = await aggregate(stub, sleeper, policy, {"userId": "100", "includeGamepasses": "false"}, tokens=tokens)

        assert out["errors"] == []
        assert out["ok"] is True
        data = out["data"]
        assert data["CLASSIC_TSHIRT"] == {
            "1": {"AssetName": "Mine", "AssetType": "CLASSIC_TSHIRT", "AssetTypeId": 2, "AssetPrice": 5}
        }
        assert set(data["CLASSIC_SHIRT"]) == {"4", "5"}
        assert data["CLASSIC_SHIRT"]["4"]["AssetTypeId"] == 11
        assert data["CLASSIC_SHIRT"]["5"]["AssetName"] == "Asset 5"
        assert data["CLASSIC_PANTS"] == {
            "6": {"AssetName": "GroupPants", "AssetType": "CLASSIC_PANTS", "AssetTypeId": 12, "AssetPrice": 10}
        }
        assert out["summary"]["clothing"] == 4
        assert out["summary"]["clothing"] == sum(len(data[k]) for k in ("CLASSIC_TSHIRT", "CLASSIC_SHIRT", "CLASSIC_PANTS"))

        assert stub.count(path="/cloud/v2/groups/555") == 1
        assert stub.count(path="/v1/catalog/items/details") == 2
        assert tokens.get() == "fresh"
        posted = json.loads([r for r in stub.requests if r.method == "POST"][-1].content)
        assert sorted(i["id"] for i in posted["items"]) == [1, 2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_ambiguous_creator_owned_by_group(self, stub, sleeper, policy):
        self._wire(stub)
        # now id 100 resolves to a group owned by someone else
        stub.routes = [r for r in stub.routes if r[2] != "/cloud/v2/groups/100"]
        stub.on("GET", "https://apis.roblox.com/cloud/v2/groups/100", reply(200, json={"owner": "users/1"}))

        out = await aggregate(stub, sleeper, policy, {"userId": "100", "includeGamepasses": "false"})

        assert "5" not in out["data"]["CLASSIC_SHIRT"]
        assert "4" in out["data"]["CLASSIC_SHIRT"]

    @pytest.mark.asyncio
    async def test_catalog_failure_is_recorded_and_skipped(self, stub, sleeper, policy):
        stub.on("GET", "https://games.roblox.com/v2/users/100/games", reply(200, json={"data": []}))
        stub.on("GET", "https://apis.roblox.com/cloud/v2/users/100/inventory-items", _inventory)
        stub.on("POST", CATALOG_DETAILS_URL, reply(400, json={"errors": []}))

        out = await aggregate(stub, sleeper, policy, {"userId": "100", "includeGamepasses": "false"})

        assert out["ok"] is False
        assert [e["step"] for e in out["errors"]] == ["catalog.details"]
        assert out["summary"]["clothing"] == 0

    @pytest.mark.asyncio
    async def test_batches_of_fifty(self, stub, sleeper, policy):
        def many(request):
            asset_type = request.url.params["filter"].split("=", 1)[1]
            if asset_type != "CLASSIC_TSHIRT":
                return httpx.Response(200, json={"inventoryItems": []})
            return httpx.Response(200, json={"inventoryItems": [{"assetDetails": {"assetId": str(i)}} for i in range(1, 121)]})

        stub.on("GET", "https://games.roblox.com/v2/users/100/games", reply(200, json={"data": []}))
        stub.on("GET", "https://apis.roblox.com/cloud/v2/users/100/inventory-items", many)
        stub.on("POST", CATALOG_DETAILS_URL, reply(200, json={"data": []}))

        out = await aggregate(stub, sleeper, policy, {"userId": "100", "includeGamepasses": "false"})

        posts = [json.loads(r.content) for r in stub.requests if r.method == "POST"]
        assert [len(p["items"]) for p in posts] == [50, 50, 20]
        assert out["ok"] is True

    @pytest.mark.asyncio
    async def test_clothing_disabled_skips_inventory(self, stub, sleeper, policy):
        stub.on("GET", "https://games.roblox.com/v2/users/100/games", reply(200, json={"data": []}))

        await aggregate(stub, sleeper, policy, {"userId": "100", "includeClothing": "no"})

        assert stub.count(path="/cloud/v2/users/100/inventory-items") == 0

    @pytest.mark.asyncio
    async def test_gamepass_only_mode_ignores_clothing_flag(self, stub, sleeper, policy):
        stub.on("GET", "https://games.roblox.com/v2/users/100/games", reply(200, json={"data": []}))

        out = await aggregate(
            stub,
            sleeper,
            policy,
            {"userId": "100", "includeClothing": "true"},
            allow_clothing=False,
            allowed_hosts=("apis.roblox.com", "games.roblox.com"),
        )

        assert out["ok"] is True
        assert stub.count(host="catalog.roblox.com") == 0
        assert out["summary"]["clothing"] == 0


class TestFatal:
    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_fatal_fault(self, stub, sleeper, policy):
        with patch.object(services_donation_assets.DonationAssetsPipeline, "run", side_effect=RuntimeError("boom")):
            out = await aggregate(stub, sleeper, policy, {"userId": "5"})

        assert out["ok"] is False
        assert out["userId"] == 5
        assert out["errors"] == [{"step": "fatal", "message": "Unhandled server error", "context": {"error": "boom"}}]


class TestHelpers:
    def test_next_page_token(self):
        assert next_page_token({"nextPageToken": "abc"}) == "abc"
        assert next_page_token({"nextPageToken": "  "}) is None
        assert next_page_token({"nextPageToken": None}) is None
        assert next_page_token({}) is None
        assert next_page_token(None) is None

    def test_is_catalog_for_sale(self):
        assert is_catalog_for_sale({"price": 5})
        assert not is_catalog_for_sale({"price": 5, "isOffSale": True})
        assert not is_catalog_for_sale({"price": 0})
        assert not is_catalog_for_sale({"price": 5, "priceStatus": "OffSale"})
        assert not is_catalog_for_sale({"price": "n/a"})
        assert not is_catalog_for_sale(None)
