from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from config import ASSET_LIST_KEYS, DEFAULTS


def to_int(value) -> Optional[int]:
    """Integer from a number or numeric string (truncated); None otherwise."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s:
        return None
    try:
        n = float(s)
    except ValueError:
        return None
    return int(n) if math.isfinite(n) else None


def parse_bool(value, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in ("true", "1", "yes", "y"):
        return True
    if s in ("false", "0", "no", "n"):
        return False
    return default


def parse_robux_price(value):
    """Price as a finite number, or None. Integral floats come back as int."""
    n = None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        n = value
    elif isinstance(value, str) and value.strip():
        try:
            n = float(value.strip())
        except ValueError:
            return None
    if n is None or not math.isfinite(n):
        return None
    if isinstance(n, float) and n.is_integer():
        return int(n)
    return n


def is_positive_id(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value) and value > 0


def _clamp(n: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, n))


@dataclass(frozen=True)
class AssetEntry:
    name: str
    asset_type: str
    asset_type_id: int
    price: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "AssetName": self.name,
            "AssetType": self.asset_type,
            "AssetTypeId": self.asset_type_id,
            "AssetPrice": self.price,
        }


def empty_catalog() -> Dict[str, Dict[str, AssetEntry]]:
    return {key: {} for key in ASSET_LIST_KEYS}


@dataclass(frozen=True)
class FaultRecord:
    step: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"step": self.step, "message": self.message, "context": self.context}


class FaultLog(list):
    """Append-only list of FaultRecord for one request."""

    def add(self, step: str, message: str, **context) -> FaultRecord:
        rec = FaultRecord(step=step, message=message, context=context)
        self.append(rec)
        return rec


@dataclass
class PipelineOptions:
    include_gamepasses: bool = True
    include_clothing: bool = True
    max_places: int = 50
    max_universe_pages: int = 10
    max_inventory_pages: int = 10
    page_size: int = 100
    concurrency: int = 5
    catalog_batch_size: int = 50

    def __post_init__(self) -> None:
        self.max_places = _clamp(int(self.max_places), 1, 50)
        self.max_universe_pages = _clamp(int(self.max_universe_pages), 1, 100)
        self.max_inventory_pages = _clamp(int(self.max_inventory_pages), 1, 100)
        self.page_size = _clamp(int(self.page_size), 1, 100)
        self.concurrency = _clamp(int(self.concurrency), 1, 50)
        self.catalog_batch_size = _clamp(int(self.catalog_batch_size), 1, 100)

    @classmethod
    def from_query(cls, query: Mapping[str, Any], *, allow_clothing: bool = True) -> "PipelineOptions":
        def int_or_default(name: str) -> int:
            n = to_int(query.get(name))
            return DEFAULTS[name] if n is None else n

        return cls(
            include_gamepasses=parse_bool(query.get("includeGamepasses"), DEFAULTS["includeGamepasses"]),
            include_clothing=allow_clothing and parse_bool(query.get("includeClothing"), DEFAULTS["includeClothing"]),
            max_places=int_or_default("maxPlaces"),
            max_universe_pages=int_or_default("maxUniversePages"),
            max_inventory_pages=int_or_default("maxInventoryPages"),
            page_size=int_or_default("pageSize"),
            concurrency=DEFAULTS["concurrency"],
            catalog_batch_size=DEFAULTS["catalogBatchSize"],
        )


@dataclass
class AggregationResult:
    user_id: int = 0
    places: int = 0
    universes: int = 0
    data: Dict[str, Dict[str, AssetEntry]] = field(default_factory=empty_catalog)
    errors: FaultLog = field(default_factory=FaultLog)

    @property
    def ok(self) -> bool:
        return len(self.errors) == 0

    @property
    def gamepasses(self) -> int:
        return len(self.data["GAMEPASS"])

    @property
    def clothing(self) -> int:
        return sum(len(self.data[k]) for k in ASSET_LIST_KEYS if k != "GAMEPASS")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "userId": self.user_id,
            "summary": {
                "places": self.places,
                "universes": self.universes,
                "gamepasses": self.gamepasses,
                "clothing": self.clothing,
            },
            "data": {key: {aid: e.to_dict() for aid, e in bucket.items()} for key, bucket in self.data.items()},
            "errors": [e.to_dict() for e in self.errors],
        }
