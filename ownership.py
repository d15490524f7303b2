"""Creator attribution for catalog items.

The catalog's ``creatorType`` field shows up both as a string ("User"/"Group")
and as a number (1/2 in the common mapping, other values seen in the wild).
Anything we can't map is kept as AMBIGUOUS and resolved by probing the id as
a group first, then falling back to treating it as a user.
"""
from __future__ import annotations

import asyncio
import enum
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from models import to_int

_OWNER_RE = re.compile(r"users/(\d+)", re.IGNORECASE)


class CreatorKind(enum.Enum):
    USER = "User"
    GROUP = "Group"
    AMBIGUOUS = "Ambiguous"


@dataclass(frozen=True)
class CreatorRef:
    kind: CreatorKind
    target_id: int

    @property
    def needs_group_probe(self) -> bool:
        return self.kind is not CreatorKind.USER


def classify_creator(creator_type, creator_target_id) -> Optional[CreatorRef]:
    """Map raw catalog fields to a CreatorRef; None when there's nothing to attribute."""
    target = to_int(creator_target_id)
    if target is None or target <= 0:
        return None
    if creator_type is None or isinstance(creator_type, bool):
        return None
    if isinstance(creator_type, str):
        s = creator_type.strip().lower()
        if not s:
            return None
        if s == "user":
            return CreatorRef(CreatorKind.USER, target)
        if s == "group":
            return CreatorRef(CreatorKind.GROUP, target)
        return CreatorRef(CreatorKind.AMBIGUOUS, target)
    if isinstance(creator_type, (int, float)):
        if creator_type == 1:
            return CreatorRef(CreatorKind.USER, target)
        if creator_type == 2:
            return CreatorRef(CreatorKind.GROUP, target)
        return CreatorRef(CreatorKind.AMBIGUOUS, target)
    return CreatorRef(CreatorKind.AMBIGUOUS, target)


def owns_asset(ref: CreatorRef, user_id: int, group_owner: Optional[int] = None) -> bool:
    """Pure ownership decision.

    group_owner is the owner user id of ``ref.target_id`` read as a group, or
    None when that probe found no group (or could not read it).
    """
    if ref.kind is CreatorKind.USER:
        return ref.target_id == user_id
    if ref.kind is CreatorKind.GROUP:
        return group_owner is not None and group_owner == user_id
    if group_owner is not None:
        return group_owner == user_id
    return ref.target_id == user_id


def parse_group_owner_user_id(group_obj: Any) -> Optional[int]:
    """Open Cloud groups carry ``owner`` as ``users/<id>``."""
    if not isinstance(group_obj, dict):
        return None
    raw = group_obj.get("owner")
    if raw is None:
        return None
    m = _OWNER_RE.search(str(raw).strip())
    if not m:
        return None
    return int(m.group(1))


class GroupOwnerCache:
    """Per-request memo of group id -> owner user id (None = not a readable group).

    Lookups for the same group are single-flight: concurrent callers wait on
    one fetch instead of each hitting the API.
    """

    def __init__(self) -> None:
        self._owners: Dict[int, Optional[int]] = {}
        self._locks: Dict[int, asyncio.Lock] = {}

    def __contains__(self, group_id: int) -> bool:
        return group_id in self._owners

    def __len__(self) -> int:
        return len(self._owners)

    def get(self, group_id: int) -> Optional[int]:
        return self._owners.get(group_id)

    def set(self, group_id: int, owner_user_id: Optional[int]) -> None:
        self._owners[group_id] = owner_user_id

    def _lock(self, group_id: int) -> asyncio.Lock:
        lock = self._locks.get(group_id)
        if lock is None:
            lock = self._locks[group_id] = asyncio.Lock()
        return lock

    async def owner_of(self, group_id: int, fetch: Callable[[int], Awaitable[Optional[int]]]) -> Optional[int]:
        if group_id in self._owners:
            return self._owners[group_id]
        async with self._lock(group_id):
            if group_id not in self._owners:
                self.set(group_id, await fetch(group_id))
        return self._owners[group_id]
