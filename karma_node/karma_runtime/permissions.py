from __future__ import annotations

"""
Per-user permission cache.

Ledger layout under state["permissions"]:

    {
        "<user_id>": {
            "user_id": str,
            "granted_access_levels": [int, ...],   # sorted
            "last_checked": int,
            "access_count": int,
        },
    }

This is display/analytics data only ("last checked", "access count").
Gating decisions are always recomputed from the live profile. record_check
replaces the level set; grant (an owner recording a passed rule) adds to it.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable

from .access import AccessLevel
from .errors import NotFoundError


def _now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class PermissionRecord:
    user_id: str
    granted_access_levels: FrozenSet[AccessLevel]
    last_checked: int
    access_count: int

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PermissionRecord":
        return cls(
            user_id=str(row["user_id"]),
            granted_access_levels=frozenset(AccessLevel(int(x)) for x in row.get("granted_access_levels", [])),
            last_checked=int(row.get("last_checked", 0)),
            access_count=int(row.get("access_count", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "granted_access_levels": sorted(int(x) for x in self.granted_access_levels),
            "last_checked": self.last_checked,
            "access_count": self.access_count,
        }


class PermissionCache:
    def __init__(self, state: Dict[str, Any]) -> None:
        self.state = state
        self.state.setdefault("permissions", {})

    def record_check(self, user_id: str, granted_levels: Iterable[AccessLevel]) -> PermissionRecord:
        rows = self.state["permissions"]
        prev = rows.get(user_id) or {}
        rec = PermissionRecord(
            user_id=user_id,
            granted_access_levels=frozenset(AccessLevel(int(x)) for x in granted_levels),
            last_checked=_now(),
            access_count=int(prev.get("access_count", 0)) + 1,
        )
        rows[user_id] = rec.to_dict()
        return rec

    def get(self, user_id: str) -> PermissionRecord:
        row = self.state["permissions"].get(user_id)
        if row is None:
            raise NotFoundError(f"no permission checks recorded for {user_id!r}", code="no_permission_record")
        return PermissionRecord.from_row(row)

    def grant(self, user_id: str, level: AccessLevel) -> PermissionRecord:
        """Add an explicitly granted level on top of what the last check saw."""
        rows = self.state["permissions"]
        prev = rows.get(user_id) or {}
        levels = {AccessLevel(int(x)) for x in prev.get("granted_access_levels", [AccessLevel.BASIC])}
        levels.add(AccessLevel(int(level)))
        rec = PermissionRecord(
            user_id=user_id,
            granted_access_levels=frozenset(levels),
            last_checked=_now(),
            access_count=int(prev.get("access_count", 0)) + 1,
        )
        rows[user_id] = rec.to_dict()
        return rec
