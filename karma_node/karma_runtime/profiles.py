from __future__ import annotations

"""
karma_node/karma_runtime/profiles.py
------------------------------------

User registration, verification and the cached profile rows.

Ledger layout under state["profiles"]:

    {
        "<user_id>": {
            "user_id": str,
            "metadata": dict,            # e.g. {"github_handle": "alice-dev"}
            "category_scores": {"code": int, ...},
            "karma_score": int,          # [0, MAX_KARMA]
            "trust_factor": int,         # [0, MAX_TRUST] basis points
            "total_contributions": int,
            "is_verified": bool,
            "registered_at": int,
            "last_activity_at": int,
            "last_calculated_at": int | None,
            "stale": bool,
        },
        ...
    }

The scores stored here are a cache. ScoreAggregator owns their computation;
anything that changes an input (new contribution, verification, weights)
only flips ``stale``.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from . import events as ev
from .errors import NotFoundError, ValidationError

log = logging.getLogger(__name__)

MAX_USER_ID_LEN = 128


def _now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    category_scores: Dict[str, int] = field(default_factory=dict)
    karma_score: int = 0
    trust_factor: int = 0
    total_contributions: int = 0
    is_verified: bool = False
    registered_at: int = 0
    last_activity_at: int = 0
    last_calculated_at: Optional[int] = field(default=None, compare=False)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UserProfile":
        return cls(
            user_id=str(row["user_id"]),
            metadata=dict(row.get("metadata") or {}),
            category_scores={str(k): int(v) for k, v in (row.get("category_scores") or {}).items()},
            karma_score=int(row.get("karma_score", 0)),
            trust_factor=int(row.get("trust_factor", 0)),
            total_contributions=int(row.get("total_contributions", 0)),
            is_verified=bool(row.get("is_verified", False)),
            registered_at=int(row.get("registered_at", 0)),
            last_activity_at=int(row.get("last_activity_at", 0)),
            last_calculated_at=row.get("last_calculated_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "metadata": dict(self.metadata),
            "category_scores": dict(self.category_scores),
            "karma_score": self.karma_score,
            "trust_factor": self.trust_factor,
            "total_contributions": self.total_contributions,
            "is_verified": self.is_verified,
            "registered_at": self.registered_at,
            "last_activity_at": self.last_activity_at,
            "last_calculated_at": self.last_calculated_at,
        }


class ProfileRegistry:
    def __init__(self, state: Dict[str, Any], events: ev.EventLog) -> None:
        self.state = state
        self.state.setdefault("profiles", {})
        self.events = events

    @property
    def rows(self) -> Dict[str, Dict[str, Any]]:
        return self.state["profiles"]

    def exists(self, user_id: str) -> bool:
        return user_id in self.rows

    def row(self, user_id: str) -> Dict[str, Any]:
        """Mutable row; callers hold the user's write lock."""
        row = self.rows.get(user_id)
        if row is None:
            raise NotFoundError(f"user {user_id!r} is not registered", code="unknown_user")
        return row

    def get(self, user_id: str) -> UserProfile:
        return UserProfile.from_row(self.row(user_id))

    def is_stale(self, user_id: str) -> bool:
        return bool(self.row(user_id).get("stale", True))

    def mark_stale(self, user_id: str) -> None:
        self.row(user_id)["stale"] = True

    def mark_all_stale(self) -> None:
        for row in self.rows.values():
            row["stale"] = True

    def register(self, user_id: str, metadata: Optional[Dict[str, Any]] = None) -> UserProfile:
        user_id = (user_id or "").strip() if isinstance(user_id, str) else ""
        if not user_id:
            raise ValidationError("user_id is required", code="invalid_user_id")
        if len(user_id) > MAX_USER_ID_LEN:
            raise ValidationError("user_id is too long", code="invalid_user_id")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be a mapping", code="invalid_metadata")
        if self.exists(user_id):
            raise ValidationError(f"user {user_id!r} is already registered", code="already_registered")

        ts = _now()
        self.rows[user_id] = {
            "user_id": user_id,
            "metadata": dict(metadata or {}),
            "category_scores": {},
            "karma_score": 0,
            "trust_factor": 0,
            "total_contributions": 0,
            "is_verified": False,
            "registered_at": ts,
            "last_activity_at": ts,
            "last_calculated_at": None,
            "stale": True,
        }
        log.info("registered user %s", user_id)
        self.events.emit(ev.USER_REGISTERED, user_id=user_id, metadata=dict(metadata or {}))
        return self.get(user_id)

    def verify(self, user_id: str) -> UserProfile:
        row = self.row(user_id)
        if row.get("is_verified"):
            return self.get(user_id)

        row["is_verified"] = True
        row["stale"] = True
        log.info("verified user %s", user_id)
        self.events.emit(ev.USER_VERIFIED, user_id=user_id)
        return self.get(user_id)
