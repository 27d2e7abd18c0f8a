from __future__ import annotations

"""
karma_node/karma_runtime/contributions.py
-----------------------------------------

Append-only contribution ledger.

Ledger layout under state["contributions"]:

    {
        "<user_id>": [
            {
                "contribution_id": int,     # per-owner sequence, from 0
                "owner_id": str,
                "category": "code" | "governance" | "forum" | "identity_verification",
                "impact_score": int,        # [0, 100]
                "description": str,
                "verified": bool,
                "timestamp": int,
            },
            ...
        ],
    }

Records are never edited or removed. The external collaborator (GitHub
analysis, forum scrapers, ...) is responsible for fetching activity before
calling ``append``.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from . import events as ev
from .errors import ValidationError
from .profiles import ProfileRegistry

log = logging.getLogger(__name__)

MIN_IMPACT = 0
MAX_IMPACT = 100
MAX_DESCRIPTION_LEN = 1000


class Category(str, Enum):
    CODE = "code"
    GOVERNANCE = "governance"
    FORUM = "forum"
    IDENTITY_VERIFICATION = "identity_verification"

    @classmethod
    def parse(cls, value: object) -> "Category":
        if isinstance(value, Category):
            return value
        if isinstance(value, str):
            key = value.strip().lower()
            for c in cls:
                if key in (c.value, c.name.lower()):
                    return c
        raise ValidationError(f"unknown contribution category: {value!r}", code="invalid_category")


def _now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class ContributionRecord:
    contribution_id: int
    owner_id: str
    category: Category
    impact_score: int
    description: str
    verified: bool
    timestamp: int

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ContributionRecord":
        return cls(
            contribution_id=int(row["contribution_id"]),
            owner_id=str(row["owner_id"]),
            category=Category(row["category"]),
            impact_score=int(row["impact_score"]),
            description=str(row.get("description", "")),
            verified=bool(row.get("verified", False)),
            timestamp=int(row.get("timestamp", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contribution_id": self.contribution_id,
            "owner_id": self.owner_id,
            "category": self.category.value,
            "impact_score": self.impact_score,
            "description": self.description,
            "verified": self.verified,
            "timestamp": self.timestamp,
        }


def validate_impact_score(impact_score: object) -> int:
    # bool is an int subclass; True must not sneak in as 1
    if isinstance(impact_score, bool) or not isinstance(impact_score, int):
        raise ValidationError("impact_score must be an integer", code="invalid_impact_score")
    if impact_score < MIN_IMPACT or impact_score > MAX_IMPACT:
        raise ValidationError(
            f"impact_score must be within [{MIN_IMPACT}, {MAX_IMPACT}], got {impact_score}",
            code="invalid_impact_score",
        )
    return impact_score


def validate_description(description: object) -> str:
    if not isinstance(description, str) or not description.strip():
        raise ValidationError("description is required", code="invalid_description")
    if len(description) > MAX_DESCRIPTION_LEN:
        raise ValidationError(
            f"description exceeds {MAX_DESCRIPTION_LEN} characters", code="invalid_description"
        )
    return description.strip()


class ContributionLedger:
    def __init__(self, state: Dict[str, Any], profiles: ProfileRegistry, events: ev.EventLog) -> None:
        self.state = state
        self.state.setdefault("contributions", {})
        self.profiles = profiles
        self.events = events

    def _rows(self, owner_id: str) -> List[Dict[str, Any]]:
        return self.state["contributions"].get(owner_id, [])

    def append(
        self,
        owner_id: str,
        category: object,
        impact_score: object,
        description: object,
        verified: bool = False,
    ) -> ContributionRecord:
        """
        Validate everything first, then write. A rejected append leaves the
        ledger and the owner's profile untouched.
        """
        cat = Category.parse(category)
        score = validate_impact_score(impact_score)
        desc = validate_description(description)
        profile_row = self.profiles.row(owner_id)

        rows = self.state["contributions"].setdefault(owner_id, [])
        rec = ContributionRecord(
            contribution_id=len(rows),
            owner_id=owner_id,
            category=cat,
            impact_score=score,
            description=desc,
            verified=bool(verified),
            timestamp=_now(),
        )
        rows.append(rec.to_dict())

        profile_row["total_contributions"] = len(rows)
        profile_row["last_activity_at"] = rec.timestamp
        profile_row["stale"] = True

        log.info("contribution %s/%d added (%s, impact=%d)", owner_id, rec.contribution_id, cat.value, score)
        self.events.emit(
            ev.CONTRIBUTION_ADDED,
            user_id=owner_id,
            contribution_id=rec.contribution_id,
            category=cat.value,
            impact_score=score,
            timestamp=rec.timestamp,
        )
        return rec

    def list_by_owner(self, owner_id: str) -> List[ContributionRecord]:
        self.profiles.row(owner_id)
        return [ContributionRecord.from_row(r) for r in self._rows(owner_id)]

    def count(self, owner_id: str) -> int:
        self.profiles.row(owner_id)
        return len(self._rows(owner_id))

    def impact_totals(self, owner_id: str) -> Dict[Category, int]:
        totals = {c: 0 for c in Category}
        for r in self._rows(owner_id):
            totals[Category(r["category"])] += int(r["impact_score"])
        return totals
