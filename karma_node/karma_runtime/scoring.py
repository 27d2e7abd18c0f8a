from __future__ import annotations

"""
karma_node/karma_runtime/scoring.py
-----------------------------------

Karma score + trust factor aggregation.

Scales
------
- karma_score  : integer in [0, MAX_KARMA]  (MAX_KARMA = 100)
- trust_factor : integer in [0, MAX_TRUST]  (basis points, MAX_TRUST = 10000)
- weights      : integers in [0, WEIGHT_SCALE] (WEIGHT_SCALE = 10000 = 100%)

Karma
-----
    category_scores[c] = sum of impact_score for c
    karma = min(MAX_KARMA,
                sum(category_scores[c] * w[c]) // (sum(w) * normalization_factor))

Weights are normalized by their sum, so they need not add up to
WEIGHT_SCALE. ``normalization_factor`` is the number of weighted impact
points per karma point. With the default of 4:

- default weights (code 40%), ten code contributions of impact 50 -> 50
- code-only weights, three code contributions of impact 80        -> 60

Trust
-----
    trust = base + (verified_bonus if verified) + activity(n)
    activity(n) = min(cap, floor(cap * ln(1 + n) / ln(1 + saturation)))

Both outputs are pure functions of the ledger, the weights and the
verification flag.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping

from . import events as ev
from .contributions import Category, ContributionLedger
from .errors import ValidationError
from .profiles import ProfileRegistry, UserProfile

log = logging.getLogger(__name__)

MAX_KARMA = 100
MAX_TRUST = 10000
WEIGHT_SCALE = 10000
DEFAULT_NORMALIZATION_FACTOR = 4


def _now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class ScoringWeights:
    code_weight: int = 4000
    governance_weight: int = 3000
    forum_weight: int = 2000
    identity_weight: int = 1000

    def __post_init__(self) -> None:
        for name in ("code_weight", "governance_weight", "forum_weight", "identity_weight"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{name} must be an integer", code="invalid_weights")
            if value < 0 or value > WEIGHT_SCALE:
                raise ValidationError(
                    f"{name} must be within [0, {WEIGHT_SCALE}], got {value}", code="invalid_weights"
                )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScoringWeights":
        allowed = {"code_weight", "governance_weight", "forum_weight", "identity_weight"}
        unknown = set(data) - allowed
        if unknown:
            raise ValidationError(f"unknown weight keys: {sorted(unknown)}", code="invalid_weights")
        return cls(**dict(data))

    def to_dict(self) -> Dict[str, int]:
        return {
            "code_weight": self.code_weight,
            "governance_weight": self.governance_weight,
            "forum_weight": self.forum_weight,
            "identity_weight": self.identity_weight,
        }

    def for_category(self, category: Category) -> int:
        return {
            Category.CODE: self.code_weight,
            Category.GOVERNANCE: self.governance_weight,
            Category.FORUM: self.forum_weight,
            Category.IDENTITY_VERIFICATION: self.identity_weight,
        }[category]

    @property
    def total(self) -> int:
        return self.code_weight + self.governance_weight + self.forum_weight + self.identity_weight


@dataclass(frozen=True)
class TrustParams:
    base: int = 1000
    verified_bonus: int = 4000
    activity_cap: int = 5000
    activity_saturation: int = 100

    def __post_init__(self) -> None:
        for name in ("base", "verified_bonus", "activity_cap"):
            if int(getattr(self, name)) < 0:
                raise ValidationError(f"trust {name} must be non-negative", code="invalid_config")
        if int(self.activity_saturation) < 1:
            raise ValidationError("trust activity_saturation must be >= 1", code="invalid_config")


def compute_karma(
    category_scores: Mapping[Category, int],
    weights: ScoringWeights,
    normalization_factor: int = DEFAULT_NORMALIZATION_FACTOR,
) -> int:
    total_weight = weights.total
    if total_weight == 0:
        return 0
    weighted = sum(max(0, int(category_scores.get(c, 0))) * weights.for_category(c) for c in Category)
    karma = weighted // (total_weight * max(1, int(normalization_factor)))
    return max(0, min(MAX_KARMA, karma))


def compute_trust(total_contributions: int, is_verified: bool, params: TrustParams) -> int:
    n = max(0, int(total_contributions))
    activity = math.floor(params.activity_cap * math.log1p(n) / math.log1p(params.activity_saturation))
    activity = min(params.activity_cap, activity)
    trust = params.base + (params.verified_bonus if is_verified else 0) + activity
    return max(0, min(MAX_TRUST, trust))


class ScoreAggregator:
    def __init__(
        self,
        state: Dict[str, Any],
        ledger: ContributionLedger,
        profiles: ProfileRegistry,
        events: ev.EventLog,
        *,
        weights: ScoringWeights | None = None,
        normalization_factor: int = DEFAULT_NORMALIZATION_FACTOR,
        trust_params: TrustParams | None = None,
    ) -> None:
        self.state = state
        self.ledger = ledger
        self.profiles = profiles
        self.events = events
        self.normalization_factor = int(normalization_factor)
        if self.normalization_factor < 1:
            raise ValidationError("normalization_factor must be >= 1", code="invalid_config")
        self.trust_params = trust_params or TrustParams()

        scoring = self.state.setdefault("scoring", {})
        stored = scoring.get("weights")
        # A persisted snapshot wins over configured defaults.
        self._weights = ScoringWeights.from_dict(stored) if stored else (weights or ScoringWeights())
        scoring["weights"] = self._weights.to_dict()

    def reload(self) -> None:
        """Re-read the weights from state["scoring"]."""
        self._weights = ScoringWeights.from_dict(self.state["scoring"]["weights"])

    def get_weights(self) -> ScoringWeights:
        return self._weights

    def set_weights(self, weights: ScoringWeights) -> ScoringWeights:
        """
        Swap in a new weights object in one assignment; concurrent readers see
        either the old or the new configuration. Caller checks privilege.
        """
        if not isinstance(weights, ScoringWeights):
            raise ValidationError("weights must be ScoringWeights", code="invalid_weights")
        old = self._weights
        self._weights = weights
        self.state["scoring"]["weights"] = weights.to_dict()
        self.profiles.mark_all_stale()

        log.info("scoring weights updated: %s -> %s", old.to_dict(), weights.to_dict())
        self.events.emit(ev.WEIGHTS_UPDATED, old=old.to_dict(), new=weights.to_dict())
        return old

    def breakdown(self, owner_id: str) -> Dict[str, Any]:
        """Score computation without touching the cached profile."""
        row = self.profiles.row(owner_id)
        weights = self._weights
        totals = self.ledger.impact_totals(owner_id)
        total_contributions = self.ledger.count(owner_id)
        return {
            "category_scores": {c.value: totals[c] for c in Category},
            "karma_score": compute_karma(totals, weights, self.normalization_factor),
            "trust_factor": compute_trust(total_contributions, bool(row.get("is_verified")), self.trust_params),
            "total_contributions": total_contributions,
            "weights": weights.to_dict(),
        }

    def recalculate(self, owner_id: str) -> UserProfile:
        result = self.breakdown(owner_id)
        row = self.profiles.row(owner_id)
        row["category_scores"] = result["category_scores"]
        row["karma_score"] = result["karma_score"]
        row["trust_factor"] = result["trust_factor"]
        row["total_contributions"] = result["total_contributions"]
        row["last_calculated_at"] = _now()
        row["stale"] = False

        scores = result["category_scores"]
        self.events.emit(
            ev.KARMA_CALCULATED,
            user_id=owner_id,
            code_score=scores[Category.CODE.value],
            governance_score=scores[Category.GOVERNANCE.value],
            forum_score=scores[Category.FORUM.value],
            identity_score=scores[Category.IDENTITY_VERIFICATION.value],
            final_karma=result["karma_score"],
            trust_factor=result["trust_factor"],
        )
        return self.profiles.get(owner_id)

    def fresh_profile(self, owner_id: str) -> UserProfile:
        if self.profiles.is_stale(owner_id):
            return self.recalculate(owner_id)
        return self.profiles.get(owner_id)
