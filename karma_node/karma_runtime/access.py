from __future__ import annotations

"""
karma_node/karma_runtime/access.py
----------------------------------

Rule-based access control over user profiles.

Access levels are ordinal:

    BASIC < CONTRIBUTOR < TRUSTED < ELITE

A rule is a multi-criteria predicate (karma, trust, verification,
contribution count) that grants one level. Several rules may grant the same
level; any one of them passing is enough.

DAO integrations gate on either a required access level or an explicit list
of custom rules. How those two combine is a configuration choice
(``DaoGatingMode``):

- OVERRIDE : non-empty custom rules replace the level check (default)
- ALL      : the level check and every custom rule must pass

A DAO check audits its level decision as AccessGranted / AccessDenied with
the dao_id and no rule_id, next to the events of the custom rules it ran.

Ledger layout under state["access"]:

    {
        "next_rule_id": int,
        "rules": { "<rule_id>": {...} },
        "daos":  { "<dao_id>": {...} },
    }

Rules and DAOs are never removed, only deactivated. In memory both
registries are held as immutable snapshots that are swapped whole on every
change, so an evaluation never observes a half-applied update.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from . import events as ev
from .errors import NotFoundError, ValidationError
from .profiles import UserProfile
from .scoring import MAX_KARMA, MAX_TRUST

log = logging.getLogger(__name__)

MAX_NAME_LEN = 200

REASON_ALL_PASSED = "all_passed"
REASON_KARMA = "karma_below_minimum"
REASON_TRUST = "trust_below_minimum"
REASON_VERIFICATION = "verification_required"
REASON_CONTRIBUTIONS = "contributions_below_minimum"
REASON_INACTIVE = "rule_inactive"
REASON_LEVEL_MET = "access_level_met"
REASON_LEVEL_BELOW = "access_level_below_required"
REASON_DAO_INACTIVE = "dao_inactive"


class AccessLevel(IntEnum):
    BASIC = 0
    CONTRIBUTOR = 1
    TRUSTED = 2
    ELITE = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def parse(cls, value: object) -> "AccessLevel":
        if isinstance(value, AccessLevel):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                pass
        if isinstance(value, str):
            key = value.strip().upper()
            if key in cls.__members__:
                return cls[key]
            if key.isdigit():
                return cls.parse(int(key))
        raise ValidationError(f"unknown access level: {value!r}", code="invalid_access_level")


class DaoGatingMode(str, Enum):
    OVERRIDE = "override"
    ALL = "all"

    @classmethod
    def parse(cls, value: object) -> "DaoGatingMode":
        if isinstance(value, DaoGatingMode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"unknown DAO gating mode: {value!r}", code="invalid_config") from None


def _now() -> int:
    return int(time.time())


def _non_negative_int(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer", code="invalid_rule")
    return value


@dataclass(frozen=True)
class AccessRule:
    rule_id: int
    name: str
    min_karma: int
    min_trust_factor: int
    requires_verification: bool
    min_contributions: int
    access_level: AccessLevel
    active: bool = True

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AccessRule":
        return cls(
            rule_id=int(row["rule_id"]),
            name=str(row["name"]),
            min_karma=int(row["min_karma"]),
            min_trust_factor=int(row["min_trust_factor"]),
            requires_verification=bool(row["requires_verification"]),
            min_contributions=int(row["min_contributions"]),
            access_level=AccessLevel(int(row["access_level"])),
            active=bool(row.get("active", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "min_karma": self.min_karma,
            "min_trust_factor": self.min_trust_factor,
            "requires_verification": self.requires_verification,
            "min_contributions": self.min_contributions,
            "access_level": int(self.access_level),
            "active": self.active,
        }

    def first_failure(self, profile: UserProfile) -> Optional[str]:
        """Name of the first failing predicate, or None when all pass."""
        if profile.karma_score < self.min_karma:
            return REASON_KARMA
        if profile.trust_factor < self.min_trust_factor:
            return REASON_TRUST
        if self.requires_verification and not profile.is_verified:
            return REASON_VERIFICATION
        if profile.total_contributions < self.min_contributions:
            return REASON_CONTRIBUTIONS
        if not self.active:
            return REASON_INACTIVE
        return None


@dataclass(frozen=True)
class DaoIntegration:
    dao_id: str
    dao_name: str
    required_access_level: AccessLevel
    custom_rule_ids: Tuple[int, ...] = ()
    active: bool = True
    created_at: int = field(default=0, compare=False)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DaoIntegration":
        return cls(
            dao_id=str(row["dao_id"]),
            dao_name=str(row["dao_name"]),
            required_access_level=AccessLevel(int(row["required_access_level"])),
            custom_rule_ids=tuple(int(r) for r in row.get("custom_rule_ids") or ()),
            active=bool(row.get("active", True)),
            created_at=int(row.get("created_at", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dao_id": self.dao_id,
            "dao_name": self.dao_name,
            "required_access_level": int(self.required_access_level),
            "custom_rule_ids": list(self.custom_rule_ids),
            "active": self.active,
            "created_at": self.created_at,
        }


ProfileSource = Callable[[str], UserProfile]


class AccessRuleEngine:
    def __init__(
        self,
        state: Dict[str, Any],
        profile_source: ProfileSource,
        events: ev.EventLog,
        *,
        dao_gating_mode: DaoGatingMode | str = DaoGatingMode.OVERRIDE,
    ) -> None:
        self.state = state
        root = self.state.setdefault("access", {})
        root.setdefault("rules", {})
        root.setdefault("daos", {})
        root.setdefault("next_rule_id", 1)
        self.profile_source = profile_source
        self.events = events
        self.dao_gating_mode = DaoGatingMode.parse(dao_gating_mode)

        self._rules: Mapping[int, AccessRule] = {}
        self._daos: Mapping[str, DaoIntegration] = {}
        self.reload()

    def reload(self) -> None:
        """Rebuild the in-memory snapshots from state["access"]."""
        root = self._root
        self._rules = {int(k): AccessRule.from_row(v) for k, v in root["rules"].items()}
        self._daos = {str(k): DaoIntegration.from_row(v) for k, v in root["daos"].items()}

    @property
    def _root(self) -> Dict[str, Any]:
        return self.state["access"]

    # ------------------------------------------------------------------
    # Rule registry
    # ------------------------------------------------------------------

    def add_rule(
        self,
        name: str,
        min_karma: int,
        min_trust_factor: int,
        requires_verification: bool,
        min_contributions: int,
        access_level: object,
    ) -> int:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("rule name is required", code="invalid_rule")
        if len(name) > MAX_NAME_LEN:
            raise ValidationError("rule name is too long", code="invalid_rule")
        min_karma = _non_negative_int("min_karma", min_karma)
        min_trust_factor = _non_negative_int("min_trust_factor", min_trust_factor)
        min_contributions = _non_negative_int("min_contributions", min_contributions)
        if min_karma > MAX_KARMA:
            raise ValidationError(f"min_karma exceeds {MAX_KARMA}", code="invalid_rule")
        if min_trust_factor > MAX_TRUST:
            raise ValidationError(f"min_trust_factor exceeds {MAX_TRUST}", code="invalid_rule")
        level = AccessLevel.parse(access_level)

        rule_id = int(self._root["next_rule_id"])
        rule = AccessRule(
            rule_id=rule_id,
            name=name.strip(),
            min_karma=min_karma,
            min_trust_factor=min_trust_factor,
            requires_verification=bool(requires_verification),
            min_contributions=min_contributions,
            access_level=level,
        )
        payload = rule.to_dict()
        self._root["next_rule_id"] = rule_id + 1
        self._publish_rule(rule)

        log.info("access rule %d (%s) added for level %s", rule_id, rule.name, level.label)
        self.events.emit(ev.ACCESS_RULE_ADDED, **payload)
        return rule_id

    def deactivate_rule(self, rule_id: int) -> AccessRule:
        rule = self.get_rule(rule_id)
        if not rule.active:
            return rule
        rule = replace(rule, active=False)
        self._publish_rule(rule)
        log.info("access rule %d deactivated", rule_id)
        self.events.emit(ev.ACCESS_RULE_DEACTIVATED, rule_id=rule_id)
        return rule

    def _publish_rule(self, rule: AccessRule) -> None:
        rules = dict(self._rules)
        rules[rule.rule_id] = rule
        self._root["rules"][str(rule.rule_id)] = rule.to_dict()
        self._rules = rules

    def get_rule(self, rule_id: int) -> AccessRule:
        rule = self._rules.get(int(rule_id))
        if rule is None:
            raise NotFoundError(f"access rule {rule_id} does not exist", code="unknown_rule")
        return rule

    def list_rules(self, active_only: bool = False) -> List[AccessRule]:
        rules = sorted(self._rules.values(), key=lambda r: r.rule_id)
        if active_only:
            rules = [r for r in rules if r.active]
        return rules

    def total_rules(self) -> int:
        return len(self._rules)

    # ------------------------------------------------------------------
    # DAO registry
    # ------------------------------------------------------------------

    def add_dao(
        self,
        dao_id: str,
        dao_name: str,
        required_access_level: object,
        custom_rule_ids: Sequence[int] = (),
    ) -> DaoIntegration:
        dao_id = dao_id.strip() if isinstance(dao_id, str) else ""
        if not dao_id:
            raise ValidationError("dao_id is required", code="invalid_dao")
        if dao_id in self._daos:
            raise ValidationError(f"DAO {dao_id!r} is already integrated", code="duplicate_dao")
        if not isinstance(dao_name, str) or not dao_name.strip():
            raise ValidationError("dao_name is required", code="invalid_dao")
        if len(dao_name) > MAX_NAME_LEN:
            raise ValidationError("dao_name is too long", code="invalid_dao")
        level = AccessLevel.parse(required_access_level)

        rule_ids: List[int] = []
        for rid in custom_rule_ids or ():
            if isinstance(rid, bool) or not isinstance(rid, int):
                raise ValidationError(f"custom rule id must be an integer: {rid!r}", code="invalid_dao")
            if rid not in self._rules:
                raise ValidationError(f"custom rule {rid} does not exist", code="invalid_dao")
            if rid not in rule_ids:
                rule_ids.append(rid)

        dao = DaoIntegration(
            dao_id=dao_id,
            dao_name=dao_name.strip(),
            required_access_level=level,
            custom_rule_ids=tuple(rule_ids),
            created_at=_now(),
        )
        payload = {
            "dao_id": dao_id,
            "dao_name": dao.dao_name,
            "access_level": int(level),
            "custom_rule_ids": list(dao.custom_rule_ids),
            "timestamp": dao.created_at,
        }
        self._publish_dao(dao)
        log.info("DAO %s (%s) integrated, level=%s rules=%s", dao_id, dao.dao_name, level.label, rule_ids)
        self.events.emit(ev.DAO_INTEGRATION_ADDED, **payload)
        return dao

    def deactivate_dao(self, dao_id: str) -> DaoIntegration:
        dao = self.get_dao(dao_id)
        if not dao.active:
            return dao
        dao = replace(dao, active=False)
        self._publish_dao(dao)
        log.info("DAO %s deactivated", dao_id)
        self.events.emit(ev.DAO_INTEGRATION_DEACTIVATED, dao_id=dao_id)
        return dao

    def _publish_dao(self, dao: DaoIntegration) -> None:
        daos = dict(self._daos)
        daos[dao.dao_id] = dao
        self._root["daos"][dao.dao_id] = dao.to_dict()
        self._daos = daos

    def get_dao(self, dao_id: str) -> DaoIntegration:
        dao = self._daos.get(dao_id)
        if dao is None:
            raise NotFoundError(f"DAO {dao_id!r} is not integrated", code="unknown_dao")
        return dao

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, user_id: str, rule_id: int) -> bool:
        rule = self.get_rule(rule_id)
        profile = self.profile_source(user_id)
        return self._evaluate_and_emit(profile, rule)

    def _evaluate_and_emit(self, profile: UserProfile, rule: AccessRule) -> bool:
        reason = rule.first_failure(profile)
        if reason is None:
            self.events.emit(
                ev.ACCESS_GRANTED,
                user_id=profile.user_id,
                rule_id=rule.rule_id,
                access_level=int(rule.access_level),
                reason=REASON_ALL_PASSED,
                timestamp=_now(),
            )
            return True

        log.info("access denied: user=%s rule=%d reason=%s", profile.user_id, rule.rule_id, reason)
        self.events.emit(
            ev.ACCESS_DENIED,
            user_id=profile.user_id,
            rule_id=rule.rule_id,
            access_level=int(rule.access_level),
            reason=reason,
            timestamp=_now(),
        )
        return False

    def granted_levels(self, user_id: str) -> FrozenSet[AccessLevel]:
        """Levels granted by passing active rules; BASIC for any registered user."""
        profile = self.profile_source(user_id)
        levels = {AccessLevel.BASIC}
        for rule in self._rules.values():
            if rule.active and rule.first_failure(profile) is None:
                levels.add(rule.access_level)
        return frozenset(levels)

    def best_access_level(self, user_id: str) -> AccessLevel:
        return max(self.granted_levels(user_id))

    def _emit_dao_decision(self, user_id: str, dao: DaoIntegration, allowed: bool, reason: str) -> None:
        self.events.emit(
            ev.ACCESS_GRANTED if allowed else ev.ACCESS_DENIED,
            user_id=user_id,
            rule_id=None,
            dao_id=dao.dao_id,
            access_level=int(dao.required_access_level),
            reason=reason,
            timestamp=_now(),
        )

    def evaluate_dao(self, user_id: str, dao_id: str) -> bool:
        dao = self.get_dao(dao_id)
        # unknown users fail even when the DAO is inactive
        profile = self.profile_source(user_id)
        if not dao.active:
            log.info("DAO %s is inactive; denying %s", dao_id, user_id)
            self._emit_dao_decision(user_id, dao, False, REASON_DAO_INACTIVE)
            return False

        check_level = not dao.custom_rule_ids or self.dao_gating_mode is DaoGatingMode.ALL
        if check_level:
            if self.best_access_level(user_id) < dao.required_access_level:
                log.info("access denied: user=%s dao=%s reason=%s", user_id, dao_id, REASON_LEVEL_BELOW)
                self._emit_dao_decision(user_id, dao, False, REASON_LEVEL_BELOW)
                return False
            self._emit_dao_decision(user_id, dao, True, REASON_LEVEL_MET)

        # every custom rule is evaluated (and audited) even after a failure
        results = [self._evaluate_and_emit(profile, self.get_rule(rid)) for rid in dao.custom_rule_ids]
        return all(results)
