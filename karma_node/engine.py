from __future__ import annotations

"""
Karma Engine

Facade over the karma runtime:

- ProfileRegistry     : registration, verification, cached profile rows
- ContributionLedger  : append-only contribution log
- ScoreAggregator     : karma score + trust factor
- AccessRuleEngine    : rules, DAO integrations, evaluations
- PermissionCache     : last-checked / access-count analytics
- EventLog            : audit stream for the presentation layer

Concurrency
-----------
- Each registered user has a re-entrant write lock. Appends, verification
  and recalculation for one user are serialized; different users proceed
  independently. Locks exist only for registered users; registration itself
  runs under ``_registry_lock``.
- Configuration changes (weights, rules, DAOs, ownership) take the config
  lock. The registries publish new immutable snapshots, so evaluations see
  either the old or the new configuration.
- ``_state_lock`` is held only while the shared dicts are being changed in
  memory and while a snapshot is copied out of them. Saving the snapshot
  happens under ``_save_lock`` alone, and subscribers are called after all
  locks are released.

Writes
------
Every write is a small transaction: the slices of state it may touch are
backed up, its events are buffered, the snapshot is saved, and only then are
the events published. If anything raises, including the save, the slices are
restored and the buffered events are dropped.

The engine is constructed explicitly (``KarmaEngine(...)`` or
``build_engine(cfg)``) and handed to whoever needs it. There is no
module-level instance.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from .karma_runtime import events as ev
from .karma_runtime.access import AccessLevel, AccessRule, AccessRuleEngine, DaoGatingMode, DaoIntegration
from .karma_runtime.contributions import ContributionLedger, ContributionRecord
from .karma_runtime.errors import UnauthorizedError, ValidationError
from .karma_runtime.events import EventLog, Subscriber
from .karma_runtime.permissions import PermissionCache, PermissionRecord
from .karma_runtime.profiles import ProfileRegistry, UserProfile
from .karma_runtime.scoring import DEFAULT_NORMALIZATION_FACTOR, ScoreAggregator, ScoringWeights, TrustParams
from .storage.state_store import MemoryStateStore, StateStore, open_store

log = logging.getLogger(__name__)

# (namespace, key); namespace None means a top-level key of the state
Slice = Tuple[Optional[str], str]

_CONFIG_SLICES: Tuple[Slice, ...] = ((None, "access"), (None, "scoring"), (None, "owner"))

_MISSING = object()


def _user_slices(user_id: str) -> Tuple[Slice, ...]:
    return (("profiles", user_id), ("contributions", user_id), ("permissions", user_id))


class KarmaEngine:
    def __init__(
        self,
        *,
        owner: Optional[str],
        store: Optional[StateStore] = None,
        weights: Optional[ScoringWeights] = None,
        normalization_factor: int = DEFAULT_NORMALIZATION_FACTOR,
        trust_params: Optional[TrustParams] = None,
        dao_gating_mode: Union[DaoGatingMode, str] = DaoGatingMode.OVERRIDE,
        keep_events: int = 5000,
    ) -> None:
        self.store: StateStore = store if store is not None else MemoryStateStore()
        loaded = self.store.load()
        self.state: Dict[str, Any] = loaded if isinstance(loaded, dict) else {}
        # a persisted owner (possibly None after renouncing) wins over config
        self.state.setdefault("owner", owner)

        self.events = EventLog(self.state, keep_events=keep_events)
        self.profiles = ProfileRegistry(self.state, self.events)
        self.ledger = ContributionLedger(self.state, self.profiles, self.events)
        self.scoring = ScoreAggregator(
            self.state,
            self.ledger,
            self.profiles,
            self.events,
            weights=weights,
            normalization_factor=normalization_factor,
            trust_params=trust_params,
        )
        self.access = AccessRuleEngine(
            self.state,
            self._fresh_profile,
            self.events,
            dao_gating_mode=dao_gating_mode,
        )
        self.permissions = PermissionCache(self.state)

        self._state_lock = threading.RLock()
        self._save_lock = threading.Lock()
        self._config_lock = threading.Lock()
        self._registry_lock = threading.RLock()
        self._user_locks: Dict[str, threading.RLock] = {}
        self._tx = threading.local()

    # ------------------------------------------------------------------
    # Locking + persistence
    # ------------------------------------------------------------------

    def _user_lock(self, user_id: str) -> threading.RLock:
        lock = self._user_locks.get(user_id)
        if lock is not None:
            return lock
        with self._registry_lock:
            # raises NotFoundError for unknown users, so lookups of arbitrary
            # ids never grow the table
            self.profiles.row(user_id)
            return self._user_locks.setdefault(user_id, threading.RLock())

    def _backup(self, slices: Sequence[Slice]) -> List[Tuple[Slice, Any]]:
        saved = []
        for root, key in slices:
            container = self.state if root is None else self.state.get(root, {})
            value = container.get(key, _MISSING)
            if root == "contributions" and value is not _MISSING:
                # append-only: the length is enough to undo an append
                saved.append(((root, key), len(value)))
            else:
                saved.append(((root, key), value if value is _MISSING else copy.deepcopy(value)))
        return saved

    def _restore(self, saved: List[Tuple[Slice, Any]]) -> None:
        for (root, key), value in saved:
            container = self.state if root is None else self.state.setdefault(root, {})
            if value is _MISSING:
                container.pop(key, None)
            elif root == "contributions":
                del container[key][value:]
            else:
                container[key] = value

    def _persist(self, pending: List[Dict[str, Any]]) -> None:
        with self._save_lock:
            with self._state_lock:
                self.events.append(pending)
                snapshot = copy.deepcopy(self.state)
            self.store.save(snapshot)

    @contextmanager
    def _write(self, lock: Any, slices: Sequence[Slice], config: bool = False) -> Iterator[None]:
        with lock:
            if getattr(self._tx, "active", False):
                # nested write on the same thread joins the outer transaction
                with self._state_lock:
                    yield
                return

            with self._state_lock:
                saved = self._backup(slices)
            self._tx.active = True
            self.events.begin()
            pending: List[Dict[str, Any]] = []
            try:
                with self._state_lock:
                    yield
                pending = self.events.end()
                self._persist(pending)
            except Exception:
                self.events.end()
                with self._state_lock:
                    self.events.discard(pending)
                    self._restore(saved)
                    if config:
                        self.access.reload()
                        self.scoring.reload()
                raise
            finally:
                self._tx.active = False
        self.events.notify(pending)

    def _user_write(self, user_id: str):
        return self._write(self._user_lock(user_id), _user_slices(user_id))

    def _config_write(self):
        return self._write(self._config_lock, _CONFIG_SLICES, config=True)

    def _fresh_profile(self, user_id: str) -> UserProfile:
        with self._user_lock(user_id):
            if not self.profiles.is_stale(user_id):
                return self.profiles.get(user_id)
        with self._user_write(user_id):
            return self.scoring.fresh_profile(user_id)

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    @property
    def owner(self) -> Optional[str]:
        return self.state.get("owner")

    def _require_owner(self, caller: Optional[str], action: str) -> None:
        owner = self.owner
        if owner is None or not caller or caller != owner:
            log.warning("unauthorized %s attempt by %r", action, caller)
            raise UnauthorizedError(f"{action} requires the engine owner", code="unauthorized")

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        with self._config_write():
            self._require_owner(caller, "transfer_ownership")
            if not isinstance(new_owner, str) or not new_owner.strip():
                raise ValidationError("new_owner is required", code="invalid_owner")
            previous = self.owner
            self.state["owner"] = new_owner.strip()
            log.info("ownership transferred %s -> %s", previous, self.owner)
            self.events.emit(ev.OWNERSHIP_TRANSFERRED, previous_owner=previous, new_owner=self.owner)

    def renounce_ownership(self, caller: str) -> None:
        with self._config_write():
            self._require_owner(caller, "renounce_ownership")
            previous = self.owner
            self.state["owner"] = None
            log.info("ownership renounced by %s", previous)
            self.events.emit(ev.OWNERSHIP_TRANSFERRED, previous_owner=previous, new_owner=None)

    # ------------------------------------------------------------------
    # Users + contributions
    # ------------------------------------------------------------------

    def register_user(self, user_id: str, metadata: Optional[Mapping[str, Any]] = None) -> UserProfile:
        key = user_id.strip() if isinstance(user_id, str) else ""
        with self._write(self._registry_lock, _user_slices(key)):
            return self.profiles.register(key, dict(metadata) if isinstance(metadata, Mapping) else metadata)

    def is_registered(self, user_id: str) -> bool:
        return self.profiles.exists(user_id)

    def verify_user(self, caller: str, user_id: str) -> UserProfile:
        self._require_owner(caller, "verify_user")
        with self._user_write(user_id):
            self.profiles.verify(user_id)
        return self._fresh_profile(user_id)

    def add_contribution(
        self,
        user_id: str,
        category: object,
        impact_score: object,
        description: object,
        verified: bool = False,
    ) -> ContributionRecord:
        with self._user_write(user_id):
            return self.ledger.append(user_id, category, impact_score, description, verified=verified)

    def get_contributions(self, user_id: str) -> List[ContributionRecord]:
        with self._user_lock(user_id):
            return self.ledger.list_by_owner(user_id)

    def contribution_count(self, user_id: str) -> int:
        with self._user_lock(user_id):
            return self.ledger.count(user_id)

    def get_profile(self, user_id: str) -> UserProfile:
        return self._fresh_profile(user_id)

    def recalculate(self, user_id: str) -> UserProfile:
        with self._user_write(user_id):
            return self.scoring.recalculate(user_id)

    def score_breakdown(self, user_id: str) -> Dict[str, Any]:
        with self._user_lock(user_id):
            return self.scoring.breakdown(user_id)

    # ------------------------------------------------------------------
    # Scoring configuration
    # ------------------------------------------------------------------

    def get_weights(self) -> ScoringWeights:
        return self.scoring.get_weights()

    def set_weights(self, caller: str, weights: Union[ScoringWeights, Mapping[str, int]]) -> ScoringWeights:
        """Returns the previous weights."""
        with self._config_write():
            self._require_owner(caller, "set_weights")
            new = weights if isinstance(weights, ScoringWeights) else ScoringWeights.from_dict(weights)
            return self.scoring.set_weights(new)

    # ------------------------------------------------------------------
    # Access rules + DAOs
    # ------------------------------------------------------------------

    def add_access_rule(
        self,
        caller: str,
        name: str,
        min_karma: int,
        min_trust_factor: int,
        requires_verification: bool,
        min_contributions: int,
        access_level: object,
    ) -> int:
        with self._config_write():
            self._require_owner(caller, "add_access_rule")
            return self.access.add_rule(
                name, min_karma, min_trust_factor, requires_verification, min_contributions, access_level
            )

    def deactivate_access_rule(self, caller: str, rule_id: int) -> AccessRule:
        with self._config_write():
            self._require_owner(caller, "deactivate_access_rule")
            return self.access.deactivate_rule(rule_id)

    def get_access_rule(self, rule_id: int) -> AccessRule:
        return self.access.get_rule(rule_id)

    def list_access_rules(self, active_only: bool = False) -> List[AccessRule]:
        return self.access.list_rules(active_only=active_only)

    def total_rules(self) -> int:
        return self.access.total_rules()

    def add_dao_integration(
        self,
        caller: str,
        dao_id: str,
        dao_name: str,
        required_access_level: object,
        custom_rule_ids: Sequence[int] = (),
    ) -> DaoIntegration:
        with self._config_write():
            self._require_owner(caller, "add_dao_integration")
            return self.access.add_dao(dao_id, dao_name, required_access_level, custom_rule_ids)

    def deactivate_dao_integration(self, caller: str, dao_id: str) -> DaoIntegration:
        with self._config_write():
            self._require_owner(caller, "deactivate_dao_integration")
            return self.access.deactivate_dao(dao_id)

    def get_dao_integration(self, dao_id: str) -> DaoIntegration:
        return self.access.get_dao(dao_id)

    # ------------------------------------------------------------------
    # Evaluation (always from the live profile)
    # ------------------------------------------------------------------

    def check_access(self, user_id: str, rule_id: int) -> bool:
        self.access.get_rule(rule_id)
        with self._user_write(user_id):
            allowed = self.access.evaluate(user_id, rule_id)
            self.permissions.record_check(user_id, self.access.granted_levels(user_id))
        return allowed

    def check_dao_access(self, user_id: str, dao_id: str) -> bool:
        self.access.get_dao(dao_id)
        with self._user_write(user_id):
            allowed = self.access.evaluate_dao(user_id, dao_id)
            self.permissions.record_check(user_id, self.access.granted_levels(user_id))
        return allowed

    def grant_access(self, caller: str, user_id: str, rule_id: int) -> bool:
        """
        Owner records a rule's level in the user's permission record. The rule
        is evaluated first; a failing rule writes nothing and returns False.
        """
        self._require_owner(caller, "grant_access")
        rule = self.access.get_rule(rule_id)
        with self._user_write(user_id):
            allowed = self.access.evaluate(user_id, rule_id)
            if allowed:
                self.permissions.grant(user_id, rule.access_level)
                log.info("level %s granted to %s via rule %d", rule.access_level.label, user_id, rule.rule_id)
        return allowed

    def best_access_level(self, user_id: str) -> AccessLevel:
        with self._user_lock(user_id):
            return self.access.best_access_level(user_id)

    def granted_levels(self, user_id: str) -> FrozenSet[AccessLevel]:
        with self._user_lock(user_id):
            return self.access.granted_levels(user_id)

    def get_permissions(self, user_id: str) -> PermissionRecord:
        self.profiles.row(user_id)
        return self.permissions.get(user_id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> None:
        self.events.subscribe(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        self.events.unsubscribe(callback)

    def recent_events(
        self, limit: int = 100, name: Optional[str] = None, user_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return self.events.recent(limit=limit, name=name, user_id=user_id)


def build_engine(cfg: Mapping[str, Any], store: Optional[StateStore] = None) -> KarmaEngine:
    """Construct an engine from a loaded config dict (see karma_node.config)."""
    scoring = cfg.get("scoring", {})
    trust = scoring.get("trust", {})
    return KarmaEngine(
        owner=cfg.get("engine", {}).get("owner"),
        store=store if store is not None else open_store(cfg.get("persistence", {})),
        weights=ScoringWeights.from_dict(scoring.get("weights") or {}),
        normalization_factor=int(scoring.get("normalization_factor", DEFAULT_NORMALIZATION_FACTOR)),
        trust_params=TrustParams(
            base=int(trust.get("base", 1000)),
            verified_bonus=int(trust.get("verified_bonus", 4000)),
            activity_cap=int(trust.get("activity_cap", 5000)),
            activity_saturation=int(trust.get("activity_saturation", 100)),
        ),
        dao_gating_mode=cfg.get("access", {}).get("dao_gating_mode", DaoGatingMode.OVERRIDE),
        keep_events=int(cfg.get("events", {}).get("keep_events", 5000)),
    )
