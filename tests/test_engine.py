# tests/test_engine.py

import threading
import time

import pytest

from karma_node.config import load_config
from karma_node.engine import KarmaEngine, build_engine
from karma_node.karma_runtime import events as ev
from karma_node.karma_runtime.access import AccessLevel
from karma_node.karma_runtime.errors import NotFoundError, UnauthorizedError, ValidationError
from karma_node.storage.atomic_store import AtomicStateStore
from karma_node.storage.state_store import MemoryStateStore


# ---------------------------------------------------------------------------
# Registration + verification
# ---------------------------------------------------------------------------

def test_register_user(engine):
    profile = engine.register_user("bob", {"github_handle": "bob"})
    assert profile.user_id == "bob"
    assert profile.metadata == {"github_handle": "bob"}
    assert profile.karma_score == 0
    assert profile.is_verified is False
    assert engine.is_registered("bob")
    assert engine.recent_events(name=ev.USER_REGISTERED)[0]["payload"]["user_id"] == "bob"


@pytest.mark.parametrize("user_id", ["", "   ", "x" * 129, None])
def test_register_invalid_user_id(engine, user_id):
    with pytest.raises(ValidationError):
        engine.register_user(user_id)


def test_register_twice(engine, alice):
    with pytest.raises(ValidationError) as exc:
        engine.register_user(alice)
    assert exc.value.code == "already_registered"


def test_register_rejects_non_mapping_metadata(engine):
    with pytest.raises(ValidationError):
        engine.register_user("bob", ["not", "a", "dict"])
    assert not engine.is_registered("bob")


def test_verify_requires_owner(engine, alice):
    with pytest.raises(UnauthorizedError):
        engine.verify_user(alice, alice)
    assert engine.get_profile(alice).is_verified is False


def test_verify_raises_trust(engine, alice, owner):
    before = engine.get_profile(alice).trust_factor
    profile = engine.verify_user(owner, alice)
    assert profile.is_verified is True
    assert profile.trust_factor == before + 4000

    # verifying again is a no-op
    engine.verify_user(owner, alice)
    assert len(engine.recent_events(name=ev.USER_VERIFIED)) == 1


def test_verify_unknown_user(engine, owner):
    with pytest.raises(NotFoundError):
        engine.verify_user(owner, "ghost")


def test_unknown_user_lookups(engine):
    for call in (engine.get_profile, engine.get_contributions, engine.score_breakdown, engine.best_access_level):
        with pytest.raises(NotFoundError):
            call("ghost")


def test_permissions_before_any_check(engine, alice):
    with pytest.raises(NotFoundError) as exc:
        engine.get_permissions(alice)
    assert exc.value.code == "no_permission_record"


def test_check_access_updates_permissions(engine, alice, owner):
    rule_id = engine.add_access_rule(owner, "contrib", 0, 0, False, 1, "CONTRIBUTOR")
    engine.check_access(alice, rule_id)
    first = engine.get_permissions(alice)
    assert first.access_count == 1
    assert first.granted_access_levels == frozenset({AccessLevel.BASIC})

    engine.add_contribution(alice, "forum", 5, "answered a question")
    engine.check_access(alice, rule_id)
    second = engine.get_permissions(alice)
    assert second.access_count == 2
    assert AccessLevel.CONTRIBUTOR in second.granted_access_levels


# ---------------------------------------------------------------------------
# Ownership
# ---------------------------------------------------------------------------

def test_transfer_ownership(engine, owner):
    engine.transfer_ownership(owner, "0xnew")
    assert engine.owner == "0xnew"
    payload = engine.recent_events(name=ev.OWNERSHIP_TRANSFERRED)[0]["payload"]
    assert payload == {"previous_owner": owner, "new_owner": "0xnew"}

    with pytest.raises(UnauthorizedError):
        engine.add_access_rule(owner, "old owner", 0, 0, False, 0, 1)
    assert engine.add_access_rule("0xnew", "new owner", 0, 0, False, 0, 1) == 1


def test_transfer_requires_owner(engine, owner):
    with pytest.raises(UnauthorizedError):
        engine.transfer_ownership("mallory", "mallory")
    with pytest.raises(ValidationError):
        engine.transfer_ownership(owner, "  ")
    assert engine.owner == owner


def test_renounce_ownership(engine, owner):
    engine.renounce_ownership(owner)
    assert engine.owner is None
    with pytest.raises(UnauthorizedError):
        engine.set_weights(owner, {"code_weight": 1, "governance_weight": 1, "forum_weight": 1, "identity_weight": 1})


def test_persisted_owner_wins_over_config(store, owner):
    engine = KarmaEngine(owner=owner, store=store)
    engine.renounce_ownership(owner)

    reopened = KarmaEngine(owner="someone-else", store=store)
    assert reopened.owner is None


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def test_every_mutation_is_saved(engine, store, owner):
    saves = store.saves
    engine.register_user("bob")
    engine.add_contribution("bob", "code", 10, "x")
    engine.add_access_rule(owner, "r", 0, 0, False, 0, 1)
    assert store.saves == saves + 3


def test_failed_mutation_is_not_saved(engine, store, alice):
    saves = store.saves
    with pytest.raises(ValidationError):
        engine.add_contribution(alice, "code", 500, "x")
    with pytest.raises(UnauthorizedError):
        engine.add_access_rule(alice, "r", 0, 0, False, 0, 1)
    assert store.saves == saves


def test_state_survives_reopen(tmp_path, owner):
    store = AtomicStateStore(data_dir=tmp_path)
    engine = KarmaEngine(owner=owner, store=store)
    engine.register_user("alice", {"github_handle": "alice-dev"})
    engine.add_contribution("alice", "code", 80, "merged PR")
    engine.add_contribution("alice", "governance", 60, "voted")
    rule_id = engine.add_access_rule(owner, "contrib", 10, 0, False, 1, "CONTRIBUTOR")
    engine.add_dao_integration(owner, "0xdao", "Builders DAO", "BASIC", [rule_id])
    engine.check_access("alice", rule_id)
    profile = engine.get_profile("alice")

    reopened = KarmaEngine(owner=owner, store=AtomicStateStore(data_dir=tmp_path))
    assert reopened.get_profile("alice") == profile
    assert [c.description for c in reopened.get_contributions("alice")] == ["merged PR", "voted"]
    assert reopened.get_access_rule(rule_id).name == "contrib"
    assert reopened.get_dao_integration("0xdao").custom_rule_ids == (rule_id,)
    assert reopened.get_permissions("alice").access_count == 1
    # ids keep counting from where they left off
    assert reopened.add_access_rule(owner, "next", 0, 0, False, 0, 1) == rule_id + 1


def test_build_engine_from_config(tmp_path, monkeypatch):
    monkeypatch.setenv("KARMA_OWNER", "0xcfg")
    monkeypatch.setenv("KARMA_DAO_GATING_MODE", "all")
    cfg = load_config(str(tmp_path))
    engine = build_engine(cfg, store=MemoryStateStore())
    assert engine.owner == "0xcfg"
    assert engine.access.dao_gating_mode.value == "all"
    assert engine.get_weights().to_dict() == cfg["scoring"]["weights"]


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

def test_concurrent_contributions_are_all_counted(engine):
    users = ["u%d" % i for i in range(4)]
    for u in users:
        engine.register_user(u)

    per_user = 25
    errors = []

    def worker(user_id):
        try:
            for i in range(per_user):
                engine.add_contribution(user_id, "code", 1, "patch %d" % i)
                engine.get_profile(user_id)
        except Exception as exc:  # surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(u,)) for u in users for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    for u in users:
        assert engine.contribution_count(u) == per_user * 2
        profile = engine.get_profile(u)
        assert profile.total_contributions == per_user * 2
        assert profile.karma_score == 5  # 50 * 4000 // (10000 * 4)


def test_weight_change_during_evaluation(engine, alice, owner):
    rule_id = engine.add_access_rule(owner, "r", 0, 0, False, 0, 1)
    engine.add_contribution(alice, "code", 100, "x")
    stop = threading.Event()
    errors = []

    def flip_weights():
        weights = [
            {"code_weight": 10000, "governance_weight": 0, "forum_weight": 0, "identity_weight": 0},
            {"code_weight": 4000, "governance_weight": 3000, "forum_weight": 2000, "identity_weight": 1000},
        ]
        i = 0
        while not stop.is_set():
            engine.set_weights(owner, weights[i % 2])
            i += 1
            stop.wait(0.001)

    def evaluate():
        try:
            for _ in range(50):
                assert engine.check_access(alice, rule_id) is True
                assert engine.get_profile(alice).karma_score in (10, 25)
        except Exception as exc:  # surfaced below
            errors.append(exc)

    flipper = threading.Thread(target=flip_weights)
    flipper.start()
    evaluators = [threading.Thread(target=evaluate) for _ in range(3)]
    for t in evaluators:
        t.start()
    for t in evaluators:
        t.join()
    stop.set()
    flipper.join()

    assert errors == []


# ---------------------------------------------------------------------------
# Failed saves roll back
# ---------------------------------------------------------------------------

class FlakyStore(MemoryStateStore):
    """Memory store whose save can be switched to fail."""

    def __init__(self):
        super().__init__()
        self.fail = False

    def save(self, state):
        if self.fail:
            raise OSError("disk full")
        super().save(state)


def test_failed_save_rolls_back_contribution(owner):
    store = FlakyStore()
    engine = KarmaEngine(owner=owner, store=store)
    engine.register_user("alice")
    engine.add_contribution("alice", "code", 40, "kept")
    seen = []
    engine.subscribe(seen.append)

    store.fail = True
    with pytest.raises(OSError):
        engine.add_contribution("alice", "code", 60, "lost")

    assert engine.contribution_count("alice") == 1
    assert engine.get_contributions("alice")[0].description == "kept"
    assert seen == []
    assert len(engine.recent_events(name=ev.CONTRIBUTION_ADDED)) == 1

    store.fail = False
    assert engine.get_profile("alice").total_contributions == 1
    rec = engine.add_contribution("alice", "code", 60, "retried")
    assert rec.contribution_id == 1


def test_failed_save_rolls_back_registration_and_config(owner):
    store = FlakyStore()
    engine = KarmaEngine(owner=owner, store=store)
    store.fail = True

    with pytest.raises(OSError):
        engine.register_user("bob")
    with pytest.raises(OSError):
        engine.add_access_rule(owner, "r", 0, 0, False, 0, 1)
    with pytest.raises(OSError):
        engine.set_weights(owner, {"code_weight": 1, "governance_weight": 0, "forum_weight": 0, "identity_weight": 0})
    with pytest.raises(OSError):
        engine.transfer_ownership(owner, "0xnew")

    assert not engine.is_registered("bob")
    assert engine.total_rules() == 0
    assert engine.get_weights().code_weight == 4000
    assert engine.owner == owner
    assert engine.recent_events() == []

    store.fail = False
    assert engine.add_access_rule(owner, "r", 0, 0, False, 0, 1) == 1


# ---------------------------------------------------------------------------
# Independence of users
# ---------------------------------------------------------------------------

def test_slow_subscriber_does_not_block_other_users(engine):
    engine.register_user("alice")
    engine.register_user("bob")
    alice_notified = threading.Event()

    def slow_on_alice(event):
        if event["name"] == ev.CONTRIBUTION_ADDED and event["payload"]["user_id"] == "alice":
            alice_notified.set()
            time.sleep(1.0)

    engine.subscribe(slow_on_alice)
    writer = threading.Thread(target=engine.add_contribution, args=("alice", "code", 10, "slow"))
    writer.start()
    assert alice_notified.wait(5)

    started = time.monotonic()
    engine.add_contribution("bob", "forum", 10, "fast")
    elapsed = time.monotonic() - started
    writer.join()

    assert elapsed < 0.5
    assert engine.contribution_count("alice") == 1
    assert engine.contribution_count("bob") == 1


def test_lookups_of_unknown_users_do_not_allocate_locks(engine, alice):
    for i in range(200):
        with pytest.raises(NotFoundError):
            engine.get_profile("ghost-%d" % i)
        with pytest.raises(NotFoundError):
            engine.add_contribution("ghost-%d" % i, "code", 1, "x")

    engine.get_profile(alice)
    assert set(engine._user_locks) == {alice}


# ---------------------------------------------------------------------------
# Explicit grants + privilege checks first
# ---------------------------------------------------------------------------

def test_grant_access_records_level(engine, alice, owner):
    rule_id = engine.add_access_rule(owner, "trusted", 0, 0, False, 0, "TRUSTED")

    with pytest.raises(UnauthorizedError):
        engine.grant_access(alice, alice, rule_id)
    with pytest.raises(NotFoundError):
        engine.get_permissions(alice)

    assert engine.grant_access(owner, alice, rule_id) is True
    record = engine.get_permissions(alice)
    assert record.granted_access_levels == frozenset({AccessLevel.BASIC, AccessLevel.TRUSTED})
    assert engine.recent_events(name=ev.ACCESS_GRANTED)[0]["payload"]["rule_id"] == rule_id


def test_grant_access_failing_rule_writes_nothing(engine, alice, owner):
    rule_id = engine.add_access_rule(owner, "verified", 0, 0, True, 0, "TRUSTED")
    assert engine.grant_access(owner, alice, rule_id) is False
    with pytest.raises(NotFoundError):
        engine.get_permissions(alice)
    assert engine.recent_events(name=ev.ACCESS_DENIED)[0]["payload"]["reason"] == "verification_required"


def test_grant_access_unknown_rule_or_user(engine, alice, owner):
    with pytest.raises(NotFoundError):
        engine.grant_access(owner, alice, 7)
    rule_id = engine.add_access_rule(owner, "r", 0, 0, False, 0, 1)
    with pytest.raises(NotFoundError):
        engine.grant_access(owner, "ghost", rule_id)


def test_ownership_checked_before_input(engine):
    with pytest.raises(UnauthorizedError):
        engine.set_weights("mallory", {"code_weight": -5})
    with pytest.raises(UnauthorizedError):
        engine.transfer_ownership("mallory", "")
    with pytest.raises(UnauthorizedError):
        engine.verify_user("mallory", "ghost")
    with pytest.raises(UnauthorizedError):
        engine.grant_access("mallory", "ghost", 99)
    assert engine.get_weights().code_weight == 4000
