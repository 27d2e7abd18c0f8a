# tests/test_contributions.py

import pytest

from karma_node.karma_runtime import events as ev
from karma_node.karma_runtime.contributions import Category
from karma_node.karma_runtime.errors import NotFoundError, ValidationError


def test_append_returns_immutable_record(engine, alice):
    rec = engine.add_contribution(alice, "code", 80, "Fixed auth bypass")
    assert rec.contribution_id == 0
    assert rec.owner_id == alice
    assert rec.category is Category.CODE
    assert rec.impact_score == 80
    assert rec.verified is False

    with pytest.raises(AttributeError):
        rec.impact_score = 1


def test_append_updates_profile_counters(engine, alice):
    before = engine.get_profile(alice)
    engine.add_contribution(alice, Category.GOVERNANCE, 60, "Proposal DAO-15")
    engine.add_contribution(alice, "forum", 40, "Tutorial series")

    profile = engine.get_profile(alice)
    assert profile.total_contributions == 2
    assert profile.last_activity_at >= before.last_activity_at
    assert engine.contribution_count(alice) == 2


def test_list_by_owner_keeps_insertion_order(engine, alice):
    for i, cat in enumerate(["code", "forum", "governance", "identity_verification"]):
        engine.add_contribution(alice, cat, 10 * (i + 1), f"item {i}")

    records = engine.get_contributions(alice)
    assert [r.contribution_id for r in records] == [0, 1, 2, 3]
    assert [r.impact_score for r in records] == [10, 20, 30, 40]

    # restartable: a second listing is identical and independent
    again = engine.get_contributions(alice)
    assert again == records
    again.pop()
    assert len(engine.get_contributions(alice)) == 4


def test_category_parsing_accepts_enum_names(engine, alice):
    rec = engine.add_contribution(alice, "IDENTITY_VERIFICATION", 50, "KYC passed")
    assert rec.category is Category.IDENTITY_VERIFICATION


@pytest.mark.parametrize("score", [-1, 101, 150, 50.5, "80", True, None])
def test_invalid_impact_score_rejected(engine, alice, score):
    with pytest.raises(ValidationError) as exc:
        engine.add_contribution(alice, "code", score, "bad score")
    assert exc.value.code == "invalid_impact_score"


@pytest.mark.parametrize("score", [0, 100])
def test_impact_score_bounds_inclusive(engine, alice, score):
    rec = engine.add_contribution(alice, "code", score, "edge")
    assert rec.impact_score == score


def test_unknown_category_rejected(engine, alice):
    with pytest.raises(ValidationError) as exc:
        engine.add_contribution(alice, "twitter", 10, "tweet")
    assert exc.value.code == "invalid_category"


@pytest.mark.parametrize("desc", ["", "   ", None, "x" * 1001])
def test_bad_description_rejected(engine, alice, desc):
    with pytest.raises(ValidationError):
        engine.add_contribution(alice, "code", 10, desc)


def test_unknown_owner_rejected(engine):
    with pytest.raises(NotFoundError) as exc:
        engine.add_contribution("ghost", "code", 10, "nobody home")
    assert exc.value.code == "unknown_user"


def test_rejected_append_leaves_state_untouched(engine, alice, store):
    engine.add_contribution(alice, "code", 70, "first")
    profile_before = engine.get_profile(alice)
    saves_before = store.saves
    events_before = len(engine.recent_events(limit=1000, name=ev.CONTRIBUTION_ADDED))

    with pytest.raises(ValidationError):
        engine.add_contribution(alice, "code", 150, "way too much")

    profile_after = engine.get_profile(alice)
    assert profile_after.total_contributions == profile_before.total_contributions == 1
    assert profile_after.category_scores == profile_before.category_scores
    assert engine.contribution_count(alice) == 1
    assert store.saves == saves_before
    assert len(engine.recent_events(limit=1000, name=ev.CONTRIBUTION_ADDED)) == events_before


def test_contribution_added_event(engine, alice):
    seen = []
    engine.subscribe(seen.append)
    engine.add_contribution(alice, "forum", 33, "answered questions")

    added = [e for e in seen if e["name"] == ev.CONTRIBUTION_ADDED]
    assert len(added) == 1
    payload = added[0]["payload"]
    assert payload["user_id"] == alice
    assert payload["category"] == "forum"
    assert payload["impact_score"] == 33


def test_verified_flag_is_stored(engine, alice):
    engine.add_contribution(alice, "code", 10, "signed commit", verified=True)
    assert engine.get_contributions(alice)[0].verified is True
