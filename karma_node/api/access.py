"""
karma_node/api/access.py
--------------------------------------------------
Access rule API.

Routes
------
- GET  /access/rules                          list (optionally active only)
- POST /access/rules                          owner-only
- GET  /access/rules/{rule_id}
- POST /access/rules/{rule_id}/deactivate     owner-only
- GET  /access/rules/{rule_id}/check/{user_id}
- POST /access/rules/{rule_id}/grant/{user_id}     owner-only, records the level if the rule passes
- GET  /access/levels                         level metadata
"""

from __future__ import annotations

from typing import List, Union

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, StrictInt

from ..engine import KarmaEngine
from ..karma_runtime.access import AccessLevel, AccessRule
from .deps import caller_id, get_engine

router = APIRouter(prefix="/access", tags=["access"])


class AccessRuleRequest(BaseModel):
    name: str = Field(..., max_length=200)
    min_karma: StrictInt = Field(0, description="Karma threshold in [0, 100].")
    min_trust_factor: StrictInt = Field(0, description="Trust threshold in basis points [0, 10000].")
    requires_verification: bool = False
    min_contributions: StrictInt = 0
    access_level: Union[StrictInt, str] = Field(..., description="0..3 or BASIC/CONTRIBUTOR/TRUSTED/ELITE.")


class AccessRuleOut(BaseModel):
    rule_id: int
    name: str
    min_karma: int
    min_trust_factor: int
    requires_verification: bool
    min_contributions: int
    access_level: int
    access_level_name: str
    active: bool


class AccessRulesResponse(BaseModel):
    ok: bool = True
    total_rules: int
    rules: List[AccessRuleOut]


class AccessRuleCreated(BaseModel):
    ok: bool = True
    rule_id: int


class AccessCheckResponse(BaseModel):
    ok: bool = True
    user: str
    rule_id: int
    allowed: bool


class AccessGrantResponse(BaseModel):
    ok: bool = True
    user: str
    rule_id: int
    granted: bool
    granted_access_levels: List[int]


class AccessLevelMeta(BaseModel):
    level: int
    name: str


def rule_out(rule: AccessRule) -> AccessRuleOut:
    return AccessRuleOut(access_level_name=rule.access_level.label, **rule.to_dict())


@router.get("/levels", response_model=List[AccessLevelMeta])
def list_levels() -> List[AccessLevelMeta]:
    return [AccessLevelMeta(level=int(lvl), name=lvl.label) for lvl in AccessLevel]


@router.get("/rules", response_model=AccessRulesResponse)
def list_rules(
    active_only: bool = Query(False, description="Only return active rules."),
    engine: KarmaEngine = Depends(get_engine),
) -> AccessRulesResponse:
    rules = engine.list_access_rules(active_only=active_only)
    return AccessRulesResponse(total_rules=engine.total_rules(), rules=[rule_out(r) for r in rules])


@router.post("/rules", response_model=AccessRuleCreated, status_code=status.HTTP_201_CREATED)
def add_rule(
    body: AccessRuleRequest,
    caller: str = Depends(caller_id),
    engine: KarmaEngine = Depends(get_engine),
) -> AccessRuleCreated:
    rule_id = engine.add_access_rule(
        caller,
        body.name,
        body.min_karma,
        body.min_trust_factor,
        body.requires_verification,
        body.min_contributions,
        body.access_level,
    )
    return AccessRuleCreated(rule_id=rule_id)


@router.get("/rules/{rule_id}", response_model=AccessRuleOut)
def get_rule(rule_id: int, engine: KarmaEngine = Depends(get_engine)) -> AccessRuleOut:
    return rule_out(engine.get_access_rule(rule_id))


@router.post("/rules/{rule_id}/deactivate", response_model=AccessRuleOut)
def deactivate_rule(
    rule_id: int,
    caller: str = Depends(caller_id),
    engine: KarmaEngine = Depends(get_engine),
) -> AccessRuleOut:
    return rule_out(engine.deactivate_access_rule(caller, rule_id))


@router.get("/rules/{rule_id}/check/{user_id}", response_model=AccessCheckResponse)
def check_access(rule_id: int, user_id: str, engine: KarmaEngine = Depends(get_engine)) -> AccessCheckResponse:
    allowed = engine.check_access(user_id, rule_id)
    return AccessCheckResponse(user=user_id, rule_id=rule_id, allowed=allowed)


@router.post("/rules/{rule_id}/grant/{user_id}", response_model=AccessGrantResponse)
def grant_access(
    rule_id: int,
    user_id: str,
    caller: str = Depends(caller_id),
    engine: KarmaEngine = Depends(get_engine),
) -> AccessGrantResponse:
    granted = engine.grant_access(caller, user_id, rule_id)
    levels: List[int] = []
    if granted:
        levels = sorted(int(x) for x in engine.get_permissions(user_id).granted_access_levels)
    return AccessGrantResponse(user=user_id, rule_id=rule_id, granted=granted, granted_access_levels=levels)
