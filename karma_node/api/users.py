"""
karma_node/api/users.py
--------------------------------------------------
User profile + contribution API.

Routes
------
- POST /users                                register
- GET  /users/{user_id}                      live profile (recomputed if stale)
- POST /users/{user_id}/verify               owner-only
- POST /users/{user_id}/recalculate          force recomputation
- GET  /users/{user_id}/score-breakdown      preview without persisting
- GET  /users/{user_id}/contributions        insertion order
- POST /users/{user_id}/contributions        append
- GET  /users/{user_id}/access-level         best access level
- GET  /users/{user_id}/permissions          cached check analytics
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, StrictInt

from ..engine import KarmaEngine
from ..karma_runtime.contributions import ContributionRecord
from ..karma_runtime.profiles import UserProfile
from .deps import caller_id, get_engine

router = APIRouter(prefix="/users", tags=["users"])


# ============================================================
# Pydantic models
# ============================================================


class RegisterRequest(BaseModel):
    user_id: str = Field(..., description="Wallet address or other stable identifier.")
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form profile metadata, e.g. {'github_handle': 'alice-dev'}.",
    )


class ProfileResponse(BaseModel):
    ok: bool = True
    user_id: str
    metadata: Dict[str, Any]
    category_scores: Dict[str, int]
    karma_score: int
    trust_factor: int = Field(..., description="Basis points, 10000 = 100%.")
    total_contributions: int
    is_verified: bool
    registered_at: int
    last_activity_at: int
    last_calculated_at: Optional[int] = None


class ContributionRequest(BaseModel):
    category: str = Field(..., description="code | governance | forum | identity_verification")
    impact_score: StrictInt = Field(..., description="Impact in [0, 100].")
    description: str = Field(..., description="Up to 1000 characters.")
    verified: bool = False


class ContributionOut(BaseModel):
    contribution_id: int
    owner_id: str
    category: str
    impact_score: int
    description: str
    verified: bool
    timestamp: int


class ContributionsResponse(BaseModel):
    ok: bool = True
    user: str
    total: int
    contributions: List[ContributionOut]


class AccessLevelResponse(BaseModel):
    ok: bool = True
    user: str
    access_level: int
    access_level_name: str
    granted_levels: List[int]


class PermissionResponse(BaseModel):
    ok: bool = True
    user_id: str
    granted_access_levels: List[int]
    last_checked: int
    access_count: int


class ScoreBreakdownResponse(BaseModel):
    ok: bool = True
    user: str
    category_scores: Dict[str, int]
    karma_score: int
    trust_factor: int
    total_contributions: int
    weights: Dict[str, int]


def _profile_out(profile: UserProfile) -> ProfileResponse:
    return ProfileResponse(**profile.to_dict())


def _contribution_out(rec: ContributionRecord) -> ContributionOut:
    return ContributionOut(**rec.to_dict())


# ============================================================
# Routes
# ============================================================


@router.post("", response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
def register_user(body: RegisterRequest, engine: KarmaEngine = Depends(get_engine)) -> ProfileResponse:
    profile = engine.register_user(body.user_id, body.metadata)
    return _profile_out(profile)


@router.get("/{user_id}", response_model=ProfileResponse)
def get_profile(user_id: str, engine: KarmaEngine = Depends(get_engine)) -> ProfileResponse:
    return _profile_out(engine.get_profile(user_id))


@router.post("/{user_id}/verify", response_model=ProfileResponse)
def verify_user(
    user_id: str,
    caller: str = Depends(caller_id),
    engine: KarmaEngine = Depends(get_engine),
) -> ProfileResponse:
    return _profile_out(engine.verify_user(caller, user_id))


@router.post("/{user_id}/recalculate", response_model=ProfileResponse)
def recalculate(user_id: str, engine: KarmaEngine = Depends(get_engine)) -> ProfileResponse:
    return _profile_out(engine.recalculate(user_id))


@router.get("/{user_id}/score-breakdown", response_model=ScoreBreakdownResponse)
def score_breakdown(user_id: str, engine: KarmaEngine = Depends(get_engine)) -> ScoreBreakdownResponse:
    return ScoreBreakdownResponse(user=user_id, **engine.score_breakdown(user_id))


@router.get("/{user_id}/contributions", response_model=ContributionsResponse)
def list_contributions(user_id: str, engine: KarmaEngine = Depends(get_engine)) -> ContributionsResponse:
    records = engine.get_contributions(user_id)
    return ContributionsResponse(
        user=user_id,
        total=len(records),
        contributions=[_contribution_out(r) for r in records],
    )


@router.post(
    "/{user_id}/contributions",
    response_model=ContributionOut,
    status_code=status.HTTP_201_CREATED,
)
def add_contribution(
    user_id: str,
    body: ContributionRequest,
    engine: KarmaEngine = Depends(get_engine),
) -> ContributionOut:
    rec = engine.add_contribution(
        user_id,
        body.category,
        body.impact_score,
        body.description,
        verified=body.verified,
    )
    return _contribution_out(rec)


@router.get("/{user_id}/access-level", response_model=AccessLevelResponse)
def access_level(user_id: str, engine: KarmaEngine = Depends(get_engine)) -> AccessLevelResponse:
    levels = engine.granted_levels(user_id)
    best = max(levels)
    return AccessLevelResponse(
        user=user_id,
        access_level=int(best),
        access_level_name=best.label,
        granted_levels=sorted(int(x) for x in levels),
    )


@router.get("/{user_id}/permissions", response_model=PermissionResponse)
def permissions(user_id: str, engine: KarmaEngine = Depends(get_engine)) -> PermissionResponse:
    return PermissionResponse(**engine.get_permissions(user_id).to_dict())
