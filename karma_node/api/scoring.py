"""
karma_node/api/scoring.py
-------------------------
Scoring weights. Reading is public; changing them is owner-only and only
affects future recalculations.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, StrictInt

from ..engine import KarmaEngine
from ..karma_runtime.scoring import MAX_KARMA, MAX_TRUST, WEIGHT_SCALE
from .deps import caller_id, get_engine

router = APIRouter(prefix="/scoring", tags=["scoring"])


class WeightsBody(BaseModel):
    code_weight: StrictInt = Field(..., description=f"0..{WEIGHT_SCALE}")
    governance_weight: StrictInt = Field(..., description=f"0..{WEIGHT_SCALE}")
    forum_weight: StrictInt = Field(..., description=f"0..{WEIGHT_SCALE}")
    identity_weight: StrictInt = Field(..., description=f"0..{WEIGHT_SCALE}")


class WeightsResponse(BaseModel):
    ok: bool = True
    weights: WeightsBody
    weight_scale: int = WEIGHT_SCALE
    max_karma: int = MAX_KARMA
    max_trust: int = MAX_TRUST
    normalization_factor: int


class WeightsUpdateResponse(BaseModel):
    ok: bool = True
    old: WeightsBody
    new: WeightsBody


@router.get("/weights", response_model=WeightsResponse)
def get_weights(engine: KarmaEngine = Depends(get_engine)) -> WeightsResponse:
    return WeightsResponse(
        weights=WeightsBody(**engine.get_weights().to_dict()),
        normalization_factor=engine.scoring.normalization_factor,
    )


@router.put("/weights", response_model=WeightsUpdateResponse)
def set_weights(
    body: WeightsBody,
    caller: str = Depends(caller_id),
    engine: KarmaEngine = Depends(get_engine),
) -> WeightsUpdateResponse:
    old = engine.set_weights(caller, body.model_dump())
    return WeightsUpdateResponse(
        old=WeightsBody(**old.to_dict()),
        new=WeightsBody(**engine.get_weights().to_dict()),
    )
