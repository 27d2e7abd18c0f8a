"""
karma_node/api/daos.py
--------------------------------------------------
DAO integration API.

Routes
------
- POST /daos                            owner-only
- GET  /daos/{dao_id}
- POST /daos/{dao_id}/deactivate        owner-only
- GET  /daos/{dao_id}/check/{user_id}
"""

from __future__ import annotations

from typing import List, Union

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, StrictInt

from ..engine import KarmaEngine
from ..karma_runtime.access import DaoIntegration
from .deps import caller_id, get_engine

router = APIRouter(prefix="/daos", tags=["daos"])


class DaoRequest(BaseModel):
    dao_id: str = Field(..., description="DAO contract address or slug.")
    dao_name: str = Field(..., max_length=200)
    required_access_level: Union[StrictInt, str] = Field(
        ..., description="0..3 or BASIC/CONTRIBUTOR/TRUSTED/ELITE."
    )
    custom_rule_ids: List[StrictInt] = Field(
        default_factory=list,
        description="Rules that must ALL pass; override the level check in 'override' mode.",
    )


class DaoOut(BaseModel):
    ok: bool = True
    dao_id: str
    dao_name: str
    required_access_level: int
    required_access_level_name: str
    custom_rule_ids: List[int]
    active: bool
    created_at: int


class DaoCheckResponse(BaseModel):
    ok: bool = True
    user: str
    dao_id: str
    allowed: bool
    gating_mode: str


def _dao_out(dao: DaoIntegration) -> DaoOut:
    return DaoOut(required_access_level_name=dao.required_access_level.label, **dao.to_dict())


@router.post("", response_model=DaoOut, status_code=status.HTTP_201_CREATED)
def add_dao(
    body: DaoRequest,
    caller: str = Depends(caller_id),
    engine: KarmaEngine = Depends(get_engine),
) -> DaoOut:
    dao = engine.add_dao_integration(
        caller,
        body.dao_id,
        body.dao_name,
        body.required_access_level,
        body.custom_rule_ids,
    )
    return _dao_out(dao)


@router.get("/{dao_id}", response_model=DaoOut)
def get_dao(dao_id: str, engine: KarmaEngine = Depends(get_engine)) -> DaoOut:
    return _dao_out(engine.get_dao_integration(dao_id))


@router.post("/{dao_id}/deactivate", response_model=DaoOut)
def deactivate_dao(
    dao_id: str,
    caller: str = Depends(caller_id),
    engine: KarmaEngine = Depends(get_engine),
) -> DaoOut:
    return _dao_out(engine.deactivate_dao_integration(caller, dao_id))


@router.get("/{dao_id}/check/{user_id}", response_model=DaoCheckResponse)
def check_dao_access(dao_id: str, user_id: str, engine: KarmaEngine = Depends(get_engine)) -> DaoCheckResponse:
    allowed = engine.check_dao_access(user_id, dao_id)
    return DaoCheckResponse(
        user=user_id,
        dao_id=dao_id,
        allowed=allowed,
        gating_mode=engine.access.dao_gating_mode.value,
    )
