"""
karma_node/api/deps.py
----------------------
Shared FastAPI dependencies.

- get_engine     : the KarmaEngine stored on app.state by create_app()
- caller_id      : required X-Karma-Caller header (privileged routes)
"""

from __future__ import annotations

from fastapi import Header, Request

from ..engine import KarmaEngine

CALLER_HEADER = "X-Karma-Caller"


def get_engine(request: Request) -> KarmaEngine:
    return request.app.state.engine


async def caller_id(
    x_karma_caller: str = Header(
        ...,
        alias=CALLER_HEADER,
        description="Identifier of the caller (owner account for privileged routes).",
    )
) -> str:
    return x_karma_caller.strip()
