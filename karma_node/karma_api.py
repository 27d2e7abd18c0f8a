from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import access, daos, events, scoring, users
from .config import get_cors_origins, load_config
from .engine import KarmaEngine, build_engine
from .karma_runtime.errors import KarmaError, NotFoundError, UnauthorizedError, ValidationError

log = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (UnauthorizedError, 403),
    (ValidationError, 400),
)


def _status_for(exc: KarmaError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return 400


async def _karma_error_handler(request: Request, exc: KarmaError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code == 403:
        log.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return JSONResponse(status_code=400, content=ValidationError("; ".join(parts)).to_dict())


def create_app(engine: Optional[KarmaEngine] = None, cfg: Optional[Dict[str, Any]] = None) -> FastAPI:
    """
    Build the HTTP app around an explicit engine. When no engine is given one
    is built from the config (karma_config.yaml in the working directory).
    """
    cfg = cfg if cfg is not None else load_config(os.getcwd())
    if engine is None:
        engine = build_engine(cfg)

    app = FastAPI(title="Karma Node API")
    app.state.engine = engine
    app.state.config = cfg

    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_origins(cfg),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(KarmaError, _karma_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    app.include_router(users.router)
    app.include_router(access.router)
    app.include_router(daos.router)
    app.include_router(scoring.router)
    app.include_router(events.router)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "ts": time.time(),
            "owner_set": engine.owner is not None,
            "users": len(engine.profiles.rows),
            "rules": engine.total_rules(),
        }

    return app
