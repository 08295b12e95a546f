# SPDX-License-Identifier: Apache-2.0
"""Actor identity, rate limiting, hashing, sanitization, security middleware."""
from __future__ import annotations

import hashlib
import json
import logging
import re
import uuid

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from consentlab.config import settings
from consentlab.core.exceptions import ConsentLabError

_logger = logging.getLogger("consentlab")

_limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)

ROLE_RESEARCHER = "researcher"
ROLE_PARTICIPANT = "participant"


def rate_limit(s: str):
    return _limiter.limit(s)


class Actor(BaseModel):
    """Identity supplied by the upstream identity provider. Trusted as-is."""

    id: str
    role: str
    email: str | None = None


def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
    x_actor_email: str | None = Header(default=None),
) -> Actor:
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=401, detail="Missing actor identity")
    role = x_actor_role.strip().lower()
    if role not in (ROLE_RESEARCHER, ROLE_PARTICIPANT):
        raise HTTPException(status_code=401, detail="Unknown actor role")
    return Actor(id=x_actor_id.strip(), role=role, email=x_actor_email)


def require_researcher(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role != ROLE_RESEARCHER:
        raise HTTPException(status_code=403, detail="Researcher role required")
    return actor


def require_participant(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role != ROLE_PARTICIPANT:
        raise HTTPException(status_code=403, detail="Participant role required")
    return actor


def add_security_middleware(app: FastAPI) -> None:
    """Register exception handlers, security headers, and CORS. No business logic."""
    app.state.limiter = _limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @app.exception_handler(ConsentLabError)
    async def consentlab_exception_handler(request: Request, exc: ConsentLabError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        error_id = str(uuid.uuid4())
        _logger.error("Unhandled exception %s: %s", error_id, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "error_id": error_id},
        )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Content-Security-Policy"] = "default-src 'self'"
        if settings.production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000"
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def sanitize_text(value: str, max_len: int = 2000) -> str:
    """Strip HTML/script tags and enforce max length."""
    if not value:
        return ""
    value = re.sub(r"<[^>]+>", "", value)
    value = re.sub(r"javascript:", "", value, flags=re.IGNORECASE)
    return value.strip()[:max_len]


def canonical_json(value) -> str:
    """Deterministic JSON: sorted keys, no whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(*parts: bytes | str) -> str:
    """SHA-256 hash of concatenated parts, hex-encoded."""
    h = hashlib.sha256()
    for p in parts:
        h.update(p.encode("utf-8") if isinstance(p, str) else p)
    return h.hexdigest()
