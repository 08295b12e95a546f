# SPDX-License-Identifier: Apache-2.0
"""FastAPI app factory. Thin layer: security middleware + routers only."""
from __future__ import annotations

import logging

from fastapi import FastAPI

from consentlab.config import settings
from consentlab.core.security import add_security_middleware
from consentlab.database import Store
from consentlab.routers import participants, studies, system


def create_app(store: Store | None = None) -> FastAPI:
    """Build the app around an explicitly constructed store; opened on startup, closed on shutdown."""
    logging.basicConfig(level=settings.log_level.upper())
    app = FastAPI(title="consentlab API", version="0.1.0")
    app.state.store = store or Store(settings.database_url)

    add_security_middleware(app)

    @app.on_event("startup")
    def on_startup():
        app.state.store.init()

    @app.on_event("shutdown")
    def on_shutdown():
        app.state.store.close()

    app.include_router(studies.router, prefix="/researcher")
    app.include_router(participants.router, prefix="/participant")
    app.include_router(system.router, prefix="/system")
    return app


app = create_app()
