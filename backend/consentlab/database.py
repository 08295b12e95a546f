# SPDX-License-Identifier: Apache-2.0
"""DB connection and session management."""
from __future__ import annotations

import logging
from contextlib import contextmanager

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from consentlab.core.exceptions import ConflictError
from consentlab import models  # noqa: F401 – register all models with SQLModel.metadata

logger = logging.getLogger("consentlab")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Store:
    """Owns the engine. Open with init() at startup, release with close() at shutdown."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self._engine: Engine | None = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Store is not initialised; call init() first")
        return self._engine

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def init(self) -> None:
        """Create the engine (idempotent) and all tables."""
        if self._engine is None:
            kwargs: dict = {"echo": self.echo}
            if self.url.startswith("sqlite"):
                kwargs["connect_args"] = {"check_same_thread": False}
                if self.url in ("sqlite://", "sqlite:///:memory:"):
                    kwargs["poolclass"] = StaticPool
            self._engine = create_engine(self.url, **kwargs)
            if self.url.startswith("sqlite"):
                event.listen(self._engine, "connect", _enable_sqlite_foreign_keys)
            logger.info("Store opened: %s", self._engine.url.render_as_string(hide_password=True))
        SQLModel.metadata.create_all(self._engine)

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            logger.info("Store closed")

    def session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    @contextmanager
    def session_scope(self):
        """Context manager for use outside request handlers."""
        with self.session() as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_session(request: Request):
    """Yield a DB session (for FastAPI Depends)."""
    with get_store(request).session() as session:
        yield session


def commit_or_conflict(session: Session, what: str) -> None:
    """Commit; a unique-constraint violation rolls back and becomes ConflictError."""
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.warning("Conflicting write on %s: %s", what, exc.orig)
        raise ConflictError(f"Concurrent update of {what}; retry") from exc
