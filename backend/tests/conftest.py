# SPDX-License-Identifier: Apache-2.0
"""pytest fixtures for backend tests. Every test gets its own in-memory store."""
import pytest
from fastapi.testclient import TestClient

from consentlab.database import Store
from consentlab.main import create_app
from consentlab.schemas import CategoryInput, StudyCreate
from consentlab.services.study_service import create_study


@pytest.fixture
def store():
    s = Store("sqlite://")
    s.init()
    yield s
    s.close()


@pytest.fixture
def session(store):
    with store.session() as session:
        yield session


@pytest.fixture
def client(store):
    """FastAPI test client bound to the test store."""
    with TestClient(create_app(store)) as c:
        yield c


@pytest.fixture
def make_study(session):
    """Create a study owned by `owner` with Email(optional) / Logs(required) / Accel(optional)."""

    def _make(owner="researcher-1", title="Sleep Study", status="public", join_code=None, categories=None):
        if categories is None:
            categories = [
                CategoryInput(name="Email"),
                CategoryInput(name="Logs", required=True),
                CategoryInput(name="Accel"),
            ]
        data = StudyCreate(
            title=title,
            summary="Sleep habits",
            purpose="Research on sleep",
            contact_email="lab@example.org",
            retention_default_days=30,
            status=status,
            join_code=join_code,
            categories=categories,
        )
        return create_study(session, owner, data)

    return _make


def researcher(actor_id="researcher-1", email="r1@example.org"):
    return {"X-Actor-Id": actor_id, "X-Actor-Role": "researcher", "X-Actor-Email": email}


def participant(actor_id="participant-1"):
    return {"X-Actor-Id": actor_id, "X-Actor-Role": "participant"}
