from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from mir_backend.api.dependencies import get_db, get_delivery_tracker, get_github_client
from mir_backend.ingestion.delivery_tracker import InMemoryDeliveryTracker
from mir_backend.main import app

USER_ID = 7


@pytest.fixture
def auth_headers():
    return {"X-User-Id": str(USER_ID), "Authorization": "Bearer gho_test"}


@pytest.fixture
def db():
    return MagicMock()


@pytest.fixture
def client(db):
    async def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_github_client] = lambda: MagicMock()
    app.dependency_overrides[get_delivery_tracker] = lambda: InMemoryDeliveryTracker(ttl_seconds=60)
    yield TestClient(app)
    app.dependency_overrides.clear()
