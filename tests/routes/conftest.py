"""
Conftest for routes tests - builds the app around in-memory collaborators
"""

import pytest
from fastapi.testclient import TestClient

from src.config import Config
from src.main import create_app
from src.security.deps import get_optional_user_id
from tests.helpers.fakes import REFERENCE_PHOTO


@pytest.fixture
def reference_dir(tmp_path, monkeypatch):
    (tmp_path / REFERENCE_PHOTO).write_bytes(b"\xff\xd8\xffreference")
    monkeypatch.setattr(Config, "REFERENCE_PHOTOS_DIR", tmp_path)
    return tmp_path


@pytest.fixture
def app(services, reference_dir):
    return create_app(services=services)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def login_as(app):
    """Treat every request as authenticated for the given user id"""

    def _login(user_id):
        app.dependency_overrides[get_optional_user_id] = lambda: user_id

    yield _login
    app.dependency_overrides.clear()
