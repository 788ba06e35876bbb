import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="classhub-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP_DIR}/classhub.db")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SETUP_KEY", "test-setup-key")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("BULK_CONCURRENCY", "2")
os.environ.setdefault("JWT_SECRET", "classhub-test-secret-with-enough-bytes")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from classhub import identity, services
from classhub.api import app
from classhub.database import Base


@pytest.fixture
def session_local(tmp_path, monkeypatch):
    """Provide an isolated SQLite database for each test."""
    engine = create_engine(
        f"sqlite:///{tmp_path}/test.db",
        future=True,
        connect_args={"check_same_thread": False},
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(services, "SessionLocal", TestingSessionLocal)
    monkeypatch.setattr(identity, "SessionLocal", TestingSessionLocal)
    yield TestingSessionLocal
    engine.dispose()


@pytest.fixture
def make_user(session_local):
    """Create a complete account directly in the stores."""

    def _make(username, password="pw", role=None, display_name=None):
        user_id = identity.create_identity(identity.login_for(username), password)
        services.insert_profile(user_id, username.lower(), display_name)
        if role:
            services.insert_role_grant(user_id, role)
        return user_id

    return _make


@pytest.fixture
def admin_id(make_user):
    return make_user("admin", "adminpw", role=services.ROLE_ADMIN)


@pytest.fixture
def client(session_local):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_header():
    def _header(user_id):
        return {"Authorization": f"Bearer {identity.create_access_token(user_id)}"}

    return _header
