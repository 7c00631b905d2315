import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from app import create_app  # noqa: E402
from config import TestingConfig  # noqa: E402
from models import db  # noqa: E402
from models.user import Role, User  # noqa: E402
from security.kv_store import MemoryKeyValueStore  # noqa: E402
from security.password import hash_password  # noqa: E402

DEFAULT_PASSWORD = "Secret1!pass"


class FakeClock:
    """Manually advanced clock shared by the key-value store and the security components."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def app(tmp_path, clock, store):
    class _Config(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'test.db'}"

    app = create_app(_Config, store=store, clock=clock)
    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make(email="user@example.com", password=DEFAULT_PASSWORD, role="CUSTOMER",
              verified=True, active=True, full_name="Test User"):
        with app.app_context():
            user = User(
                email=email,
                password_hash=hash_password(password),
                full_name=full_name,
                is_verified=verified,
                is_active=active,
                role=Role.query.filter_by(name=role).one(),
            )
            db.session.add(user)
            db.session.commit()
            return user.id
    return _make


def csrf_headers(client, headers=None):
    headers = dict(headers or {})
    resp = client.get("/auth/csrf-token", headers=headers)
    assert resp.status_code == 200
    headers["X-CSRF-Token"] = resp.get_json()["csrfToken"]
    return headers


def call(client, method, path, json=None, headers=None):
    """State-changing request with a fresh one-time CSRF token."""
    return client.open(path, method=method, json=json, headers=csrf_headers(client, headers))


def post(client, path, json=None, headers=None):
    return call(client, "POST", path, json=json, headers=headers)


def login(client, email="user@example.com", password=DEFAULT_PASSWORD, remember=False, ip=None):
    headers = {"X-Forwarded-For": ip} if ip else {}
    return post(
        client,
        "/auth/login",
        json={"email": email, "password": password, "rememberMe": remember},
        headers=headers,
    )
