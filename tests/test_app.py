import pytest

from app import create_app
from config import DevelopmentConfig, ProductionConfig, TestingConfig, get_config
from models.session import Session
from models.user import User


def test_profiles_resolve_by_name(monkeypatch):
    assert get_config("testing") is TestingConfig
    assert get_config("Development") is DevelopmentConfig

    monkeypatch.setenv("APP_PROFILE", "production")
    assert get_config() is ProductionConfig

    with pytest.raises(ValueError):
        get_config("staging")


def test_relaxed_profile_is_a_named_profile():
    assert DevelopmentConfig.RATE_LIMIT_ENABLED is False
    assert DevelopmentConfig.CSRF_ENABLED is False
    assert ProductionConfig.RATE_LIMIT_ENABLED is True
    assert ProductionConfig.CSRF_ENABLED is True
    assert ProductionConfig.SESSION_COOKIE_SECURE is True


def test_production_refuses_to_start_without_secrets():
    class NoSecrets(ProductionConfig):
        JWT_SECRET = None
        JWT_REFRESH_SECRET = None

    with pytest.raises(RuntimeError, match="JWT_SECRET"):
        create_app(NoSecrets)


def test_production_refuses_relaxed_flags():
    class Relaxed(ProductionConfig):
        JWT_SECRET = "access"
        JWT_REFRESH_SECRET = "refresh"
        CSRF_ENABLED = False

    with pytest.raises(RuntimeError, match="CSRF_ENABLED"):
        create_app(Relaxed)


def test_health_reports_database(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "ok"
    assert body["database"] == "ok"


def test_security_headers_and_request_id(client):
    resp = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["X-Request-ID"] == "abc123"


def test_unknown_route_uses_error_envelope(client):
    resp = client.get("/nope")
    assert resp.status_code == 404
    assert resp.get_json() == {"success": False, "message": "Route not found", "code": "NOT_FOUND"}


def test_general_rate_limit(app, client):
    app.config["RATE_LIMIT_MAX_REQUESTS"] = 2
    assert client.get("/auth/csrf-token").status_code == 200
    assert client.get("/auth/csrf-token").status_code == 200

    resp = client.get("/auth/csrf-token")
    assert resp.status_code == 429
    assert "Retry-After" in resp.headers
    # liveness probe is never throttled
    assert client.get("/health").status_code == 200


def test_cli_make_admin_and_purge(app, make_user):
    make_user(email="boss@example.com")
    runner = app.test_cli_runner()

    result = runner.invoke(args=["seed-roles"])
    assert result.exit_code == 0

    result = runner.invoke(args=["make-admin", "Boss@Example.com"])
    assert result.exit_code == 0
    assert "promoted to ADMIN" in result.output

    result = runner.invoke(args=["make-admin", "ghost@example.com"])
    assert result.exit_code != 0

    result = runner.invoke(args=["purge-expired"])
    assert result.exit_code == 0
    assert "Removed 0 session(s)" in result.output

    with app.app_context():
        assert User.query.filter_by(email="boss@example.com").one().role_name == "ADMIN"
        assert Session.query.count() == 0
