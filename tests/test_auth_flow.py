import json
from datetime import timedelta

import pytest

from conftest import DEFAULT_PASSWORD, csrf_headers, login, post
from models import db
from models.audit_log import AuditLog
from models.session import Session
from models.user import Role, User
from security.tokens import ACCESS_AUDIENCE, TokenService


@pytest.fixture
def outbox(monkeypatch):
    """Captures the tokens that would have been e-mailed."""
    sent = {"verification": [], "reset": []}

    def _verification(to_email, token):
        sent["verification"].append((to_email, token))
        return True, None

    def _reset(to_email, token):
        sent["reset"].append((to_email, token))
        return True, None

    monkeypatch.setattr("routes.auth.send_verification_email", _verification)
    monkeypatch.setattr("routes.auth.send_password_reset_email", _reset)
    return sent


def _audit_actions(app, user_id=None):
    with app.app_context():
        q = AuditLog.query
        if user_id is not None:
            q = q.filter_by(user_id=user_id)
        return [row.action for row in q.order_by(AuditLog.id).all()]


def test_register_verify_login_scenario(app, client, outbox):
    resp = post(client, "/auth/register", json={"email": "a@x.com", "password": "Aa1!aaaa"})
    assert resp.status_code == 201

    email, token = outbox["verification"][0]
    assert email == "a@x.com"

    resp = client.get(f"/auth/verify-email/{token}")
    assert resp.status_code == 200

    resp = login(client, "a@x.com", "Aa1!aaaa")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert client.get_cookie("token") is not None
    assert client.get_cookie("refreshToken") is not None

    claims = app.extensions["security"].tokens.verify(body["token"], ACCESS_AUDIENCE)
    with app.app_context():
        user = User.query.filter_by(email="a@x.com").one()
        assert claims["role"] == user.role_name == "CUSTOMER"
        assert claims["id"] == user.id
        assert user.last_login_at is not None

    assert "LOGIN_SUCCESS" in _audit_actions(app)


def test_verification_token_is_cleared_once_used(app, client, outbox):
    post(client, "/auth/register", json={"email": "a@x.com", "password": "Aa1!aaaa"})
    _, token = outbox["verification"][0]

    assert client.get(f"/auth/verify-email/{token}").status_code == 200
    with app.app_context():
        user = User.query.filter_by(email="a@x.com").one()
        assert user.is_verified is True
        assert user.verification_token_hash is None

    resp = client.get(f"/auth/verify-email/{token}")
    assert resp.status_code == 404
    assert resp.get_json()["code"] == "VERIFICATION_TOKEN_INVALID"

    assert client.get("/auth/verify-email/" + "0" * 64).status_code == 404


def test_verify_email_on_an_already_verified_account(app, client, outbox):
    post(client, "/auth/register", json={"email": "a@x.com", "password": "Aa1!aaaa"})
    _, token = outbox["verification"][0]
    with app.app_context():
        user = User.query.filter_by(email="a@x.com").one()
        user.is_verified = True
        db.session.commit()

    resp = client.get(f"/auth/verify-email/{token}")
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "ALREADY_VERIFIED"


def test_register_without_seeded_roles_is_a_server_error(app, client, outbox):
    with app.app_context():
        Role.query.delete()
        db.session.commit()

    resp = post(client, "/auth/register", json={"email": "a@x.com", "password": "Aa1!aaaa"})
    assert resp.status_code == 500
    assert resp.get_json()["code"] == "CONFIGURATION_ERROR"
    assert outbox["verification"] == []
    with app.app_context():
        assert User.query.count() == 0


def test_register_rejects_duplicates_and_weak_passwords(client, make_user, outbox):
    make_user(email="taken@example.com")

    resp = post(client, "/auth/register", json={"email": "Taken@Example.com", "password": "Aa1!aaaa"})
    assert resp.status_code == 409

    resp = post(client, "/auth/register", json={"email": "new@example.com", "password": "short"})
    assert resp.status_code == 422
    fields = {e["field"] for e in resp.get_json()["errors"]}
    assert fields == {"password"}


def test_unverified_login_is_refused_without_tokens(app, client, make_user):
    user_id = make_user(verified=False)

    resp = login(client)

    assert resp.status_code == 403
    body = resp.get_json()
    assert body["needsVerification"] is True
    assert body["code"] == "EMAIL_NOT_VERIFIED"
    assert "token" not in body
    assert not [h for h in resp.headers.getlist("Set-Cookie") if h.startswith(("token=", "refreshToken="))]
    with app.app_context():
        assert Session.query.filter_by(user_id=user_id).count() == 0
    assert _audit_actions(app, user_id) == ["LOGIN_FAILED"]


def test_unknown_user_and_wrong_password_look_the_same(app, client, make_user):
    user_id = make_user()

    unknown = login(client, email="nobody@example.com", password="Whatever1!")
    wrong = login(client, password="Wrong-pass1!")

    assert unknown.status_code == wrong.status_code == 401
    assert unknown.data == wrong.data
    assert _audit_actions(app, user_id) == ["LOGIN_FAILED"]


def test_login_validation_errors(client):
    resp = post(client, "/auth/login", json={"email": "", "password": "x", "rememberMe": "yes"})
    assert resp.status_code == 422
    fields = {e["field"] for e in resp.get_json()["errors"]}
    assert fields == {"email", "rememberMe"}


def test_remember_me_controls_cookie_lifetime(client, make_user):
    make_user()

    short = login(client, remember=False)
    long = login(client, remember=True)

    def max_age(resp):
        cookie = next(h for h in resp.headers.getlist("Set-Cookie") if h.startswith("token="))
        assert "HttpOnly" in cookie
        assert "SameSite=Strict" in cookie
        return int(cookie.split("Max-Age=")[1].split(";")[0])

    assert max_age(short) == 24 * 60 * 60
    assert max_age(long) == 30 * 24 * 60 * 60


def test_account_lock_survives_correct_password(client, make_user):
    make_user()
    for _ in range(5):
        assert login(client, password="Wrong-pass1!", ip="10.0.0.1").status_code == 401

    # another address so only the account lock is in play
    resp = login(client, ip="10.0.0.2")

    assert resp.status_code == 423
    body = resp.get_json()
    assert body["code"] == "ACCOUNT_LOCKED"
    assert body["remainingMinutes"] == 15


def test_ip_lockout_blocks_then_expires(client, clock):
    for _ in range(5):
        assert login(client, email="ghost@example.com", password="Nope1!nope", ip="10.0.0.9").status_code == 401

    resp = login(client, email="ghost@example.com", password="Nope1!nope", ip="10.0.0.9")
    assert resp.status_code == 429
    body = resp.get_json()
    assert body["code"] == "TOO_MANY_ATTEMPTS"
    assert body["attemptCount"] == 5
    assert body["retryAfter"] == 300

    clock.advance(301)
    resp = login(client, email="ghost@example.com", password="Nope1!nope", ip="10.0.0.9")
    assert resp.status_code == 401

    # the next failure escalates to the following step of the schedule
    resp = login(client, email="ghost@example.com", password="Nope1!nope", ip="10.0.0.9")
    assert resp.status_code == 429
    assert resp.get_json()["retryAfter"] == 900


def test_successful_login_resets_failures(app, client, make_user):
    user_id = make_user()
    for _ in range(3):
        login(client, password="Wrong-pass1!")

    assert login(client).status_code == 200

    with app.app_context():
        user = db.session.get(User, user_id)
        assert user.failed_login_attempts == 0
        assert user.locked_until is None
    assert app.extensions["security"].lockout.get_record("127.0.0.1", "user@example.com") is None


def test_logout_revokes_the_old_access_token(client, make_user):
    make_user()
    token = login(client).get_json()["token"]

    auth = {"Authorization": f"Bearer {token}"}
    assert client.get("/auth/validate", headers=auth).status_code == 200

    resp = post(client, "/auth/logout")
    assert resp.status_code == 200
    assert client.get_cookie("token") is None

    resp = client.get("/auth/validate", headers=auth)
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "SESSION_REVOKED"


def test_refresh_issues_new_access_token_until_logout(app, client, make_user):
    make_user()
    login(client)
    refresh_token = client.get_cookie("refreshToken").value

    resp = client.post("/auth/refresh-token")
    assert resp.status_code == 200
    new_token = resp.get_json()["token"]
    assert client.get("/auth/validate", headers={"Authorization": f"Bearer {new_token}"}).status_code == 200

    post(client, "/auth/logout")

    resp = client.post("/auth/refresh-token", json={"refreshToken": refresh_token})
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "REFRESH_TOKEN_REVOKED"


def test_refresh_rejects_access_tokens(app, client, make_user):
    make_user()
    token = login(client).get_json()["token"]

    # a client without the refresh cookie
    resp = app.test_client().post("/auth/refresh-token", json={"refreshToken": token})
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "REFRESH_TOKEN_INVALID"


def test_expired_access_token_is_reported_as_expired(app, client, make_user):
    user_id = make_user()
    expired = TokenService(
        app.config["JWT_SECRET"],
        app.config["JWT_REFRESH_SECRET"],
        issuer=app.config["JWT_ISSUER"],
        access_ttl=timedelta(seconds=-5),
        refresh_ttl=timedelta(days=1),
    ).issue_access({"id": user_id, "email": "user@example.com", "role": "CUSTOMER"})

    resp = client.get("/auth/validate", headers={"Authorization": f"Bearer {expired}"})
    assert resp.status_code == 401
    body = resp.get_json()
    assert body["code"] == "TOKEN_EXPIRED"
    assert body["expired"] is True

    resp = client.get("/auth/validate", headers={"Authorization": "Bearer garbage"})
    assert resp.get_json()["code"] == "TOKEN_INVALID"

    resp = client.get("/auth/validate")
    assert resp.get_json()["code"] == "TOKEN_MISSING"


def test_concurrent_sessions_are_capped(app, client, make_user):
    user_id = make_user()
    for _ in range(7):
        assert login(client).status_code == 200

    with app.app_context():
        assert Session.query.filter_by(user_id=user_id).count() == app.config["MAX_CONCURRENT_SESSIONS"]


def test_forgot_password_does_not_reveal_accounts(client, make_user, outbox):
    make_user()

    existing = post(client, "/auth/forgot-password", json={"email": "user@example.com"})
    unknown = post(client, "/auth/forgot-password", json={"email": "nobody@example.com"})

    assert existing.status_code == unknown.status_code == 200
    assert existing.data == unknown.data
    assert [email for email, _ in outbox["reset"]] == ["user@example.com"]


def test_reset_password_flow(app, client, make_user, outbox):
    user_id = make_user()
    login(client)
    post(client, "/auth/forgot-password", json={"email": "user@example.com"})
    _, token = outbox["reset"][0]

    other = app.test_client()
    resp = post(other, "/auth/reset-password", json={"token": token, "password": "Brand-new1!"})
    assert resp.status_code == 200

    with app.app_context():
        assert Session.query.filter_by(user_id=user_id).count() == 0
        user = db.session.get(User, user_id)
        assert user.reset_token_hash is None

    assert login(other, password=DEFAULT_PASSWORD).status_code == 401
    assert login(other, password="Brand-new1!").status_code == 200

    resp = post(other, "/auth/reset-password", json={"token": token, "password": "Another-1!"})
    assert resp.status_code == 404
    assert "PASSWORD_RESET_SUCCESS" in _audit_actions(app, user_id)


def test_expired_reset_token_is_refused(app, client, make_user, outbox):
    user_id = make_user()
    post(client, "/auth/forgot-password", json={"email": "user@example.com"})
    _, token = outbox["reset"][0]

    with app.app_context():
        user = db.session.get(User, user_id)
        user.reset_token_expires = user.reset_token_expires - timedelta(hours=2)
        db.session.commit()

    resp = post(client, "/auth/reset-password", json={"token": token, "password": "Brand-new1!"})
    assert resp.status_code == 404
    assert resp.get_json()["code"] == "RESET_TOKEN_INVALID"


def test_resend_verification_is_generic(client, make_user, outbox):
    make_user(email="pending@example.com", verified=False)
    make_user(email="done@example.com")

    responses = [
        post(client, "/auth/resend-verification", json={"email": email})
        for email in ("pending@example.com", "done@example.com", "ghost@example.com")
    ]

    assert len({r.data for r in responses}) == 1
    assert [email for email, _ in outbox["verification"]] == ["pending@example.com"]


def test_state_changing_requests_need_a_fresh_csrf_token(client, make_user):
    make_user()
    body = {"email": "user@example.com", "password": DEFAULT_PASSWORD}

    resp = client.post("/auth/login", json=body)
    assert resp.status_code == 403
    assert resp.get_json()["code"] == "CSRF_TOKEN_MISSING"

    headers = csrf_headers(client)
    assert client.post("/auth/login", json=body, headers=headers).status_code == 200

    resp = client.post("/auth/login", json=body, headers=headers)
    assert resp.status_code == 403
    assert resp.get_json()["code"] == "CSRF_TOKEN_INVALID"


def test_csrf_token_can_travel_in_the_body(client, make_user):
    make_user()
    token = client.get("/auth/csrf-token").get_json()["csrfToken"]

    resp = client.post("/auth/login", json={
        "email": "user@example.com",
        "password": DEFAULT_PASSWORD,
        "csrfToken": token,
    })
    assert resp.status_code == 200


def test_login_audit_carries_stage_and_suspicion(app, client, make_user):
    user_id = make_user()
    login(client, password="Wrong-pass1!")

    with app.app_context():
        row = AuditLog.query.filter_by(user_id=user_id, action="LOGIN_FAILED").one()
        meta = json.loads(row.metadata_json)
    assert meta["stage"] == "CHECKED_CREDENTIALS"
    assert meta["suspicious"] is False
    assert row.error_message == "Wrong password"
