from security.password import burn_password_check, hash_password, verify_password
from security.password_policy import validate_password


def test_strong_password_passes():
    assert validate_password("Aa1!aaaa") == (True, [])


def test_each_rule_reports_its_own_message():
    ok, errors = validate_password("aaaa")
    assert not ok
    assert "Password must be at least 8 characters" in errors
    assert "Password must include at least 1 uppercase letter" in errors
    assert "Password must include at least 1 number" in errors
    assert "Password must include at least 1 symbol" in errors
    assert "Password must include at least 1 lowercase letter" not in errors


def test_length_ceiling_and_type():
    ok, errors = validate_password("Aa1!" + "a" * 200)
    assert not ok
    assert errors == ["Password must be at most 128 characters"]

    assert validate_password(None) == (False, ["Password must be a string"])


def test_hash_and_verify(app):
    with app.app_context():
        hashed = hash_password("Aa1!aaaa")
        assert hashed.startswith("$2b$04$")
        assert verify_password("Aa1!aaaa", hashed)
        assert not verify_password("Aa1!aaab", hashed)
        assert not verify_password("Aa1!aaaa", "not-a-hash")
        assert not verify_password("", hashed)
        burn_password_check("anything")


def test_long_passwords_are_accepted_by_bcrypt(app):
    long_password = "Aa1!" + "b" * 120
    with app.app_context():
        hashed = hash_password(long_password)
        assert verify_password(long_password, hashed)
