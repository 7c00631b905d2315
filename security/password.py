import functools

import bcrypt
from flask import current_app, has_app_context


def _rounds() -> int:
    if has_app_context():
        return int(current_app.config.get("BCRYPT_ROUNDS", 12))
    return 12


# bcrypt only reads the first 72 bytes; recent releases refuse longer input
BCRYPT_MAX_BYTES = 72


def _encode(plain_password: str) -> bytes:
    return plain_password.encode("utf-8")[:BCRYPT_MAX_BYTES]


@functools.lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> str:
    # used to burn equal time when the account does not exist
    return bcrypt.hashpw(b"not-a-real-password", bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def hash_password(plain_password: str) -> str:
    if not isinstance(plain_password, str) or len(plain_password) == 0:
        raise ValueError("Password must be a non-empty string")

    # bcrypt expects bytes
    salt = bcrypt.gensalt(rounds=_rounds())
    hashed = bcrypt.hashpw(_encode(plain_password), salt)
    return hashed.decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    if not plain_password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(
            _encode(plain_password),
            password_hash.encode("utf-8")
        )
    except ValueError:
        return False


def burn_password_check(plain_password: str) -> None:
    """Run a compare against a dummy hash so unknown accounts cost the same."""
    verify_password(plain_password or "dummy", _dummy_hash(_rounds()))
