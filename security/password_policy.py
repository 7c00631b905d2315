import re
from typing import List, Tuple

from flask import current_app, has_app_context

MIN_LENGTH = 8
MAX_LENGTH = 128

# (pattern that must match, message when it does not)
CHARACTER_RULES = (
    (re.compile(r"[A-Z]"), "Password must include at least 1 uppercase letter"),
    (re.compile(r"[a-z]"), "Password must include at least 1 lowercase letter"),
    (re.compile(r"\d"), "Password must include at least 1 number"),
    (re.compile(r"[^A-Za-z0-9]"), "Password must include at least 1 symbol"),
)


def _length_bounds() -> Tuple[int, int]:
    if not has_app_context():
        return MIN_LENGTH, MAX_LENGTH
    return (
        int(current_app.config.get("PASSWORD_MIN_LEN", MIN_LENGTH)),
        int(current_app.config.get("PASSWORD_MAX_LEN", MAX_LENGTH)),
    )


def validate_password(pw) -> Tuple[bool, List[str]]:
    """Returns (ok, messages); every failed rule contributes one message."""
    if not isinstance(pw, str):
        return False, ["Password must be a string"]

    min_len, max_len = _length_bounds()
    errors: List[str] = []

    if len(pw) < min_len:
        errors.append(f"Password must be at least {min_len} characters")
    elif len(pw) > max_len:
        errors.append(f"Password must be at most {max_len} characters")

    errors.extend(message for pattern, message in CHARACTER_RULES if not pattern.search(pw))
    return not errors, errors
