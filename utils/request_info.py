from flask import request


def client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # First IP in X-Forwarded-For is the real client IP
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


def user_agent() -> str:
    return request.headers.get("User-Agent", "") or ""
