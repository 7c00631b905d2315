from flask import jsonify
from werkzeug.exceptions import HTTPException

from models import db
from utils.logging_config import get_logger

logger = get_logger(__name__)


class ApiError(Exception):
    """Base error rendered as the standard ``{success: false, message}`` envelope.

    ``extra`` keys are merged into the body so clients can branch on
    machine-readable fields (``code``, ``retryAfter``, ``needsVerification``...).
    """

    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message, *, status_code=None, code=None, headers=None, **extra):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.headers = headers or {}
        self.extra = extra

    def to_dict(self):
        body = {"success": False, "message": self.message, "code": self.code}
        body.update(self.extra)
        return body


class ValidationFailed(ApiError):
    status_code = 422
    code = "VALIDATION_ERROR"

    def __init__(self, errors, message="Invalid input data", **extra):
        super().__init__(message, errors=errors, **extra)


class Conflict(ApiError):
    status_code = 409
    code = "CONFLICT"


class AuthenticationFailed(ApiError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(ApiError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(ApiError):
    status_code = 404
    code = "NOT_FOUND"


class AccountLocked(ApiError):
    status_code = 423
    code = "ACCOUNT_LOCKED"


class RateLimited(ApiError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, message, retry_after: int, **extra):
        retry_after = max(int(retry_after), 1)
        super().__init__(
            message,
            headers={"Retry-After": str(retry_after)},
            retryAfter=retry_after,
            **extra,
        )


class CsrfFailed(ApiError):
    status_code = 403
    code = "CSRF_TOKEN_INVALID"


def field_error(field, message):
    return {"field": field, "message": message}


def error_response(exc: ApiError):
    resp = jsonify(exc.to_dict())
    resp.status_code = exc.status_code
    for name, value in exc.headers.items():
        resp.headers[name] = value
    return resp


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def _handle_api_error(exc):
        if exc.status_code >= 500:
            logger.error("api_error", status=exc.status_code, code=exc.code, message=exc.message)
        return error_response(exc)

    @app.errorhandler(HTTPException)
    def _handle_http_exception(exc):
        messages = {404: "Route not found", 405: "Method not allowed"}
        body = {
            "success": False,
            "message": messages.get(exc.code, exc.description),
            "code": (exc.name or "error").upper().replace(" ", "_"),
        }
        resp = jsonify(body)
        resp.status_code = exc.code or 500
        return resp

    @app.errorhandler(Exception)
    def _handle_unexpected(exc):
        logger.exception("unhandled_error", error=str(exc))
        db.session.rollback()
        resp = jsonify(success=False, message="Internal server error", code="INTERNAL_ERROR")
        resp.status_code = 500
        return resp
