import os

from dotenv import load_dotenv

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

load_dotenv(os.path.join(BASE_DIR, ".env"))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


class Config:
    PROFILE_NAME = "base"
    ENVIRONMENT = "production"

    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")
    APP_NAME = os.getenv("APP_NAME", "BackOffice")

    # SQLite database file stored next to the app as backoffice.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "backoffice.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    AUTO_CREATE_TABLES = False

    # JWT: access and refresh tokens use separate secrets and audiences
    JWT_SECRET = os.getenv("JWT_SECRET")
    JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET")
    JWT_ISSUER = os.getenv("JWT_ISSUER", APP_NAME)
    JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "15"))
    JWT_REFRESH_EXPIRE_DAYS = int(os.getenv("JWT_REFRESH_EXPIRE_DAYS", "7"))

    # Cookies
    ACCESS_COOKIE_NAME = "token"
    REFRESH_COOKIE_NAME = "refreshToken"
    CSRF_COOKIE_NAME = "csrf-token"
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Strict"
    SESSION_COOKIE_SECURE = True
    CSRF_COOKIE_SAMESITE = "None"

    # Session lifetimes (remember me vs ephemeral)
    PERSISTENT_SESSION_SECONDS = 30 * 24 * 60 * 60
    EPHEMERAL_SESSION_SECONDS = 24 * 60 * 60
    REFRESH_TOKEN_STORE_DAYS = 7
    MAX_CONCURRENT_SESSIONS = 5

    # Password hashing work factor
    BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

    # Per-account brute-force protection (persisted)
    MAX_LOGIN_ATTEMPTS = int(os.getenv("MAX_LOGIN_ATTEMPTS", "5"))
    LOCKOUT_MINUTES = int(os.getenv("LOCKOUT_MINUTES", "15"))

    # Per-IP lockout tracker (key-value store)
    IP_LOCKOUT_THRESHOLD = 5
    IP_LOCKOUT_SCHEDULE_SECONDS = [60, 5 * 60, 15 * 60, 60 * 60, 24 * 60 * 60]

    # Rate limits
    RATE_LIMIT_ENABLED = True
    RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "900"))
    RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
    LOGIN_RATE_WINDOW_SECONDS = int(os.getenv("LOGIN_RATE_WINDOW_SECONDS", "900"))
    LOGIN_RATE_MAX_REQUESTS = int(os.getenv("LOGIN_RATE_MAX_REQUESTS", "50"))
    PASSWORD_RESET_RATE_WINDOW_SECONDS = 15 * 60
    PASSWORD_RESET_RATE_MAX_REQUESTS = 3

    # CSRF
    CSRF_ENABLED = True
    CSRF_TOKEN_TTL_SECONDS = 30 * 60
    CSRF_EXEMPT_PATHS = {
        "/health",
        "/auth/refresh-token",
    }

    # Shared key-value store for lockout / rate-limit / CSRF state.
    # Empty means process-local memory.
    KV_STORE_URL = os.getenv("KV_STORE_URL", "")

    # Unverified accounts may not reach these paths even with a valid token
    SENSITIVE_PATHS = {
        "/users/change-password",
        "/users/profile",
    }

    # Password policy
    PASSWORD_MIN_LEN = 8
    PASSWORD_MAX_LEN = 128
    RESET_TOKEN_TTL_MINUTES = 60

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_JSON = _env_bool("LOG_JSON", "true")

    # Frontend (links inside e-mails)
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = _env_bool("SMTP_USE_TLS", "true")

    DEBUG = False
    TESTING = False


class ProductionConfig(Config):
    PROFILE_NAME = "production"
    ENVIRONMENT = "production"


class DevelopmentConfig(Config):
    """Relaxed profile: no rate limiting, no CSRF enforcement, insecure cookies."""

    PROFILE_NAME = "development"
    ENVIRONMENT = "development"
    DEBUG = True

    JWT_SECRET = os.getenv("JWT_SECRET", "dev-access-secret")
    JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET", "dev-refresh-secret")

    SESSION_COOKIE_SECURE = False
    CSRF_COOKIE_SAMESITE = "Lax"
    RATE_LIMIT_ENABLED = False
    CSRF_ENABLED = False
    AUTO_CREATE_TABLES = True
    LOG_JSON = False


class TestingConfig(Config):
    PROFILE_NAME = "testing"
    ENVIRONMENT = "testing"
    TESTING = True

    SQLALCHEMY_DATABASE_URI = "sqlite://"
    AUTO_CREATE_TABLES = True
    KV_STORE_URL = ""

    JWT_SECRET = "test-access-secret"
    JWT_REFRESH_SECRET = "test-refresh-secret"
    JWT_ISSUER = "BackOffice"

    SESSION_COOKIE_SECURE = False
    CSRF_COOKIE_SAMESITE = "Lax"
    BCRYPT_ROUNDS = 4
    RATE_LIMIT_MAX_REQUESTS = 1000
    LOG_JSON = False

    SMTP_HOST = None
    SMTP_FROM_EMAIL = None


PROFILES = {
    "production": ProductionConfig,
    "development": DevelopmentConfig,
    "testing": TestingConfig,
}


def get_config(name=None):
    name = (name or os.getenv("APP_PROFILE") or "production").strip().lower()
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown configuration profile: {name}") from None
