import click
from flask import Flask, g, request
from flask_migrate import Migrate

from config import get_config
from models import db
from models.user import Role, User
from routes import auth_bp, health_bp, users_bp
from security.components import init_security
from security.csrf import require_csrf
from security.rate_limit import enforce_general_rate_limit
from security.session import purge_expired_refresh_tokens, purge_expired_sessions
from utils.auth_context import load_current_user
from utils.errors import register_error_handlers
from utils.logging_config import bind_request_context, get_logger, setup_logging
from utils.seed import seed_roles

logger = get_logger(__name__)


def _check_production_settings(app):
    """Refuse to boot a production profile with missing secrets or relaxed flags."""
    if app.config.get("ENVIRONMENT") != "production":
        return

    missing = [k for k in ("JWT_SECRET", "JWT_REFRESH_SECRET") if not app.config.get(k)]
    if missing:
        raise RuntimeError(f"Missing required production settings: {', '.join(missing)}")
    if app.config["JWT_SECRET"] == app.config["JWT_REFRESH_SECRET"]:
        raise RuntimeError("JWT_SECRET and JWT_REFRESH_SECRET must differ")

    relaxed = [
        name for name in ("RATE_LIMIT_ENABLED", "CSRF_ENABLED", "SESSION_COOKIE_SECURE")
        if not app.config.get(name)
    ]
    if relaxed or app.config.get("DEBUG"):
        raise RuntimeError(
            "Production profile cannot run with relaxed settings: "
            + ", ".join(relaxed or ["DEBUG"])
        )


def create_app(config_object=None, **security_overrides):
    app = Flask(__name__)
    app.config.from_object(config_object or get_config())

    setup_logging(app.config.get("LOG_LEVEL", "INFO"), app.config.get("LOG_JSON", True))
    _check_production_settings(app)

    register_error_handlers(app)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(users_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    init_security(app, **security_overrides)

    if app.config.get("AUTO_CREATE_TABLES"):
        with app.app_context():
            db.create_all()
            seed_roles()

    @app.before_request
    def _request_context():
        g.request_id = bind_request_context(
            request.headers.get("X-Request-ID"),
            method=request.method,
            path=request.path,
        )

    # order matters: throttle first, then identify the caller, then CSRF
    app.before_request(enforce_general_rate_limit)
    app.before_request(load_current_user)
    app.before_request(require_csrf)

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        if app.config.get("SESSION_COOKIE_SECURE"):
            resp.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        rid = getattr(g, "request_id", None)
        if rid:
            resp.headers["X-Request-ID"] = rid
        return resp

    register_cli(app)

    logger.info("app_started", profile=app.config.get("PROFILE_NAME"))
    return app


def register_cli(app):
    @app.cli.command("seed-roles")
    def seed_roles_command():
        """Create the default roles if they are missing."""
        seed_roles()
        click.echo("Roles seeded")

    @app.cli.command("make-admin")
    @click.argument("email")
    def make_admin(email):
        """Promote a user to ADMIN by email (bootstrap)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            raise click.ClickException("User not found")

        admin_role = Role.query.filter_by(name="ADMIN").first()
        if not admin_role:
            seed_roles()
            admin_role = Role.query.filter_by(name="ADMIN").first()

        user.role = admin_role
        db.session.commit()
        click.echo(f"{user.email} promoted to ADMIN")

    @app.cli.command("purge-expired")
    def purge_expired():
        """Delete expired sessions and refresh tokens."""
        sessions = purge_expired_sessions()
        refresh_rows = purge_expired_refresh_tokens()
        click.echo(f"Removed {sessions} session(s) and {refresh_rows} refresh token(s)")


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
