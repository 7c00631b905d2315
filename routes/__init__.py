from routes.health import health_bp
from routes.auth import auth_bp
from routes.users import users_bp

__all__ = ["health_bp", "auth_bp", "users_bp"]
