from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from models import db
from utils.clock import utcnow
from utils.logging_config import get_logger

logger = get_logger(__name__)

health_bp = Blueprint("health", __name__)


@health_bp.get("/health")
def health():
    try:
        db.session.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("health_db_check_failed")
        database = "unavailable"

    healthy = database == "ok"
    return jsonify(
        success=healthy,
        status="ok" if healthy else "degraded",
        database=database,
        environment=current_app.config.get("ENVIRONMENT"),
        timestamp=utcnow().isoformat(),
    ), 200 if healthy else 503
