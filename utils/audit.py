import json

from flask import has_request_context
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.audit_log import AuditLog
from utils.logging_config import get_logger
from utils.request_info import client_ip, user_agent

logger = get_logger(__name__)


def log_event(action: str, user_id=None, success=True, error_message=None, metadata=None):
    """
    Writes one audit row for a user action. A failing audit write is logged
    and rolled back; it never fails the action being audited.
    """
    ip = client_ip() if has_request_context() else None
    agent = user_agent() if has_request_context() else ""

    row = AuditLog(
        user_id=user_id,
        action=action,
        success=bool(success),
        error_message=error_message[:255] if error_message else None,
        ip=ip,
        user_agent=agent[:255] if agent else None,
        metadata_json=json.dumps(metadata) if metadata else None,
    )
    try:
        db.session.add(row)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("audit_write_failed", action=action, user_id=user_id)
        return None
    return row
