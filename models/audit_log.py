from models.db import db
from utils.clock import utcnow


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)  # nullable for unauth events
    action = db.Column(db.String(80), nullable=False, index=True)  # e.g. LOGIN_FAILED, LOGOUT
    success = db.Column(db.Boolean, default=True, nullable=False)
    error_message = db.Column(db.String(255), nullable=True)

    ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)

    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
