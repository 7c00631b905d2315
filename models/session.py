from models.db import db
from utils.clock import utcnow


class Session(db.Model):
    __tablename__ = "sessions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # store only hashed tokens in DB (never the raw JWTs)
    token_hash = db.Column(db.String(64), unique=True, nullable=False, index=True)
    refresh_token_hash = db.Column(db.String(64), nullable=True, index=True)

    persistent = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_seen_at = db.Column(db.DateTime, default=utcnow, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False)

    ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
