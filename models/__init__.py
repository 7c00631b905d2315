from .db import db
from .user import User, Role
from .audit_log import AuditLog
from .session import Session
from .refresh_token import RefreshToken
