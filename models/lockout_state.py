from models.db import db
from utils.clock import utcnow

class LockoutState(db.Model):
    __tablename__ = "lockout_states"

    id = db.Column(db.Integer, primary_key=True)

    # one row per account, created on the first failed login
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), unique=True, nullable=False, index=True)

    failure_count = db.Column(db.Integer, default=0, nullable=False)
    last_failure_at = db.Column(db.DateTime, nullable=True)
    lockout_until = db.Column(db.DateTime, nullable=True)

    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)
