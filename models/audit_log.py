import json

from models.db import db
from utils.clock import utcnow

class AuditLog(db.Model):
    __tablename__ = "security_audit_log"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)  # nullable for anonymous events
    actor = db.Column(db.String(64), nullable=False)             # account id or "anonymous"
    action = db.Column(db.String(80), nullable=False, index=True)  # e.g. token-consumed
    outcome = db.Column(db.String(16), nullable=False)           # success / failure / blocked

    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "user_id": self.user_id,
            "actor": self.actor,
            "action": self.action,
            "outcome": self.outcome,
            "ip": self.ip_address,
            "user_agent": self.user_agent,
            "metadata": json.loads(self.metadata_json) if self.metadata_json else None,
        }
