from models.db import db
from utils.clock import utcnow

class RateLimitBucket(db.Model):
    __tablename__ = "rate_limit_buckets"
    __table_args__ = (
        db.UniqueConstraint("identifier", "action", name="uq_rate_limit_buckets_identifier_action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    identifier = db.Column(db.String(255), nullable=False, index=True)  # e.g. ip:10.0.0.1
    action = db.Column(db.String(64), nullable=False)

    window_start = db.Column(db.DateTime, nullable=False)
    request_count = db.Column(db.Integer, default=0, nullable=False)
    window_seconds = db.Column(db.Integer, nullable=False)
    max_requests = db.Column(db.Integer, nullable=False)

    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)
