from datetime import datetime
import json

from escrowmarket.extensions import db


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # order_delivered | order_completed | offer_accepted | offer_rejected | ...
    event = db.Column(db.String(48), nullable=False)
    subject_type = db.Column(db.String(16), nullable=True)
    subject_id = db.Column(db.Integer, nullable=True)
    amount_minor = db.Column(db.Integer, nullable=True)
    message = db.Column(db.Text, nullable=False, default="")

    # queued | sent | failed
    status = db.Column(db.String(16), nullable=False, default="queued", index=True)
    provider = db.Column(db.String(32), nullable=True)
    provider_ref = db.Column(db.String(120), nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(240), nullable=True)
    meta = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    sent_at = db.Column(db.DateTime, nullable=True)

    def meta_dict(self) -> dict:
        try:
            data = json.loads(self.meta or "{}")
        except Exception:
            return {}
        return data if isinstance(data, dict) else {}

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "event": self.event,
            "subject_type": self.subject_type or "",
            "subject_id": int(self.subject_id) if self.subject_id is not None else None,
            "amount_minor": int(self.amount_minor) if self.amount_minor is not None else None,
            "message": self.message or "",
            "status": self.status or "queued",
            "provider": self.provider or "",
            "attempts": int(self.attempts or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "meta": self.meta_dict(),
        }
