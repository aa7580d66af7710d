from datetime import datetime

from escrowmarket.extensions import db
from escrowmarket.utils.money import money_minor_to_major


class Withdrawal(db.Model):
    __tablename__ = "withdrawals"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    amount_minor = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="usd")

    # gateway | bank_transfer
    payment_method = db.Column(db.String(24), nullable=False, default="gateway")
    destination = db.Column(db.String(128), nullable=True)

    # pending | processing | completed | failed | cancelled
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    transfer_ref = db.Column(db.String(128), nullable=True, unique=True, index=True)
    failure_reason = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "seller_id": int(self.seller_id),
            "amount": money_minor_to_major(self.amount_minor),
            "amount_minor": int(self.amount_minor or 0),
            "currency": self.currency or "usd",
            "payment_method": self.payment_method or "gateway",
            "status": self.status or "pending",
            "transfer_ref": self.transfer_ref or "",
            "failure_reason": self.failure_reason or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }
