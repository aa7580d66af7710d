from datetime import datetime

from escrowmarket.extensions import db
from escrowmarket.utils.money import money_minor_to_major


class Offer(db.Model):
    __tablename__ = "offers"

    id = db.Column(db.Integer, primary_key=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)

    amount_minor = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="usd")
    message = db.Column(db.Text, nullable=True)
    requirements = db.Column(db.Text, nullable=True)
    expected_delivery = db.Column(db.DateTime, nullable=True)

    payment_ref = db.Column(db.String(128), nullable=True, index=True)
    client_secret = db.Column(db.String(255), nullable=True)

    # pending_payment | paid | accepted | rejected | cancelled
    status = db.Column(db.String(24), nullable=False, default="pending_payment", index=True)
    rejection_reason = db.Column(db.String(240), nullable=True)
    last_payment_error = db.Column(db.String(240), nullable=True)

    order_id = db.Column(db.Integer, nullable=True, index=True)

    expires_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    accepted_at = db.Column(db.DateTime, nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self, *, include_secret: bool = False):
        data = {
            "id": int(self.id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "listing_id": int(self.listing_id),
            "amount": money_minor_to_major(self.amount_minor),
            "amount_minor": int(self.amount_minor or 0),
            "currency": self.currency or "usd",
            "message": self.message or "",
            "requirements": self.requirements or "",
            "expected_delivery": self.expected_delivery.isoformat() if self.expected_delivery else None,
            "payment_ref": self.payment_ref or "",
            "status": self.status or "",
            "rejection_reason": self.rejection_reason or "",
            "last_payment_error": self.last_payment_error or "",
            "order_id": int(self.order_id) if self.order_id else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "accepted_at": self.accepted_at.isoformat() if self.accepted_at else None,
            "rejected_at": self.rejected_at.isoformat() if self.rejected_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_secret:
            data["client_secret"] = self.client_secret or ""
        return data
