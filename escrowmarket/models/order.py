from datetime import datetime
import json

from escrowmarket.extensions import db
from escrowmarket.utils.money import money_minor_to_major


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)
    offer_id = db.Column(db.Integer, db.ForeignKey("offers.id"), nullable=True, index=True)

    # accepted_offer | direct_purchase
    order_type = db.Column(db.String(24), nullable=False, default="accepted_offer")
    status = db.Column(db.String(24), nullable=False, default="pending_payment", index=True)

    amount_minor = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="usd")
    platform_fee_minor = db.Column(db.Integer, nullable=True)
    seller_payout_minor = db.Column(db.Integer, nullable=True)
    fee_bps = db.Column(db.Integer, nullable=True)

    revisions = db.Column(db.Integer, nullable=False, default=0)
    max_revisions = db.Column(db.Integer, nullable=False, default=3)

    payment_ref = db.Column(db.String(128), nullable=True, index=True)
    last_payment_error = db.Column(db.String(240), nullable=True)
    payment_captured = db.Column(db.Boolean, nullable=False, default=False)
    captured_at = db.Column(db.DateTime, nullable=True)
    payment_released = db.Column(db.Boolean, nullable=False, default=False)
    released_at = db.Column(db.DateTime, nullable=True)
    refunded = db.Column(db.Boolean, nullable=False, default=False)
    refund_ref = db.Column(db.String(128), nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)

    requirements = db.Column(db.Text, nullable=True)
    delivery_message = db.Column(db.Text, nullable=True)
    delivery_files_json = db.Column(db.Text, nullable=True)

    chat_channel_ref = db.Column(db.String(128), nullable=True)

    cancelled_by = db.Column(db.String(16), nullable=True)
    cancellation_reason = db.Column(db.String(240), nullable=True)
    dispute_reason = db.Column(db.String(240), nullable=True)

    confirmed_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    disputed_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def revisions_left(self) -> int:
        return max(0, int(self.max_revisions or 0) - int(self.revisions or 0))

    def delivery_files(self) -> list:
        raw = (self.delivery_files_json or "").strip()
        if not raw:
            return []
        try:
            data = json.loads(raw)
            return data if isinstance(data, list) else []
        except Exception:
            return []

    def set_delivery_files(self, files: list) -> None:
        self.delivery_files_json = json.dumps(list(files or []), separators=(",", ":"))[:8000]

    def to_dict(self):
        def _money(value):
            return money_minor_to_major(value) if value is not None else None

        return {
            "id": int(self.id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "listing_id": int(self.listing_id),
            "offer_id": int(self.offer_id) if self.offer_id else None,
            "order_type": self.order_type or "accepted_offer",
            "status": self.status or "",
            "amount": money_minor_to_major(self.amount_minor),
            "amount_minor": int(self.amount_minor or 0),
            "currency": self.currency or "usd",
            "platform_fee": _money(self.platform_fee_minor),
            "platform_fee_minor": int(self.platform_fee_minor) if self.platform_fee_minor is not None else None,
            "seller_payout": _money(self.seller_payout_minor),
            "seller_payout_minor": int(self.seller_payout_minor) if self.seller_payout_minor is not None else None,
            "revisions": int(self.revisions or 0),
            "max_revisions": int(self.max_revisions or 0),
            "revisions_left": self.revisions_left,
            "payment_ref": self.payment_ref or "",
            "payment_captured": bool(self.payment_captured),
            "payment_released": bool(self.payment_released),
            "refunded": bool(self.refunded),
            "confirmed": self.confirmed_at is not None,
            "requirements": self.requirements or "",
            "delivery_message": self.delivery_message or "",
            "delivery_files": self.delivery_files(),
            "chat_channel_ref": self.chat_channel_ref or "",
            "cancelled_by": self.cancelled_by or "",
            "cancellation_reason": self.cancellation_reason or "",
            "dispute_reason": self.dispute_reason or "",
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "disputed_at": self.disputed_at.isoformat() if self.disputed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class RevisionNote(db.Model):
    __tablename__ = "order_revision_notes"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    revision_number = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    requested_by = db.Column(db.Integer, nullable=True)
    requested_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "revision_number": int(self.revision_number),
            "notes": self.notes or "",
            "requested_by": int(self.requested_by) if self.requested_by is not None else None,
            "requested_at": self.requested_at.isoformat() if self.requested_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
