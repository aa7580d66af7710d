from datetime import datetime

from escrowmarket.extensions import db
from escrowmarket.utils.money import money_minor_to_major


class Listing(db.Model):
    __tablename__ = "listings"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(160), nullable=False)
    description = db.Column(db.Text, nullable=True)

    price_minor = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="usd")

    # single | repeatable
    availability_mode = db.Column(db.String(16), nullable=False, default="single")
    # draft | active | reserved | sold | inactive
    status = db.Column(db.String(16), nullable=False, default="active", index=True)

    reserved_until = db.Column(db.DateTime, nullable=True, index=True)
    # Order holding the listing through a reservation or a sale
    holder_order_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_single_unit(self) -> bool:
        return (self.availability_mode or "single") != "repeatable"

    def to_dict(self, *, effective_status: str | None = None):
        status = effective_status or self.status or "active"
        reserved = status == "reserved"
        return {
            "id": int(self.id),
            "seller_id": int(self.seller_id),
            "title": self.title or "",
            "description": self.description or "",
            "price": money_minor_to_major(self.price_minor),
            "price_minor": int(self.price_minor or 0),
            "currency": self.currency or "usd",
            "availability_mode": self.availability_mode or "single",
            "status": status,
            "reserved_until": self.reserved_until.isoformat() if (reserved and self.reserved_until) else None,
            "holder_order_id": int(self.holder_order_id) if (status in ("reserved", "sold") and self.holder_order_id) else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
