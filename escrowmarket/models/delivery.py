from datetime import datetime
import json

from escrowmarket.extensions import db


class Delivery(db.Model):
    __tablename__ = "deliveries"
    __table_args__ = (
        db.UniqueConstraint("order_id", "revision_number", name="uq_delivery_order_revision"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    revision_number = db.Column(db.Integer, nullable=False)

    message = db.Column(db.Text, nullable=False)
    attachments_json = db.Column(db.Text, nullable=False, default="[]")
    is_final = db.Column(db.Boolean, nullable=False, default=False)

    # pending_review | accepted | revision_requested | completed
    status = db.Column(db.String(24), nullable=False, default="pending_review")

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    reviewed_at = db.Column(db.DateTime, nullable=True)

    def attachments(self) -> list:
        try:
            data = json.loads(self.attachments_json or "[]")
            return data if isinstance(data, list) else []
        except Exception:
            return []

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "seller_id": int(self.seller_id),
            "revision_number": int(self.revision_number),
            "message": self.message or "",
            "attachments": self.attachments(),
            "is_final": bool(self.is_final),
            "status": self.status or "pending_review",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
        }
