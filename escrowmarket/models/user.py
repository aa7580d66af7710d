from datetime import datetime

from escrowmarket.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)

    # user | admin; any user may buy and sell
    role = db.Column(db.String(32), nullable=False, default="user")

    # Gateway-native payout destination (e.g. Stripe Connect account id)
    payout_account_id = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @property
    def is_admin(self) -> bool:
        return (self.role or "").strip().lower() == "admin"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role or "user",
            "has_payout_account": bool((self.payout_account_id or "").strip()),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
