from __future__ import annotations

import itertools
import unittest

from escrowmarket import create_app
from escrowmarket.extensions import db
from escrowmarket.integrations.payments.factory import get_payments_provider
from escrowmarket.models import Listing, User
from escrowmarket.services import offer_service
from escrowmarket.utils.jwt_utils import create_access_token

_EMAILS = itertools.count(1)


class MarketTestCase(unittest.TestCase):
    """Fresh in-memory app per test with mock payments, chat and notifications."""

    config: dict = {}

    def setUp(self):
        overrides = {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-0123456789",
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "PAYMENTS_PROVIDER": "mock",
            "CHAT_PROVIDER": "mock",
            "NOTIFY_PROVIDER": "mock",
            "PAYMENT_WEBHOOK_QUEUE": False,
            "NOTIFICATIONS_QUEUE": False,
            "PLATFORM_FEE_RATE": 0.15,
        }
        overrides.update(self.config)
        self.app = create_app(overrides)
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.create_all()
        self.client = self.app.test_client()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    @property
    def gateway(self):
        return get_payments_provider()

    def make_user(self, name: str = "user", *, role: str = "user", payout_account_id: str | None = None) -> User:
        user = User(
            name=name,
            email=f"{name.lower()}-{next(_EMAILS)}@escrowmarket.test",
            role=role,
            payout_account_id=payout_account_id,
        )
        db.session.add(user)
        db.session.commit()
        return user

    def make_listing(self, seller: User, *, price_minor: int = 10000, availability_mode: str = "single", status: str = "active") -> Listing:
        listing = Listing(
            seller_id=int(seller.id),
            title="Logo design",
            price_minor=price_minor,
            availability_mode=availability_mode,
            status=status,
        )
        db.session.add(listing)
        db.session.commit()
        return listing

    def auth(self, user_or_id) -> dict:
        uid = user_or_id if isinstance(user_or_id, int) else int(user_or_id.id)
        return {"Authorization": f"Bearer {create_access_token(uid)}"}

    def paid_offer(self, buyer: User, listing: Listing, amount_minor: int = 10000) -> dict:
        offer = offer_service.make_offer(buyer, listing.id, amount_minor, "Can you start Monday?")
        return offer_service.confirm_offer_payment(offer.id, offer.payment_ref, user=buyer)

    def accepted_order(self, buyer: User, seller: User, listing: Listing, amount_minor: int = 10000):
        paid = self.paid_offer(buyer, listing, amount_minor)
        return offer_service.accept_offer(paid["offer"].id, seller)["order"]

    def reload(self, model, entity_id):
        db.session.expire_all()
        return db.session.get(model, int(entity_id))
