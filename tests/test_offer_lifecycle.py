from __future__ import annotations

import unittest
from datetime import datetime, timedelta
from unittest import mock

from escrowmarket.errors import AuthorizationError, PaymentGatewayError, StateConflictError, ValidationError
from escrowmarket.extensions import db
from escrowmarket.models import AuditEvent, Listing, Offer, Order
from escrowmarket.services import offer_service
from escrowmarket.services.offer_service import CASCADE_REJECTION_REASON

from market_case import MarketTestCase


class OfferLifecycleTestCase(MarketTestCase):
    def setUp(self):
        super().setUp()
        self.seller = self.make_user("Seller")
        self.buyer = self.make_user("Buyer")
        self.rival = self.make_user("Rival")
        self.listing = self.make_listing(self.seller, price_minor=12000)

    def test_make_offer_authorizes_and_waits_for_payment(self):
        offer = offer_service.make_offer(self.buyer, self.listing.id, 10000, "Can you start Monday?", requirements="Blue palette")
        self.assertEqual(offer.status, "pending_payment")
        self.assertEqual(offer.amount_minor, 10000)
        self.assertTrue(offer.payment_ref.startswith("mock_pi_"))
        self.assertTrue(offer.client_secret)
        self.assertEqual(self.gateway.intents[offer.payment_ref]["status"], "requires_capture")
        self.assertLessEqual(offer.expires_at, datetime.utcnow() + timedelta(minutes=30))
        self.assertEqual(self.reload(Listing, self.listing.id).status, "active")

    def test_confirm_payment_opens_paid_order_and_reserves_listing(self):
        offer = offer_service.make_offer(self.buyer, self.listing.id, 10000)
        result = offer_service.confirm_offer_payment(offer.id, offer.payment_ref, user=self.buyer)

        self.assertFalse(result["already_confirmed"])
        offer = result["offer"]
        order = result["order"]
        self.assertEqual(offer.status, "paid")
        self.assertEqual(offer.order_id, order.id)
        self.assertIsNotNone(offer.paid_at)
        self.assertGreater(offer.expires_at, datetime.utcnow() + timedelta(days=6))
        self.assertEqual(order.status, "paid")
        self.assertEqual(order.amount_minor, 10000)
        self.assertEqual(order.offer_id, offer.id)
        self.assertIsNone(order.confirmed_at)
        self.assertEqual(result["chat_channel_ref"], f"chat_order_{order.id}_{self.buyer.id}_{self.seller.id}")

        listing = self.reload(Listing, self.listing.id)
        self.assertEqual(listing.status, "reserved")
        self.assertEqual(listing.holder_order_id, order.id)
        self.assertIsNotNone(listing.reserved_until)

    def test_confirm_payment_is_idempotent(self):
        offer = offer_service.make_offer(self.buyer, self.listing.id, 10000)
        first = offer_service.confirm_offer_payment(offer.id, offer.payment_ref, user=self.buyer)
        second = offer_service.confirm_offer_payment(offer.id, offer.payment_ref, user=self.buyer)

        self.assertTrue(second["already_confirmed"])
        self.assertEqual(second["order"].id, first["order"].id)
        self.assertEqual(second["chat_channel_ref"], first["chat_channel_ref"])
        self.assertEqual(Order.query.filter_by(offer_id=offer.id).count(), 1)

    def test_confirm_payment_requiring_action_leaves_offer_pending(self):
        offer = offer_service.make_offer(self.buyer, self.listing.id, 10000)
        self.gateway.set_status(offer.payment_ref, "requires_action")

        with self.assertRaises(PaymentGatewayError) as ctx:
            offer_service.confirm_offer_payment(offer.id, offer.payment_ref, user=self.buyer)
        self.assertTrue(ctx.exception.requires_action)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.details["payment_status"], "requires_action")
        self.assertEqual(self.reload(Offer, offer.id).status, "pending_payment")
        self.assertEqual(Order.query.count(), 0)

    def test_confirm_payment_checks_caller_and_reference(self):
        offer = offer_service.make_offer(self.buyer, self.listing.id, 10000)
        with self.assertRaises(ValidationError):
            offer_service.confirm_offer_payment(offer.id, "mock_pi_wrong", user=self.buyer)
        with self.assertRaises(AuthorizationError):
            offer_service.confirm_offer_payment(offer.id, offer.payment_ref, user=self.seller)

    def test_confirm_payment_on_held_listing_conflicts_without_writing(self):
        mine = offer_service.make_offer(self.buyer, self.listing.id, 10000)
        theirs = offer_service.make_offer(self.rival, self.listing.id, 11000)
        offer_service.confirm_offer_payment(mine.id, mine.payment_ref)

        with self.assertRaises(StateConflictError) as ctx:
            offer_service.confirm_offer_payment(theirs.id, theirs.payment_ref, user=self.rival)
        self.assertEqual(ctx.exception.details["listing_status"], "reserved")
        self.assertEqual(self.reload(Offer, theirs.id).status, "pending_payment")
        self.assertEqual(Order.query.count(), 1)

    def test_make_offer_validation(self):
        with self.assertRaises(ValidationError) as ctx:
            offer_service.make_offer(self.buyer, self.listing.id, 49)
        self.assertEqual(ctx.exception.details["min_amount_minor"], 50)

        with self.assertRaises(ValidationError):
            offer_service.make_offer(self.seller, self.listing.id, 10000)

        first = offer_service.make_offer(self.buyer, self.listing.id, 10000)
        with self.assertRaises(StateConflictError) as ctx:
            offer_service.make_offer(self.buyer, self.listing.id, 9000)
        self.assertEqual(ctx.exception.details["existing_offer_id"], first.id)
        self.assertEqual(len(self.gateway.intents), 1)

    def test_make_offer_on_reserved_listing_conflicts(self):
        self.paid_offer(self.buyer, self.listing)
        with self.assertRaises(StateConflictError) as ctx:
            offer_service.make_offer(self.rival, self.listing.id, 15000)
        self.assertEqual(ctx.exception.details["listing_status"], "reserved")

    def test_failed_insert_voids_the_authorization(self):
        with mock.patch.object(offer_service, "_open_offer_for", side_effect=[None, RuntimeError("db unavailable")]):
            with self.assertRaises(RuntimeError):
                offer_service.make_offer(self.buyer, self.listing.id, 10000)
        self.assertEqual(Offer.query.count(), 0)
        statuses = [intent["status"] for intent in self.gateway.intents.values()]
        self.assertEqual(statuses, ["canceled"])

    def test_accept_sells_listing_and_rejects_other_offers(self):
        mine = offer_service.make_offer(self.buyer, self.listing.id, 10000)
        theirs = offer_service.make_offer(self.rival, self.listing.id, 11000)
        offer_service.confirm_offer_payment(mine.id, mine.payment_ref, user=self.buyer)

        result = offer_service.accept_offer(mine.id, self.seller)
        self.assertEqual(result["offer"].status, "accepted")
        self.assertIsNotNone(result["offer"].accepted_at)
        self.assertEqual(result["order"].status, "paid")
        self.assertIsNotNone(result["order"].confirmed_at)
        self.assertEqual(result["auto_rejected_offer_ids"], [theirs.id])

        listing = self.reload(Listing, self.listing.id)
        self.assertEqual(listing.status, "sold")
        self.assertEqual(listing.holder_order_id, result["order"].id)

        rejected = self.reload(Offer, theirs.id)
        self.assertEqual(rejected.status, "rejected")
        self.assertEqual(rejected.rejection_reason, CASCADE_REJECTION_REASON)
        self.assertEqual(self.gateway.intents[rejected.payment_ref]["status"], "canceled")
        self.assertEqual(AuditEvent.query.filter_by(event_type="offer_accepted").count(), 1)

    def test_accept_requires_the_seller_and_a_paid_offer(self):
        offer = offer_service.make_offer(self.buyer, self.listing.id, 10000)
        with self.assertRaises(StateConflictError):
            offer_service.accept_offer(offer.id, self.seller)

        offer_service.confirm_offer_payment(offer.id, offer.payment_ref)
        with self.assertRaises(AuthorizationError) as ctx:
            offer_service.accept_offer(offer.id, self.buyer)
        self.assertEqual(ctx.exception.current_status, "paid")
        self.assertEqual(ctx.exception.allowed_next_statuses, ["cancelled"])

        offer_service.accept_offer(offer.id, self.seller)
        with self.assertRaises(StateConflictError) as ctx:
            offer_service.accept_offer(offer.id, self.seller)
        self.assertEqual(ctx.exception.message, "Offer is already accepted")

    def test_repeatable_listing_accepts_without_cascade(self):
        listing = self.make_listing(self.seller, availability_mode="repeatable")
        mine = self.paid_offer(self.buyer, listing)["offer"]
        theirs = self.paid_offer(self.rival, listing)["offer"]

        result = offer_service.accept_offer(mine.id, self.seller)
        self.assertEqual(result["auto_rejected_offer_ids"], [])
        self.assertEqual(self.reload(Offer, theirs.id).status, "paid")
        self.assertEqual(self.reload(Listing, listing.id).status, "active")

    def _lapse_reservation(self):
        listing = self.reload(Listing, self.listing.id)
        listing.reserved_until = datetime.utcnow() - timedelta(hours=1)
        db.session.commit()

    def test_accept_refunds_paid_sibling_after_reservation_lapsed(self):
        first = self.paid_offer(self.buyer, self.listing)
        first_offer_id = int(first["offer"].id)
        first_order_id = int(first["order"].id)
        self._lapse_reservation()

        second = self.paid_offer(self.rival, self.listing, 11000)
        self.assertEqual(self.reload(Listing, self.listing.id).holder_order_id, second["order"].id)

        result = offer_service.accept_offer(second["offer"].id, self.seller)
        self.assertEqual(result["auto_rejected_offer_ids"], [first_offer_id])

        first_order = self.reload(Order, first_order_id)
        self.assertEqual(first_order.status, "cancelled")
        self.assertTrue(first_order.refunded)
        self.assertEqual(self.gateway.intents[first_order.payment_ref]["status"], "canceled")

        first_offer = self.reload(Offer, first_offer_id)
        self.assertEqual(first_offer.status, "rejected")
        self.assertEqual(first_offer.rejection_reason, CASCADE_REJECTION_REASON)

        listing = self.reload(Listing, self.listing.id)
        self.assertEqual(listing.status, "sold")
        self.assertEqual(listing.holder_order_id, second["order"].id)

    def test_accept_leaves_sibling_whose_order_already_paid_out(self):
        first = self.paid_offer(self.buyer, self.listing)
        first_offer_id = int(first["offer"].id)
        order = self.reload(Order, first["order"].id)
        order.status = "completed"
        order.payment_captured = True
        order.payment_released = True
        db.session.commit()
        self._lapse_reservation()

        second = self.paid_offer(self.rival, self.listing, 11000)
        result = offer_service.accept_offer(second["offer"].id, self.seller)

        self.assertEqual(result["auto_rejected_offer_ids"], [])
        self.assertEqual(self.reload(Offer, first_offer_id).status, "paid")
        order = self.reload(Order, first["order"].id)
        self.assertEqual(order.status, "completed")
        self.assertFalse(order.refunded)

    def test_reject_refunds_and_releases_listing(self):
        paid = self.paid_offer(self.buyer, self.listing)
        offer = offer_service.reject_offer(paid["offer"].id, self.seller, reason="Fully booked")

        self.assertEqual(offer.status, "rejected")
        self.assertEqual(offer.rejection_reason, "Fully booked")
        order = self.reload(Order, paid["order"].id)
        self.assertEqual(order.status, "cancelled")
        self.assertEqual(order.cancelled_by, "seller")
        self.assertTrue(order.refunded)
        self.assertEqual(self.gateway.intents[offer.payment_ref]["status"], "canceled")
        self.assertEqual(self.reload(Listing, self.listing.id).status, "active")
        self.assertEqual(AuditEvent.query.filter_by(event_type="order_refunded").count(), 1)

    def test_buyer_withdraws_pending_and_paid_offers(self):
        pending = offer_service.make_offer(self.buyer, self.listing.id, 10000)
        cancelled = offer_service.cancel_offer(pending.id, self.buyer)
        self.assertEqual(cancelled.status, "cancelled")
        self.assertEqual(self.gateway.intents[pending.payment_ref]["status"], "canceled")

        paid = self.paid_offer(self.buyer, self.listing)
        cancelled = offer_service.cancel_offer(paid["offer"].id, self.buyer)
        self.assertEqual(cancelled.status, "cancelled")
        self.assertEqual(self.reload(Order, paid["order"].id).status, "cancelled")
        self.assertEqual(self.reload(Listing, self.listing.id).status, "active")

        with self.assertRaises(AuthorizationError):
            offer_service.cancel_offer(self.paid_offer(self.rival, self.listing)["offer"].id, self.seller)

    def test_expiry_cancels_unpaid_and_rejects_unanswered_offers(self):
        unpaid = offer_service.make_offer(self.rival, self.listing.id, 10000)
        paid = self.paid_offer(self.buyer, self.listing)

        result = offer_service.expire_stale_offers(now=datetime.utcnow() + timedelta(days=8))
        self.assertEqual(result["expired"], 2)
        self.assertEqual(result["failed"], 0)

        self.assertEqual(self.reload(Offer, unpaid.id).status, "cancelled")
        expired = self.reload(Offer, paid["offer"].id)
        self.assertEqual(expired.status, "rejected")
        self.assertEqual(expired.rejection_reason, "Offer expired")
        order = self.reload(Order, paid["order"].id)
        self.assertEqual(order.status, "cancelled")
        self.assertEqual(order.cancelled_by, "system")
        self.assertEqual(self.reload(Listing, self.listing.id).status, "active")

    def test_expiry_skips_fresh_offers(self):
        offer_service.make_offer(self.buyer, self.listing.id, 10000)
        result = offer_service.expire_stale_offers()
        self.assertEqual(result["scanned"], 0)
        self.assertEqual(result["expired"], 0)


if __name__ == "__main__":
    unittest.main()
