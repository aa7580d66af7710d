from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from escrowmarket.errors import StateConflictError, ValidationError
from escrowmarket.extensions import db
from escrowmarket.models import Listing
from escrowmarket.services import listing_service
from escrowmarket.services.listing_service import ListingStatus

from market_case import MarketTestCase


class ListingAvailabilityTestCase(MarketTestCase):
    def setUp(self):
        super().setUp()
        self.seller = self.make_user("Seller")
        self.listing = self.make_listing(self.seller)

    def test_lapsed_reservation_reads_as_active_without_a_write(self):
        now = datetime.utcnow()
        listing_service.reserve_listing(self.listing, order_id=11, now=now - timedelta(hours=30))
        db.session.commit()

        self.assertEqual(listing_service.effective_listing_status(self.listing, now), ListingStatus.ACTIVE)
        self.assertTrue(listing_service.is_available(self.listing, now))
        stored = self.reload(Listing, self.listing.id)
        self.assertEqual(stored.status, ListingStatus.RESERVED)

    def test_reservation_blocks_other_orders_until_it_lapses(self):
        now = datetime.utcnow()
        listing_service.reserve_listing(self.listing, order_id=11, now=now)
        self.assertEqual(self.listing.holder_order_id, 11)
        self.assertEqual(self.listing.reserved_until, now + timedelta(hours=24))

        # Same order again is a no-op.
        listing_service.reserve_listing(self.listing, order_id=11, now=now)

        with self.assertRaises(StateConflictError) as ctx:
            listing_service.reserve_listing(self.listing, order_id=12, now=now)
        self.assertEqual(ctx.exception.details["listing_status"], ListingStatus.RESERVED)

        later = now + timedelta(hours=25)
        listing_service.reserve_listing(self.listing, order_id=12, now=later)
        self.assertEqual(self.listing.holder_order_id, 12)

    def test_release_only_frees_the_holding_order(self):
        listing_service.reserve_listing(self.listing, order_id=11)
        self.assertFalse(listing_service.release_listing(self.listing, order_id=99))
        self.assertEqual(self.listing.status, ListingStatus.RESERVED)

        self.assertTrue(listing_service.release_listing(self.listing, order_id=11))
        self.assertEqual(self.listing.status, ListingStatus.ACTIVE)
        self.assertIsNone(self.listing.reserved_until)
        self.assertIsNone(self.listing.holder_order_id)

    def test_sold_listing_cannot_be_sold_again(self):
        listing_service.reserve_listing(self.listing, order_id=11)
        with self.assertRaises(StateConflictError):
            listing_service.mark_listing_sold(self.listing, order_id=12)

        listing_service.mark_listing_sold(self.listing, order_id=11)
        self.assertEqual(self.listing.status, ListingStatus.SOLD)
        self.assertIsNone(self.listing.reserved_until)
        with self.assertRaises(StateConflictError) as ctx:
            listing_service.mark_listing_sold(self.listing, order_id=11)
        self.assertIn("already sold", ctx.exception.message)

    def test_repeatable_listing_is_never_held(self):
        listing = self.make_listing(self.seller, availability_mode="repeatable")
        listing_service.reserve_listing(listing, order_id=11)
        listing_service.mark_listing_sold(listing, order_id=12)
        self.assertEqual(listing.status, ListingStatus.ACTIVE)
        self.assertIsNone(listing.holder_order_id)

    def test_seller_cannot_hand_edit_a_committed_listing(self):
        listing_service.reserve_listing(self.listing, order_id=11)
        db.session.commit()
        with self.assertRaises(StateConflictError):
            listing_service.set_listing_status(self.listing.id, self.seller.id, "inactive")
        with self.assertRaises(ValidationError):
            listing_service.set_listing_status(self.listing.id, self.seller.id, "sold")

    def test_seller_can_deactivate_after_reservation_lapses(self):
        listing_service.reserve_listing(self.listing, order_id=11, now=datetime.utcnow() - timedelta(days=2))
        db.session.commit()
        listing = listing_service.set_listing_status(self.listing.id, self.seller.id, "inactive")
        self.assertEqual(listing.status, ListingStatus.INACTIVE)
        self.assertIsNone(listing.holder_order_id)

    def test_sweep_persists_lapsed_reservations(self):
        fresh = self.make_listing(self.seller)
        now = datetime.utcnow()
        listing_service.reserve_listing(self.listing, order_id=11, now=now - timedelta(hours=48))
        listing_service.reserve_listing(fresh, order_id=12, now=now)
        db.session.commit()

        result = listing_service.sweep_expired_reservations(now=now)
        self.assertEqual(result["released"], 1)
        self.assertEqual(self.reload(Listing, self.listing.id).status, ListingStatus.ACTIVE)
        self.assertEqual(self.reload(Listing, fresh.id).status, ListingStatus.RESERVED)

    def test_create_listing_validates_input(self):
        with self.assertRaises(ValidationError):
            listing_service.create_listing(self.seller.id, title="", price=10)
        with self.assertRaises(ValidationError):
            listing_service.create_listing(self.seller.id, title="Audit", price="-3")
        with self.assertRaises(ValidationError):
            listing_service.create_listing(self.seller.id, title="Audit", price=10, availability_mode="bulk")
        listing = listing_service.create_listing(self.seller.id, title="Audit", price="49.99", availability_mode="repeatable")
        self.assertEqual(listing.price_minor, 4999)
        self.assertEqual(listing.status, ListingStatus.ACTIVE)


if __name__ == "__main__":
    unittest.main()
