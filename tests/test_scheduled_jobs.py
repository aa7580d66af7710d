from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from escrowmarket.extensions import db
from escrowmarket.jobs.reservation_sweeper import run_offer_expiry, run_reservation_sweep
from escrowmarket.models import JobRun, Listing, Offer
from escrowmarket.services import listing_service, offer_service
from escrowmarket.tasks.market_tasks import _retry_countdown, expire_offers_task, reservation_sweep_task

from market_case import MarketTestCase


class ScheduledJobsTestCase(MarketTestCase):
    def setUp(self):
        super().setUp()
        self.seller = self.make_user("Seller")
        self.buyer = self.make_user("Buyer")
        self.listing = self.make_listing(self.seller)

    def _lapsed_reservation(self):
        listing_service.reserve_listing(self.listing, order_id=7, now=datetime.utcnow() - timedelta(days=2))
        db.session.commit()

    def test_reservation_sweep_records_job_run(self):
        self._lapsed_reservation()
        result = run_reservation_sweep(limit=10)
        self.assertTrue(result["ok"])
        self.assertEqual(result["released"], 1)
        self.assertIn("ts", result)
        self.assertEqual(self.reload(Listing, self.listing.id).status, "active")

        run = JobRun.query.filter_by(job_name="reservation_sweep").one()
        self.assertTrue(run.ok)
        self.assertEqual(run.processed, 1)

    def test_offer_expiry_job_cancels_lapsed_unpaid_offer(self):
        offer = offer_service.make_offer(self.buyer, self.listing.id, 10000)
        offer.expires_at = datetime.utcnow() - timedelta(minutes=1)
        db.session.commit()

        result = run_offer_expiry(limit=10)
        self.assertEqual(result["expired"], 1)
        self.assertEqual(self.reload(Offer, offer.id).status, "cancelled")
        self.assertTrue(JobRun.query.filter_by(job_name="offer_expiry").one().ok)

    def test_offer_expiry_defers_on_processor_failure(self):
        offer = offer_service.make_offer(self.buyer, self.listing.id, 10000)
        offer.expires_at = datetime.utcnow() - timedelta(minutes=1)
        db.session.commit()
        self.gateway.fail_next("cancel_authorization", code="api_connection_error", retryable=True)

        result = run_offer_expiry(limit=10)
        self.assertEqual(result["expired"], 0)
        self.assertEqual(result["failed"], 1)
        self.assertEqual(self.reload(Offer, offer.id).status, "pending_payment")
        run = JobRun.query.filter_by(job_name="offer_expiry").one()
        self.assertFalse(run.ok)
        self.assertEqual(run.error, "1 deferred")

    def test_tasks_run_jobs_in_app_context(self):
        self._lapsed_reservation()
        self.assertEqual(reservation_sweep_task(limit=10)["released"], 1)
        self.assertEqual(expire_offers_task(limit=10)["expired"], 0)

    def test_retry_countdown_backs_off_with_cap(self):
        self.assertEqual(_retry_countdown(0), 5)
        self.assertEqual(_retry_countdown(3), 40)
        self.assertEqual(_retry_countdown(12), 900)

    def test_cli_commands(self):
        self._lapsed_reservation()
        runner = self.app.test_cli_runner()
        result = runner.invoke(args=["sweep-reservations", "--limit", "5"])
        self.assertEqual(result.exit_code, 0)
        self.assertIn("released=1", result.output)
        result = runner.invoke(args=["expire-offers"])
        self.assertEqual(result.exit_code, 0)
        self.assertIn("expired=0", result.output)


if __name__ == "__main__":
    unittest.main()
