from __future__ import annotations

import unittest
from unittest import mock

from escrowmarket.errors import (
    AuthorizationError,
    InsufficientBalanceError,
    NotFoundError,
    PaymentGatewayError,
    StateConflictError,
    ValidationError,
)
from escrowmarket.models import AuditEvent, Withdrawal
from escrowmarket.services import delivery_service, ledger_service, order_service

from market_case import MarketTestCase

FILES = [{"name": "report.pdf", "url": "https://files.example.test/report.pdf"}]


class EarningsLedgerTestCase(MarketTestCase):
    def setUp(self):
        super().setUp()
        self.seller = self.make_user("Seller", payout_account_id="acct_seller_1")
        self.buyer = self.make_user("Buyer")

    def _completed_order(self, amount_minor: int = 10000):
        listing = self.make_listing(self.seller, price_minor=amount_minor)
        order = self.accepted_order(self.buyer, self.seller, listing, amount_minor)
        order_service.transition_order(order.id, self.seller, "processing")
        order_service.transition_order(order.id, self.seller, "in_progress")
        delivery_service.submit_delivery(order.id, self.seller, "Done", FILES)
        return order_service.complete_order(order.id, self.buyer)

    def test_pending_then_available_balance(self):
        listing = self.make_listing(self.seller)
        order = self.accepted_order(self.buyer, self.seller, listing)
        summary = ledger_service.earnings_summary(self.seller.id)
        self.assertEqual(summary["pending_minor"], 8500)
        self.assertEqual(summary["available_minor"], 0)
        self.assertAlmostEqual(summary["fee_rate"], 0.15)

        order_service.transition_order(order.id, self.seller, "processing")
        order_service.transition_order(order.id, self.seller, "in_progress")
        delivery_service.submit_delivery(order.id, self.seller, "Done", FILES)
        order_service.complete_order(order.id, self.buyer)

        summary = ledger_service.earnings_summary(self.seller.id)
        self.assertEqual(summary["pending_minor"], 0)
        self.assertEqual(summary["available_minor"], 8500)
        self.assertEqual(summary["total_earned_minor"], 8500)
        self.assertEqual(summary["available"], 85.0)
        self.assertEqual(ledger_service.available_balance_minor(self.seller.id), 8500)

    def test_withdrawal_over_balance_only_leaves_an_audit_entry(self):
        self._completed_order()
        with self.assertRaises(InsufficientBalanceError) as ctx:
            ledger_service.request_withdrawal(self.seller, 9000)
        err = ctx.exception
        self.assertEqual(err.status_code, 422)
        self.assertEqual(err.details["available_minor"], 8500)
        self.assertEqual(err.details["requested_minor"], 9000)

        self.assertEqual(Withdrawal.query.count(), 0)
        audits = AuditEvent.query.filter_by(event_type="withdrawal_rejected").all()
        self.assertEqual(len(audits), 1)
        self.assertEqual(audits[0].amount_minor, 9000)
        self.assertEqual(ledger_service.earnings_summary(self.seller.id)["withdrawable_minor"], 8500)

    def test_withdrawal_input_validation(self):
        self._completed_order()
        with self.assertRaises(ValidationError) as ctx:
            ledger_service.request_withdrawal(self.seller, 499)
        self.assertEqual(ctx.exception.details["min_withdrawal_minor"], 500)
        with self.assertRaises(ValidationError):
            ledger_service.request_withdrawal(self.seller, 1000, payment_method="crypto")
        no_account = self.make_user("Fresh")
        with self.assertRaises(ValidationError):
            ledger_service.request_withdrawal(no_account, 1000)

    def test_gateway_withdrawal_settles_from_transfer_result(self):
        self._completed_order()
        withdrawal = ledger_service.request_withdrawal(self.seller, 5000)
        self.assertEqual(withdrawal.status, "processing")
        self.assertTrue(withdrawal.transfer_ref.startswith("mock_tr_"))
        self.assertEqual(self.gateway.transfers[withdrawal.transfer_ref]["destination"], "acct_seller_1")

        summary = ledger_service.earnings_summary(self.seller.id)
        self.assertEqual(summary["available_minor"], 8500)
        self.assertEqual(summary["in_flight_minor"], 5000)
        self.assertEqual(summary["withdrawable_minor"], 3500)
        with self.assertRaises(InsufficientBalanceError):
            ledger_service.request_withdrawal(self.seller, 4000)

        settled = ledger_service.settle_transfer(withdrawal.transfer_ref, True)
        self.assertEqual(settled.status, "completed")
        again = ledger_service.settle_transfer(withdrawal.transfer_ref, False, "late failure")
        self.assertEqual(again.status, "completed")

        summary = ledger_service.earnings_summary(self.seller.id)
        self.assertEqual(summary["available_minor"], 3500)
        self.assertEqual(summary["total_withdrawn_minor"], 5000)
        self.assertEqual(summary["withdrawable_minor"], 3500)
        self.assertIsNone(ledger_service.settle_transfer("mock_tr_unknown", True))

    def test_failed_transfer_start_marks_withdrawal_failed(self):
        self._completed_order()
        self.gateway.fail_next("transfer", code="account_invalid")
        with self.assertRaises(PaymentGatewayError):
            ledger_service.request_withdrawal(self.seller, 5000)

        row = Withdrawal.query.one()
        self.assertEqual(row.status, "failed")
        self.assertEqual(row.failure_reason, "Payout could not be started")
        self.assertEqual(ledger_service.available_balance_minor(self.seller.id), 8500)

    def test_gateway_withdrawal_cannot_be_cancelled_while_transfer_runs(self):
        self._completed_order()
        real_transfer = self.gateway.transfer_to_seller
        seen = []

        def transfer_in_flight(**kwargs):
            row = Withdrawal.query.one()
            seen.append(row.status)
            with self.assertRaises(StateConflictError) as ctx:
                ledger_service.cancel_withdrawal(self.seller, row.id)
            self.assertEqual(ctx.exception.current_status, "processing")
            return real_transfer(**kwargs)

        with mock.patch.object(self.gateway, "transfer_to_seller", side_effect=transfer_in_flight):
            withdrawal = ledger_service.request_withdrawal(self.seller, 5000)

        self.assertEqual(seen, ["processing"])
        row = self.reload(Withdrawal, withdrawal.id)
        self.assertEqual(row.status, "processing")
        self.assertTrue(row.transfer_ref.startswith("mock_tr_"))
        self.assertIsNone(row.cancelled_at)
        self.assertEqual(ledger_service.available_balance_minor(self.seller.id), 3500)

    def test_processor_reported_failure_frees_funds(self):
        self._completed_order()
        withdrawal = ledger_service.request_withdrawal(self.seller, 5000)
        failed = ledger_service.settle_transfer(withdrawal.transfer_ref, False, "Account closed")
        self.assertEqual(failed.status, "failed")
        self.assertEqual(failed.failure_reason, "Account closed")
        self.assertEqual(ledger_service.available_balance_minor(self.seller.id), 8500)

    def test_bank_transfer_cancel_and_manual_settlement(self):
        admin = self.make_user("Admin", role="admin")
        self._completed_order()

        first = ledger_service.request_withdrawal(self.seller, 1000, payment_method="bank_transfer", destination="GB00TEST1234")
        self.assertEqual(first.status, "pending")
        self.assertEqual(first.transfer_ref or "", "")
        cancelled = ledger_service.cancel_withdrawal(self.seller, first.id)
        self.assertEqual(cancelled.status, "cancelled")
        with self.assertRaises(StateConflictError):
            ledger_service.cancel_withdrawal(self.seller, first.id)

        second = ledger_service.request_withdrawal(self.seller, 2000, payment_method="bank_transfer")
        with self.assertRaises(NotFoundError):
            ledger_service.cancel_withdrawal(self.buyer, second.id)
        with self.assertRaises(AuthorizationError):
            ledger_service.admin_settle_withdrawal(second.id, self.seller, "processing")
        with self.assertRaises(StateConflictError) as ctx:
            ledger_service.admin_settle_withdrawal(second.id, admin, "completed")
        self.assertEqual(ctx.exception.allowed_next_statuses, ["failed", "processing"])

        ledger_service.admin_settle_withdrawal(second.id, admin, "processing")
        done = ledger_service.admin_settle_withdrawal(second.id, admin, "completed")
        self.assertEqual(done.status, "completed")
        self.assertEqual(AuditEvent.query.filter_by(event_type="withdrawal_settled_manually").count(), 2)

        summary = ledger_service.earnings_summary(self.seller.id)
        self.assertEqual(summary["available_minor"], 6500)
        self.assertEqual(summary["in_flight_minor"], 0)
        self.assertEqual([w.status for w in ledger_service.list_withdrawals(self.seller.id)], ["completed", "cancelled"])


if __name__ == "__main__":
    unittest.main()
