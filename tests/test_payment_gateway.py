from __future__ import annotations

import unittest
from unittest import mock

import stripe

from escrowmarket.errors import PaymentGatewayError
from escrowmarket.integrations.payments.base import GatewayError, normalize_event_type
from escrowmarket.integrations.payments.mock_provider import MockPaymentsProvider
from escrowmarket.integrations.payments.stripe_provider import StripePaymentsProvider
from escrowmarket.services.payment_gateway import gateway_call, payments

from market_case import MarketTestCase


class MockGatewayTestCase(unittest.TestCase):
    def setUp(self):
        self.gateway = MockPaymentsProvider()

    def test_authorize_is_idempotent_by_key(self):
        first = self.gateway.authorize(amount_minor=10000, currency="usd", idempotency_key="k1")
        second = self.gateway.authorize(amount_minor=10000, currency="usd", idempotency_key="k1")
        self.assertEqual(first.reference, second.reference)
        self.assertEqual(len(self.gateway.intents), 1)
        self.assertTrue(self.gateway.retrieve(first.reference).authorized)

    def test_capture_then_refund(self):
        ref = self.gateway.authorize(amount_minor=10000, currency="usd").reference
        with self.assertRaises(GatewayError):
            self.gateway.refund(ref)
        self.assertFalse(self.gateway.capture(ref).already_captured)
        self.assertTrue(self.gateway.capture(ref).already_captured)
        with self.assertRaises(GatewayError):
            self.gateway.cancel_authorization(ref)
        refund = self.gateway.refund(ref)
        self.assertEqual(refund.amount_minor, 10000)

    def test_cancel_is_repeatable(self):
        ref = self.gateway.authorize(amount_minor=500, currency="usd").reference
        self.assertFalse(self.gateway.cancel_authorization(ref).already_cancelled)
        self.assertTrue(self.gateway.cancel_authorization(ref).already_cancelled)
        self.assertFalse(self.gateway.retrieve(ref).authorized)

    def test_event_types_are_normalized(self):
        self.assertEqual(normalize_event_type("payment_intent.succeeded"), "payment.succeeded")
        self.assertEqual(normalize_event_type("payment_intent.canceled"), "payment.failed")
        self.assertEqual(normalize_event_type("transfer.reversed"), "transfer.failed")
        self.assertEqual(normalize_event_type("customer.created"), "customer.created")


class GatewayCallTestCase(unittest.TestCase):
    def test_processor_code_stays_out_of_user_error(self):
        def boom():
            raise GatewayError("card_declined", "Your card was declined", requires_action=False)

        with self.assertRaises(PaymentGatewayError) as ctx:
            gateway_call("authorize", boom, public_message="Could not authorize payment")
        err = ctx.exception
        self.assertEqual(err.message, "Could not authorize payment")
        self.assertNotIn("card_declined", str(err.to_dict()))
        self.assertFalse(err.retryable)


class DisabledPaymentsTestCase(MarketTestCase):
    config = {"PAYMENTS_PROVIDER": "disabled"}

    def test_disabled_provider_is_a_retryable_gateway_error(self):
        with self.assertRaises(PaymentGatewayError) as ctx:
            payments()
        self.assertTrue(ctx.exception.retryable)

    def test_disabled_provider_answers_webhooks_with_503(self):
        res = self.client.post("/api/webhooks/payments", data=b"{}")
        self.assertEqual(res.status_code, 503)
        self.assertEqual(res.get_json()["error"], "PAYMENT_GATEWAY_ERROR")


class StripeProviderTestCase(unittest.TestCase):
    def setUp(self):
        self.provider = StripePaymentsProvider(secret_key="sk_test_dummy")

    def test_authorize_requests_manual_capture(self):
        intent = {"id": "pi_123", "client_secret": "pi_123_secret", "status": "requires_payment_method"}
        with mock.patch.object(stripe.PaymentIntent, "create", return_value=intent) as create:
            result = self.provider.authorize(amount_minor=10000, currency="usd", metadata={"listing_id": 4}, idempotency_key="offer:1:4:k")
        kwargs = create.call_args.kwargs
        self.assertEqual(kwargs["capture_method"], "manual")
        self.assertEqual(kwargs["metadata"], {"listing_id": "4"})
        self.assertEqual(kwargs["idempotency_key"], "offer:1:4:k")
        self.assertEqual(result.reference, "pi_123")

    def test_card_error_is_not_retryable(self):
        err = stripe.CardError("Your card was declined.", None, "card_declined")
        with mock.patch.object(stripe.PaymentIntent, "create", side_effect=err):
            with self.assertRaises(GatewayError) as ctx:
                self.provider.authorize(amount_minor=10000, currency="usd")
        self.assertEqual(ctx.exception.code, "card_declined")
        self.assertFalse(ctx.exception.retryable)

    def test_connection_error_is_retryable(self):
        with mock.patch.object(stripe.PaymentIntent, "retrieve", side_effect=stripe.APIConnectionError("network down")):
            with self.assertRaises(GatewayError) as ctx:
                self.provider.retrieve("pi_123")
        self.assertTrue(ctx.exception.retryable)

    def test_capture_skips_already_captured_intent(self):
        intent = {"id": "pi_123", "status": "succeeded", "amount": 10000, "amount_received": 10000}
        with mock.patch.object(stripe.PaymentIntent, "retrieve", return_value=intent), mock.patch.object(stripe.PaymentIntent, "capture") as capture:
            result = self.provider.capture("pi_123")
        self.assertTrue(result.already_captured)
        self.assertEqual(result.captured_amount_minor, 10000)
        capture.assert_not_called()

    def test_transfer_starts_pending(self):
        transfer = {"id": "tr_1", "amount": 5000}
        with mock.patch.object(stripe.Transfer, "create", return_value=transfer):
            result = self.provider.transfer_to_seller(amount_minor=5000, currency="usd", destination="acct_1")
        self.assertEqual(result.reference, "tr_1")
        self.assertEqual(result.status, "pending")


if __name__ == "__main__":
    unittest.main()
