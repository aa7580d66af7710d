from __future__ import annotations

import json
import logging

import stripe

from escrowmarket.integrations.payments.base import (
    AuthorizationResult,
    CancelResult,
    CaptureResult,
    GatewayError,
    GatewayEvent,
    PaymentStatusResult,
    PaymentsProvider,
    RefundResult,
    TransferResult,
    normalize_event_type,
)

logger = logging.getLogger(__name__)


def _as_gateway_error(e: Exception) -> GatewayError:
    code = getattr(e, "code", None) or type(e).__name__
    message = getattr(e, "user_message", None) or str(e)
    retryable = isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError))
    requires_action = code in ("authentication_required", "payment_intent_authentication_failure")
    return GatewayError(str(code), str(message), retryable=retryable, requires_action=requires_action)


class StripePaymentsProvider(PaymentsProvider):
    """Manual-capture PaymentIntents, refunds and Connect transfers on Stripe."""

    name = "stripe"

    def __init__(self, *, secret_key: str, webhook_secret: str = ""):
        stripe.api_key = secret_key
        self.webhook_secret = webhook_secret

    def authorize(self, *, amount_minor: int, currency: str, metadata: dict | None = None, idempotency_key: str | None = None) -> AuthorizationResult:
        params = {
            "amount": int(amount_minor),
            "currency": currency,
            "capture_method": "manual",
            "automatic_payment_methods": {"enabled": True},
            "metadata": {str(k): str(v) for k, v in (metadata or {}).items()},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            logger.warning("stripe_authorize_failed err=%s", getattr(e, "code", None) or type(e).__name__)
            raise _as_gateway_error(e)
        return AuthorizationResult(
            reference=intent["id"],
            client_secret=intent["client_secret"] or "",
            status=intent["status"],
            provider=self.name,
        )

    def retrieve(self, reference: str) -> PaymentStatusResult:
        try:
            intent = stripe.PaymentIntent.retrieve(reference)
        except stripe.StripeError as e:
            raise _as_gateway_error(e)
        last_error = intent.get("last_payment_error") or {}
        return PaymentStatusResult(
            reference=intent["id"],
            status=intent["status"],
            amount_minor=int(intent.get("amount") or 0),
            amount_capturable_minor=int(intent.get("amount_capturable") or 0),
            amount_received_minor=int(intent.get("amount_received") or 0),
            failure_message=str(last_error.get("message") or ""),
        )

    def capture(self, reference: str) -> CaptureResult:
        current = self.retrieve(reference)
        if current.status == "succeeded":
            return CaptureResult(reference, current.amount_received_minor, already_captured=True)
        try:
            intent = stripe.PaymentIntent.capture(reference)
        except stripe.InvalidRequestError as e:
            # A concurrent capture can win the race between retrieve and capture.
            again = self.retrieve(reference)
            if again.status == "succeeded":
                return CaptureResult(reference, again.amount_received_minor, already_captured=True)
            raise _as_gateway_error(e)
        except stripe.StripeError as e:
            raise _as_gateway_error(e)
        return CaptureResult(reference, int(intent.get("amount_received") or 0))

    def cancel_authorization(self, reference: str) -> CancelResult:
        current = self.retrieve(reference)
        if current.status == "canceled":
            return CancelResult(reference, "canceled", already_cancelled=True)
        try:
            intent = stripe.PaymentIntent.cancel(reference)
        except stripe.StripeError as e:
            raise _as_gateway_error(e)
        return CancelResult(reference, intent["status"])

    def refund(self, reference: str, amount_minor: int | None = None) -> RefundResult:
        params = {"payment_intent": reference}
        if amount_minor is not None:
            params["amount"] = int(amount_minor)
        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as e:
            raise _as_gateway_error(e)
        return RefundResult(reference, refund["id"], int(refund.get("amount") or 0), refund.get("status") or "pending")

    def transfer_to_seller(self, *, amount_minor: int, currency: str, destination: str, metadata: dict | None = None) -> TransferResult:
        try:
            transfer = stripe.Transfer.create(
                amount=int(amount_minor),
                currency=currency,
                destination=destination,
                metadata={str(k): str(v) for k, v in (metadata or {}).items()},
            )
        except stripe.StripeError as e:
            logger.warning("stripe_transfer_failed err=%s", getattr(e, "code", None) or type(e).__name__)
            raise _as_gateway_error(e)
        # Transfers settle asynchronously; transfer.paid / transfer.failed finish them.
        return TransferResult(transfer["id"], "pending", int(transfer.get("amount") or amount_minor))

    def parse_webhook(self, payload: bytes, signature: str | None) -> GatewayEvent:
        try:
            if self.webhook_secret:
                event = stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
            else:
                event = stripe.Event.construct_from(json.loads(payload.decode("utf-8")), stripe.api_key)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise GatewayError("invalid_webhook", str(e))
        obj = event["data"]["object"]
        return GatewayEvent(
            event_id=event["id"],
            type=normalize_event_type(event["type"]),
            reference=str(obj.get("id") or ""),
            data=obj.to_dict() if hasattr(obj, "to_dict") else dict(obj),
        )
