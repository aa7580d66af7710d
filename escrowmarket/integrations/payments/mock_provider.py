from __future__ import annotations

import json
import threading
import uuid

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


class MockPaymentsProvider(PaymentsProvider):
    """In-process stand-in for the card processor.

    Holds simulated processor state so dev and test runs can exercise the full
    authorize/capture/refund/transfer cycle deterministically. ``fail_next``
    and ``set_status`` let callers script processor behaviour.
    """

    name = "mock"

    def __init__(self, *, initial_status: str = "requires_capture"):
        self.initial_status = initial_status
        self.intents: dict[str, dict] = {}
        self.transfers: dict[str, dict] = {}
        self.capture_calls: dict[str, int] = {}
        self._failures: dict[str, GatewayError] = {}
        self._lock = threading.Lock()

    def fail_next(self, operation: str, *, code: str = "processor_declined", message: str = "", retryable: bool = False, requires_action: bool = False) -> None:
        self._failures[operation] = GatewayError(code, message or code, retryable=retryable, requires_action=requires_action)

    def set_status(self, reference: str, status: str) -> None:
        self._intent(reference)["status"] = status

    def _maybe_fail(self, operation: str) -> None:
        err = self._failures.pop(operation, None)
        if err is not None:
            raise err

    def _intent(self, reference: str) -> dict:
        intent = self.intents.get(reference or "")
        if intent is None:
            raise GatewayError("resource_missing", f"no such payment {reference}")
        return intent

    def authorize(self, *, amount_minor: int, currency: str, metadata: dict | None = None, idempotency_key: str | None = None) -> AuthorizationResult:
        self._maybe_fail("authorize")
        with self._lock:
            if idempotency_key:
                for ref, intent in self.intents.items():
                    if intent.get("idempotency_key") == idempotency_key:
                        return AuthorizationResult(ref, intent["client_secret"], intent["status"], self.name)
            reference = f"mock_pi_{uuid.uuid4().hex[:16]}"
            self.intents[reference] = {
                "amount_minor": int(amount_minor),
                "currency": currency,
                "status": self.initial_status,
                "client_secret": f"{reference}_secret_mock",
                "captured_minor": 0,
                "refunded_minor": 0,
                "metadata": dict(metadata or {}),
                "idempotency_key": idempotency_key,
            }
        return AuthorizationResult(reference, f"{reference}_secret_mock", self.initial_status, self.name, raw={"metadata": metadata or {}})

    def retrieve(self, reference: str) -> PaymentStatusResult:
        self._maybe_fail("retrieve")
        intent = self._intent(reference)
        status = intent["status"]
        return PaymentStatusResult(
            reference=reference,
            status=status,
            amount_minor=intent["amount_minor"],
            amount_capturable_minor=intent["amount_minor"] if status == "requires_capture" else 0,
            amount_received_minor=intent["captured_minor"],
            failure_message="" if status in ("requires_capture", "succeeded") else f"payment {status}",
        )

    def capture(self, reference: str) -> CaptureResult:
        self._maybe_fail("capture")
        with self._lock:
            intent = self._intent(reference)
            self.capture_calls[reference] = self.capture_calls.get(reference, 0) + 1
            if intent["status"] == "succeeded":
                return CaptureResult(reference, intent["captured_minor"], already_captured=True)
            if intent["status"] != "requires_capture":
                raise GatewayError(
                    "payment_intent_unexpected_state",
                    f"cannot capture payment in status {intent['status']}",
                    requires_action=intent["status"] == "requires_action",
                )
            intent["status"] = "succeeded"
            intent["captured_minor"] = intent["amount_minor"]
            return CaptureResult(reference, intent["captured_minor"])

    def cancel_authorization(self, reference: str) -> CancelResult:
        self._maybe_fail("cancel_authorization")
        with self._lock:
            intent = self._intent(reference)
            if intent["status"] == "canceled":
                return CancelResult(reference, "canceled", already_cancelled=True)
            if intent["status"] == "succeeded":
                raise GatewayError("payment_intent_unexpected_state", "captured payments must be refunded")
            intent["status"] = "canceled"
            return CancelResult(reference, "canceled")

    def refund(self, reference: str, amount_minor: int | None = None) -> RefundResult:
        self._maybe_fail("refund")
        with self._lock:
            intent = self._intent(reference)
            if intent["status"] != "succeeded":
                raise GatewayError("charge_not_captured", "only captured payments can be refunded")
            remaining = intent["captured_minor"] - intent["refunded_minor"]
            amount = remaining if amount_minor is None else min(int(amount_minor), remaining)
            intent["refunded_minor"] += amount
            return RefundResult(reference, f"mock_re_{uuid.uuid4().hex[:16]}", amount, "succeeded")

    def transfer_to_seller(self, *, amount_minor: int, currency: str, destination: str, metadata: dict | None = None) -> TransferResult:
        self._maybe_fail("transfer")
        reference = f"mock_tr_{uuid.uuid4().hex[:16]}"
        self.transfers[reference] = {
            "amount_minor": int(amount_minor),
            "currency": currency,
            "destination": destination,
            "metadata": dict(metadata or {}),
        }
        return TransferResult(reference, "pending", int(amount_minor))

    def parse_webhook(self, payload: bytes, signature: str | None) -> GatewayEvent:
        try:
            body = json.loads(payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload)
        except (ValueError, UnicodeDecodeError) as e:
            raise GatewayError("invalid_payload", str(e))
        obj = ((body.get("data") or {}).get("object") or {}) if isinstance(body, dict) else {}
        event_id = str(body.get("id") or "").strip()
        if not event_id:
            raise GatewayError("invalid_payload", "missing event id")
        return GatewayEvent(
            event_id=event_id,
            type=normalize_event_type(str(body.get("type") or "")),
            reference=str(obj.get("id") or ""),
            data=obj,
        )
