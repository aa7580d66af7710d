from __future__ import annotations

from dataclasses import dataclass, field

# Processor states that mean the hold is in place (manual capture) or already captured.
AUTHORIZED_STATUSES = ("requires_capture", "succeeded")
ACTION_STATUSES = ("requires_action", "requires_confirmation", "requires_payment_method", "processing")

PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
TRANSFER_PAID = "transfer.paid"
TRANSFER_FAILED = "transfer.failed"

_EVENT_ALIASES = {
    "payment_intent.succeeded": PAYMENT_SUCCEEDED,
    "payment_intent.amount_capturable_updated": PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": PAYMENT_FAILED,
    "payment_intent.canceled": PAYMENT_FAILED,
    "transfer.paid": TRANSFER_PAID,
    "transfer.failed": TRANSFER_FAILED,
    "transfer.reversed": TRANSFER_FAILED,
    PAYMENT_SUCCEEDED: PAYMENT_SUCCEEDED,
    PAYMENT_FAILED: PAYMENT_FAILED,
}


def normalize_event_type(raw: str) -> str:
    key = (raw or "").strip().lower()
    return _EVENT_ALIASES.get(key, key)


class GatewayError(RuntimeError):
    """Processor failure. ``code`` is for logs only and must not reach end users."""

    def __init__(self, code: str, message: str = "", *, retryable: bool = False, requires_action: bool = False):
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.message = message or code
        self.retryable = bool(retryable)
        self.requires_action = bool(requires_action)


@dataclass
class AuthorizationResult:
    reference: str
    client_secret: str
    status: str
    provider: str
    raw: dict | None = None


@dataclass
class PaymentStatusResult:
    reference: str
    status: str
    amount_minor: int
    amount_capturable_minor: int = 0
    amount_received_minor: int = 0
    failure_message: str = ""

    @property
    def authorized(self) -> bool:
        return self.status in AUTHORIZED_STATUSES

    @property
    def requires_action(self) -> bool:
        return self.status in ACTION_STATUSES


@dataclass
class CaptureResult:
    reference: str
    captured_amount_minor: int
    already_captured: bool = False


@dataclass
class CancelResult:
    reference: str
    status: str
    already_cancelled: bool = False


@dataclass
class RefundResult:
    reference: str
    refund_reference: str
    amount_minor: int
    status: str


@dataclass
class TransferResult:
    reference: str
    status: str
    amount_minor: int = 0


@dataclass
class GatewayEvent:
    event_id: str
    type: str
    reference: str
    data: dict = field(default_factory=dict)


class PaymentsProvider:
    name = "unknown"

    def authorize(self, *, amount_minor: int, currency: str, metadata: dict | None = None, idempotency_key: str | None = None) -> AuthorizationResult:
        raise NotImplementedError

    def retrieve(self, reference: str) -> PaymentStatusResult:
        raise NotImplementedError

    def capture(self, reference: str) -> CaptureResult:
        raise NotImplementedError

    def cancel_authorization(self, reference: str) -> CancelResult:
        raise NotImplementedError

    def refund(self, reference: str, amount_minor: int | None = None) -> RefundResult:
        raise NotImplementedError

    def transfer_to_seller(self, *, amount_minor: int, currency: str, destination: str, metadata: dict | None = None) -> TransferResult:
        raise NotImplementedError

    def parse_webhook(self, payload: bytes, signature: str | None) -> GatewayEvent:
        raise NotImplementedError
