from __future__ import annotations

import hashlib
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from escrowmarket.errors import MarketError, PaymentGatewayError
from escrowmarket.extensions import db
from escrowmarket.integrations.payments.base import (
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    TRANSFER_FAILED,
    TRANSFER_PAID,
    GatewayError,
)
from escrowmarket.models import Offer, Order, WebhookEvent
from escrowmarket.services import ledger_service, offer_service, order_service
from escrowmarket.services.payment_gateway import payments
from escrowmarket.utils.events import record_audit_event
from escrowmarket.utils.observability import get_request_id
from escrowmarket.utils.transactions import atomic, lock_row

logger = logging.getLogger(__name__)


def _failure_message(data: dict) -> str:
    err = data.get("last_payment_error") or {}
    if isinstance(err, dict) and err.get("message"):
        return str(err.get("message"))[:240]
    return str(data.get("failure_message") or data.get("cancellation_reason") or "Payment failed")[:240]


def _on_payment_succeeded(reference: str) -> str:
    offer = Offer.query.filter_by(payment_ref=reference).first()
    if offer is not None:
        result = offer_service.confirm_offer_payment(offer.id, reference)
        return "offer_already_confirmed" if result["already_confirmed"] else "offer_confirmed"
    order = Order.query.filter_by(payment_ref=reference, offer_id=None).first()
    if order is not None:
        already = order.paid_at is not None
        order_service.confirm_order_payment(order.id, reference)
        return "order_already_confirmed" if already else "order_confirmed"
    return ""


def _on_payment_failed(reference: str, data: dict) -> str:
    message = _failure_message(data)
    offer = Offer.query.filter_by(payment_ref=reference).first()
    if offer is not None:
        with atomic():
            offer = lock_row(Offer, offer.id)
            if offer.status != offer_service.OfferStatus.PENDING_PAYMENT:
                return "offer_not_pending"
            offer.last_payment_error = message
        return "offer_payment_failed"
    order = Order.query.filter_by(payment_ref=reference, offer_id=None).first()
    if order is not None:
        with atomic():
            order = lock_row(Order, order.id)
            if order.status != order_service.OrderStatus.PENDING_PAYMENT:
                return "order_not_pending"
            order.last_payment_error = message
        return "order_payment_failed"
    return ""


def _metadata_withdrawal_id(data: dict) -> int | None:
    metadata = data.get("metadata") or {}
    try:
        return int(metadata.get("withdrawal_id")) if isinstance(metadata, dict) and metadata.get("withdrawal_id") else None
    except (TypeError, ValueError):
        return None


def _on_transfer(reference: str, succeeded: bool, data: dict) -> str:
    reason = "" if succeeded else str(data.get("failure_message") or "Payout failed by processor")
    row = ledger_service.settle_transfer(reference, succeeded, reason, withdrawal_id=_metadata_withdrawal_id(data))
    if row is None:
        return ""
    return f"withdrawal_{row.status}"


def _finish_event(row_id: int, *, status: str, outcome: str = "", error: str = "") -> None:
    try:
        row = db.session.get(WebhookEvent, int(row_id))
        row.status = status
        row.outcome = (outcome or "")[:64] or None
        row.error = (error or "")[:2000] or None
        row.processed_at = datetime.utcnow()
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("webhook_event_update_failed id=%s", row_id)


def process_payment_webhook(raw_body: bytes, signature: str | None, *, source: str = "api/webhooks/payments") -> tuple[dict, int]:
    """Verify, dedupe and apply one processor event. Returns ``(body, http_status)``.

    Payment events the platform cannot match are recorded as ignored and
    acknowledged so the processor stops redelivering them. Unmatched transfer
    events and retryable processor failures answer 500 so the event is
    delivered again.
    """
    try:
        provider = payments()
    except PaymentGatewayError as e:
        return e.to_dict(), 503

    try:
        event = provider.parse_webhook(raw_body or b"", signature)
    except GatewayError as e:
        logger.warning("payment_webhook_rejected source=%s code=%s", source, e.code)
        code = "INVALID_PAYLOAD" if e.code == "invalid_payload" else "INVALID_SIGNATURE"
        return {"ok": False, "error": code, "message": "Webhook could not be verified", "status": 400}, 400

    existing = WebhookEvent.query.filter_by(event_id=event.event_id).first()
    if existing is not None and existing.status in ("processed", "ignored"):
        return {"ok": True, "replayed": True, "event_id": event.event_id, "outcome": existing.outcome or ""}, 200

    if existing is None:
        try:
            existing = WebhookEvent(
                provider=provider.name,
                event_id=event.event_id,
                event_type=event.type[:64],
                reference=event.reference[:128] or None,
                status="received",
                request_id=get_request_id()[:64] or None,
                payload_hash=hashlib.sha256(raw_body or b"").hexdigest(),
            )
            db.session.add(existing)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return {"ok": True, "replayed": True, "event_id": event.event_id}, 200

    row_id = int(existing.id)
    try:
        if not event.reference:
            outcome = ""
        elif event.type == PAYMENT_SUCCEEDED:
            outcome = _on_payment_succeeded(event.reference)
        elif event.type == PAYMENT_FAILED:
            outcome = _on_payment_failed(event.reference, event.data)
        elif event.type in (TRANSFER_PAID, TRANSFER_FAILED):
            outcome = _on_transfer(event.reference, event.type == TRANSFER_PAID, event.data)
        else:
            outcome = ""
    except PaymentGatewayError as e:
        _finish_event(row_id, status="failed", error=e.message)
        logger.warning("payment_webhook_retry event_id=%s type=%s", event.event_id, event.type)
        if e.retryable:
            return {**e.to_dict(), "event_id": event.event_id}, 500
        return {"ok": False, "error": e.code, "event_id": event.event_id, "status": 200}, 200
    except MarketError as e:
        # State moved on (offer withdrawn, listing sold); nothing to redeliver.
        _finish_event(row_id, status="ignored", outcome=e.code.lower(), error=e.message)
        record_audit_event(
            "payment_webhook_conflict",
            subject_type="webhook_event",
            subject_id=row_id,
            severity="WARN",
            metadata={"event_type": event.type, "reference": event.reference, "error": e.code},
        )
        db.session.commit()
        return {"ok": True, "ignored": True, "event_id": event.event_id, "reason": e.code}, 200

    if not outcome and event.type in (TRANSFER_PAID, TRANSFER_FAILED):
        # The payout's reference may not be committed yet; ask for redelivery.
        _finish_event(row_id, status="failed", outcome="transfer_unmatched", error="No withdrawal for this transfer yet")
        logger.warning("payment_webhook_transfer_unmatched event_id=%s reference=%s", event.event_id, event.reference)
        return {
            "ok": False,
            "error": "TRANSFER_NOT_FOUND",
            "message": "No withdrawal matches this transfer yet",
            "status": 500,
            "event_id": event.event_id,
        }, 500
    if not outcome:
        _finish_event(row_id, status="ignored", outcome="unmatched")
        return {"ok": True, "ignored": True, "event_id": event.event_id}, 200
    _finish_event(row_id, status="processed", outcome=outcome)
    logger.info("payment_webhook_processed event_id=%s type=%s outcome=%s", event.event_id, event.type, outcome)
    return {"ok": True, "event_id": event.event_id, "outcome": outcome}, 200
