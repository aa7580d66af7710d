from __future__ import annotations

import json
import logging
from datetime import datetime

from escrowmarket.config import get_settings
from escrowmarket.errors import (
    AuthorizationError,
    NotFoundError,
    PaymentGatewayError,
    RevisionLimitError,
    StateConflictError,
    ValidationError,
)
from escrowmarket.extensions import db
from escrowmarket.models import Delivery, Listing, Offer, Order, OrderTransition, RevisionNote, User
from escrowmarket.services import listing_service
from escrowmarket.services.notification_service import notify, open_order_chat
from escrowmarket.services.payment_gateway import gateway_call, payments
from escrowmarket.utils.events import record_audit_event
from escrowmarket.utils.money import split_platform_fee
from escrowmarket.utils.transactions import atomic, lock_row

logger = logging.getLogger(__name__)


class OrderStatus:
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    PROCESSING = "processing"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    IN_REVISION = "in_revision"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"

    TERMINAL = {COMPLETED, CANCELLED}
    # Funds are authorized or captured and not yet released or returned.
    MONEY_HELD = {PAID, PROCESSING, IN_PROGRESS, DELIVERED, IN_REVISION, DISPUTED}

    ALLOWED = {
        PENDING_PAYMENT: {PAID, CANCELLED, DISPUTED},
        PAID: {PROCESSING, CANCELLED, DISPUTED},
        PROCESSING: {IN_PROGRESS, CANCELLED, DISPUTED},
        IN_PROGRESS: {DELIVERED, DISPUTED},
        DELIVERED: {IN_REVISION, COMPLETED, DISPUTED},
        IN_REVISION: {DELIVERED, DISPUTED},
        DISPUTED: {COMPLETED, CANCELLED},
        COMPLETED: set(),
        CANCELLED: set(),
    }


class Actor:
    BUYER = "buyer"
    SELLER = "seller"
    SYSTEM = "system"
    ADMIN = "admin"


_DISPUTABLE = [s for s in OrderStatus.ALLOWED if s not in OrderStatus.TERMINAL and s != OrderStatus.DISPUTED]

ACTOR_TRANSITIONS = {
    Actor.SELLER: {
        (OrderStatus.PAID, OrderStatus.PROCESSING),
        (OrderStatus.PROCESSING, OrderStatus.IN_PROGRESS),
        (OrderStatus.IN_PROGRESS, OrderStatus.DELIVERED),
        (OrderStatus.IN_REVISION, OrderStatus.DELIVERED),
        (OrderStatus.PAID, OrderStatus.CANCELLED),
        (OrderStatus.PROCESSING, OrderStatus.CANCELLED),
    } | {(s, OrderStatus.DISPUTED) for s in _DISPUTABLE},
    Actor.BUYER: {
        (OrderStatus.DELIVERED, OrderStatus.COMPLETED),
        (OrderStatus.DELIVERED, OrderStatus.IN_REVISION),
        (OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED),
        (OrderStatus.PAID, OrderStatus.CANCELLED),
    } | {(s, OrderStatus.DISPUTED) for s in _DISPUTABLE},
    Actor.SYSTEM: {
        (OrderStatus.PENDING_PAYMENT, OrderStatus.PAID),
    },
    Actor.ADMIN: {
        (OrderStatus.DISPUTED, OrderStatus.COMPLETED),
        (OrderStatus.DISPUTED, OrderStatus.CANCELLED),
    },
}


def allowed_next_statuses(actor: str, current: str) -> list[str]:
    pairs = ACTOR_TRANSITIONS.get(actor, set())
    return sorted(target for (source, target) in pairs if source == current)


def check_transition(order: Order, target: str, actor: str) -> None:
    current = order.status or OrderStatus.PENDING_PAYMENT
    allowed = allowed_next_statuses(actor, current)
    if target not in OrderStatus.ALLOWED.get(current, set()):
        if current in OrderStatus.TERMINAL:
            message = f"Order is already {current}"
        else:
            message = f"Order cannot move from {current} to {target}"
        raise StateConflictError(message, current_status=current, allowed_next_statuses=allowed)
    if target not in allowed:
        raise AuthorizationError(
            f"{actor} may not move order from {current} to {target}",
            current_status=current,
            allowed_next_statuses=allowed,
        )
    # Offer-backed orders wait for seller acceptance before work starts.
    if (
        current == OrderStatus.PAID
        and target == OrderStatus.PROCESSING
        and order.offer_id is not None
        and order.confirmed_at is None
    ):
        raise StateConflictError(
            "Offer must be accepted before work starts",
            current_status=current,
            allowed_next_statuses=allowed,
        )


def apply_transition(
    order: Order,
    target: str,
    *,
    actor: str,
    actor_id: int | None = None,
    reason: str = "",
    metadata: dict | None = None,
    now: datetime | None = None,
) -> OrderTransition:
    """Write the new status plus its audit row. Callers validate first and hold the row lock."""
    now = now or datetime.utcnow()
    previous = order.status or ""
    order.status = target
    order.updated_at = now
    if target == OrderStatus.PAID and order.paid_at is None:
        order.paid_at = now
    elif target == OrderStatus.DELIVERED:
        order.delivered_at = now
    elif target == OrderStatus.COMPLETED:
        order.completed_at = now
    elif target == OrderStatus.CANCELLED:
        order.cancelled_at = now
    elif target == OrderStatus.DISPUTED:
        order.disputed_at = now
    row = OrderTransition(
        order_id=int(order.id),
        from_status=previous,
        to_status=target,
        actor_type=actor,
        actor_id=int(actor_id) if actor_id is not None else None,
        reason=(reason or "")[:240] or None,
        metadata_json=json.dumps(metadata or {}, separators=(",", ":"), default=str)[:4000],
        created_at=now,
    )
    db.session.add(row)
    db.session.flush()
    logger.info("order_transition order_id=%s %s->%s actor=%s", order.id, previous, target, actor)
    return row


def actor_for(order: Order, user: User) -> str:
    if user is None:
        raise NotFoundError("Order not found")
    if int(user.id) == int(order.buyer_id):
        return Actor.BUYER
    if int(user.id) == int(order.seller_id):
        return Actor.SELLER
    if user.is_admin:
        return Actor.ADMIN
    raise NotFoundError("Order not found")


def lock_order_graph(order_id: int) -> tuple[Listing | None, Offer | None, Order]:
    """Lock listing, offer and order in the global lock order."""
    snapshot = db.session.get(Order, int(order_id)) if order_id else None
    if snapshot is None:
        raise NotFoundError("Order not found")
    listing = lock_row(Listing, snapshot.listing_id)
    offer = lock_row(Offer, snapshot.offer_id) if snapshot.offer_id else None
    order = lock_row(Order, snapshot.id)
    if order is None:
        raise NotFoundError("Order not found")
    return listing, offer, order


def create_order(
    *,
    buyer_id: int,
    seller_id: int,
    listing_id: int,
    amount_minor: int,
    payment_ref: str,
    status: str,
    offer_id: int | None = None,
    requirements: str | None = None,
) -> Order:
    settings = get_settings()
    order = Order(
        buyer_id=int(buyer_id),
        seller_id=int(seller_id),
        listing_id=int(listing_id),
        offer_id=int(offer_id) if offer_id else None,
        order_type="accepted_offer" if offer_id else "direct_purchase",
        status=status,
        amount_minor=int(amount_minor),
        currency=settings.currency,
        max_revisions=settings.default_max_revisions,
        payment_ref=payment_ref,
        requirements=requirements,
        paid_at=datetime.utcnow() if status == OrderStatus.PAID else None,
    )
    db.session.add(order)
    db.session.flush()
    db.session.add(
        OrderTransition(order_id=int(order.id), from_status="", to_status=status, actor_type=Actor.SYSTEM, reason="created")
    )
    return order


def get_order_for(order_id: int, user: User) -> tuple[Order, str]:
    order = db.session.get(Order, int(order_id)) if order_id else None
    if order is None:
        raise NotFoundError("Order not found")
    return order, actor_for(order, user)


def list_orders_for(user: User, *, as_role: str = Actor.BUYER, status: str | None = None, limit: int = 100) -> list[Order]:
    q = Order.query
    if as_role == Actor.SELLER:
        q = q.filter(Order.seller_id == int(user.id))
    else:
        q = q.filter(Order.buyer_id == int(user.id))
    if status:
        q = q.filter(Order.status == status)
    return q.order_by(Order.created_at.desc(), Order.id.desc()).limit(int(limit)).all()


def order_timeline(order_id: int, user: User) -> list[OrderTransition]:
    order, _actor = get_order_for(order_id, user)
    return (
        OrderTransition.query.filter_by(order_id=int(order.id))
        .order_by(OrderTransition.created_at.asc(), OrderTransition.id.asc())
        .all()
    )


def transition_order(order_id: int, user: User, target: str, *, reason: str = "", notes: str = "") -> Order:
    """Generic status change; money-moving targets route to their dedicated operations."""
    target = (target or "").strip().lower()
    if target not in OrderStatus.ALLOWED:
        raise ValidationError(f"Unknown order status '{target}'")
    if target == OrderStatus.COMPLETED:
        return complete_order(order_id, user)
    if target == OrderStatus.CANCELLED:
        return cancel_order(order_id, user, reason=reason)
    if target == OrderStatus.IN_REVISION:
        return request_revision(order_id, user, notes=notes or reason)["order"]
    if target == OrderStatus.DISPUTED:
        return open_dispute(order_id, user, reason=reason or notes)

    with atomic():
        order = lock_row(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        actor = actor_for(order, user)
        check_transition(order, target, actor)
        if target == OrderStatus.DELIVERED:
            raise ValidationError("A delivery needs a message and attachments; submit it through the deliver action")
        apply_transition(order, target, actor=actor, actor_id=user.id, reason=reason)
    notify(
        order.buyer_id,
        "order_status_changed",
        subject_type="order",
        subject_id=order.id,
        message=f"Your order is now {target.replace('_', ' ')}",
    )
    return order


def confirm_order_payment(order_id: int, payment_ref: str, *, user: User | None = None) -> Order:
    """Direct purchase: verify the authorization and move pending_payment -> paid.

    Repeated confirmations of a paid order return it unchanged.
    """
    order = db.session.get(Order, int(order_id)) if order_id else None
    if order is None:
        raise NotFoundError("Order not found")
    if user is not None and actor_for(order, user) != Actor.BUYER:
        raise AuthorizationError("Only the buyer confirms payment", current_status=order.status, allowed_next_statuses=[])
    if (payment_ref or "").strip() != (order.payment_ref or ""):
        raise ValidationError("payment_ref does not match this order")
    if order.paid_at is not None and order.status != OrderStatus.PENDING_PAYMENT:
        return order
    if order.status != OrderStatus.PENDING_PAYMENT:
        check_transition(order, OrderStatus.PAID, Actor.SYSTEM)

    provider = payments()
    status = gateway_call("retrieve", provider.retrieve, order.payment_ref, public_message="Could not verify payment")
    if not status.authorized:
        raise PaymentGatewayError(
            "Payment has not been authorized",
            retryable=status.requires_action,
            requires_action=status.requires_action,
            details={"payment_status": status.status},
        )

    with atomic():
        listing, _offer, order = lock_order_graph(order_id)
        if order.status != OrderStatus.PENDING_PAYMENT:
            if order.paid_at is not None:
                return order
            check_transition(order, OrderStatus.PAID, Actor.SYSTEM)
        apply_transition(order, OrderStatus.PAID, actor=Actor.SYSTEM, actor_id=user.id if user else None, reason="payment_confirmed")
        # Payment on a direct purchase is the acceptance event.
        order.confirmed_at = datetime.utcnow()
        order.last_payment_error = None
        if listing is not None:
            listing_service.mark_listing_sold(listing, order_id=order.id)

    open_order_chat(order)
    notify(
        order.seller_id,
        "order_paid",
        subject_type="order",
        subject_id=order.id,
        amount_minor=order.amount_minor,
        message="A buyer paid for your listing",
    )
    return order


def request_revision(order_id: int, user: User, *, notes: str = "") -> dict:
    with atomic():
        order = lock_row(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        actor = actor_for(order, user)
        check_transition(order, OrderStatus.IN_REVISION, actor)
        if int(order.revisions or 0) >= int(order.max_revisions or 0):
            raise RevisionLimitError(
                "Maximum revisions reached",
                current_status=order.status,
                allowed_next_statuses=[s for s in allowed_next_statuses(actor, order.status) if s != OrderStatus.IN_REVISION],
                details={"revisions": int(order.revisions or 0), "max_revisions": int(order.max_revisions or 0)},
            )
        now = datetime.utcnow()
        order.revisions = int(order.revisions or 0) + 1
        db.session.add(
            RevisionNote(
                order_id=int(order.id),
                revision_number=int(order.revisions),
                notes=(notes or "").strip() or None,
                requested_by=int(user.id),
                requested_at=now,
            )
        )
        latest = Delivery.query.filter_by(order_id=int(order.id)).order_by(Delivery.revision_number.desc()).first()
        if latest is not None:
            latest.status = "revision_requested"
            latest.reviewed_at = now
        apply_transition(order, OrderStatus.IN_REVISION, actor=actor, actor_id=user.id, reason="revision_requested", now=now)

    notify(
        order.seller_id,
        "revision_requested",
        subject_type="order",
        subject_id=order.id,
        message=(notes or "The buyer requested a revision")[:500],
    )
    return {
        "order": order,
        "revisions_used": int(order.revisions),
        "revisions_left": order.revisions_left,
    }


def _settle_completion(order: Order, *, actor: str, actor_id: int | None) -> None:
    """Capture, split and release inside the caller's transaction.

    A capture failure raises before anything is written.
    """
    provider = payments()
    capture = gateway_call("capture", provider.capture, order.payment_ref, public_message="Payment capture failed")
    now = datetime.utcnow()
    fee_bps = get_settings().platform_fee_bps
    platform_fee, payout = split_platform_fee(order.amount_minor, fee_bps)

    order.payment_captured = True
    order.captured_at = order.captured_at or now
    order.fee_bps = fee_bps
    order.platform_fee_minor = platform_fee
    order.seller_payout_minor = payout
    order.payment_released = True
    order.released_at = now
    apply_transition(
        order,
        OrderStatus.COMPLETED,
        actor=actor,
        actor_id=actor_id,
        reason="completed",
        metadata={"already_captured": capture.already_captured, "captured_minor": capture.captured_amount_minor},
        now=now,
    )
    latest = Delivery.query.filter_by(order_id=int(order.id)).order_by(Delivery.revision_number.desc()).first()
    if latest is not None:
        latest.status = "completed"
        latest.reviewed_at = now
    record_audit_event(
        "earnings_credited",
        actor_user_id=actor_id,
        subject_type="order",
        subject_id=order.id,
        amount_minor=payout,
        idempotency_key=f"earnings_credited:order:{int(order.id)}",
        metadata={"seller_id": int(order.seller_id), "platform_fee_minor": platform_fee, "fee_bps": fee_bps},
    )


def complete_order(order_id: int, user: User) -> Order:
    with atomic():
        order = lock_row(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        actor = actor_for(order, user)
        check_transition(order, OrderStatus.COMPLETED, actor)
        if order.payment_released:
            raise StateConflictError("Payment already released", current_status=order.status, allowed_next_statuses=[])
        _settle_completion(order, actor=actor, actor_id=user.id)

    notify(
        order.seller_id,
        "order_completed",
        subject_type="order",
        subject_id=order.id,
        amount_minor=order.seller_payout_minor,
        message="Order completed; your earnings are available",
    )
    notify(order.buyer_id, "order_completed", subject_type="order", subject_id=order.id, amount_minor=order.amount_minor, message="Thanks! Your order is complete")
    return order


def return_funds(order: Order) -> None:
    """Void the hold, or refund the capture, for the full order amount."""
    if not order.payment_ref:
        return
    provider = payments()
    if order.payment_captured:
        result = gateway_call("refund", provider.refund, order.payment_ref, public_message="Refund failed")
        order.refund_ref = result.refund_reference
        order.refunded = True
        order.refunded_at = datetime.utcnow()
        return
    gateway_call("cancel_authorization", provider.cancel_authorization, order.payment_ref, public_message="Could not release payment hold")
    if order.status != OrderStatus.PENDING_PAYMENT:
        order.refunded = True
        order.refunded_at = datetime.utcnow()


def cancel_locked(
    order: Order,
    *,
    listing: Listing | None,
    offer: Offer | None,
    actor: str,
    actor_id: int | None,
    reason: str = "",
    check: bool = True,
) -> None:
    """Cancel an order whose graph the caller has already locked.

    Gateway work runs first so a processor failure leaves nothing written.
    """
    if check:
        check_transition(order, OrderStatus.CANCELLED, actor)
    return_funds(order)
    order.cancelled_by = actor
    order.cancellation_reason = (reason or "")[:240] or None
    apply_transition(order, OrderStatus.CANCELLED, actor=actor, actor_id=actor_id, reason=reason or "cancelled")
    if listing is not None:
        listing_service.release_listing(listing, order_id=order.id)
    if offer is not None and offer.status in ("pending_payment", "paid", "accepted"):
        offer.status = "cancelled"
        offer.cancelled_at = datetime.utcnow()
    if order.refunded:
        record_audit_event(
            "order_refunded",
            actor_user_id=actor_id,
            subject_type="order",
            subject_id=order.id,
            amount_minor=order.amount_minor,
            idempotency_key=f"order_refunded:{int(order.id)}",
            metadata={"captured": bool(order.payment_captured), "reason": reason or ""},
        )


def cancel_order(order_id: int, user: User, *, reason: str = "") -> Order:
    with atomic():
        listing, offer, order = lock_order_graph(order_id)
        actor = actor_for(order, user)
        cancel_locked(order, listing=listing, offer=offer, actor=actor, actor_id=user.id, reason=reason)

    counterpart = order.seller_id if actor == Actor.BUYER else order.buyer_id
    notify(
        counterpart,
        "order_cancelled",
        subject_type="order",
        subject_id=order.id,
        amount_minor=order.amount_minor,
        message=f"Order cancelled by the {actor}",
    )
    return order


def open_dispute(order_id: int, user: User, *, reason: str = "") -> Order:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A dispute needs a reason")
    with atomic():
        order = lock_row(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        actor = actor_for(order, user)
        check_transition(order, OrderStatus.DISPUTED, actor)
        order.dispute_reason = reason[:240]
        apply_transition(order, OrderStatus.DISPUTED, actor=actor, actor_id=user.id, reason=reason)

    counterpart = order.seller_id if actor == Actor.BUYER else order.buyer_id
    notify(counterpart, "order_disputed", subject_type="order", subject_id=order.id, message=reason[:500])
    return order


def resolve_dispute(order_id: int, admin: User, *, outcome: str, note: str = "") -> Order:
    """Admin settles a dispute by releasing funds to the seller or refunding the buyer."""
    outcome = (outcome or "").strip().lower()
    if outcome not in ("release", "refund"):
        raise ValidationError("outcome must be 'release' or 'refund'")
    if admin is None or not admin.is_admin:
        raise AuthorizationError("Only an admin can resolve disputes")
    with atomic():
        listing, offer, order = lock_order_graph(order_id)
        if outcome == "release":
            check_transition(order, OrderStatus.COMPLETED, Actor.ADMIN)
            # The seller never accepted, so the listing was never sold to this order.
            if order.confirmed_at is None:
                raise StateConflictError(
                    "Order was never accepted by the seller; resolve with a refund",
                    current_status=order.status,
                    allowed_next_statuses=[OrderStatus.CANCELLED],
                )
            _settle_completion(order, actor=Actor.ADMIN, actor_id=admin.id)
        else:
            cancel_locked(order, listing=listing, offer=offer, actor=Actor.ADMIN, actor_id=admin.id, reason=note or "dispute_refund")

    for party in (order.buyer_id, order.seller_id):
        notify(party, "dispute_resolved", subject_type="order", subject_id=order.id, amount_minor=order.amount_minor, message=f"Dispute resolved: {outcome}")
    return order
