from __future__ import annotations

import logging
from datetime import datetime, timedelta

from escrowmarket.config import get_settings
from escrowmarket.errors import (
    AuthorizationError,
    NotFoundError,
    PaymentGatewayError,
    StateConflictError,
    ValidationError,
)
from escrowmarket.extensions import db
from escrowmarket.models import Listing, Offer, Order, User
from escrowmarket.services import listing_service
from escrowmarket.services.notification_service import notify, open_order_chat
from escrowmarket.services.order_service import Actor, OrderStatus, cancel_locked, create_order
from escrowmarket.services.payment_gateway import gateway_call, payments
from escrowmarket.utils.events import record_audit_event
from escrowmarket.utils.transactions import atomic, lock_row, run_compensation

logger = logging.getLogger(__name__)


class OfferStatus:
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    OPEN = {PENDING_PAYMENT, PAID}
    TERMINAL = {ACCEPTED, REJECTED, CANCELLED}


OFFER_ACTOR_TRANSITIONS = {
    Actor.SELLER: {
        (OfferStatus.PAID, OfferStatus.ACCEPTED),
        (OfferStatus.PAID, OfferStatus.REJECTED),
    },
    Actor.BUYER: {
        (OfferStatus.PENDING_PAYMENT, OfferStatus.CANCELLED),
        (OfferStatus.PAID, OfferStatus.CANCELLED),
    },
}

CASCADE_REJECTION_REASON = "Another offer was accepted"


def _allowed_offer_targets(actor: str, current: str) -> list[str]:
    return sorted(t for (s, t) in OFFER_ACTOR_TRANSITIONS.get(actor, set()) if s == current)


def check_offer_transition(offer: Offer, target: str, actor: str) -> None:
    current = offer.status or OfferStatus.PENDING_PAYMENT
    allowed = _allowed_offer_targets(actor, current)
    if target in allowed:
        return
    permitted_for_someone = any((current, target) in pairs for pairs in OFFER_ACTOR_TRANSITIONS.values())
    if permitted_for_someone:
        raise AuthorizationError(
            f"{actor} may not move offer from {current} to {target}",
            current_status=current,
            allowed_next_statuses=allowed,
        )
    message = f"Offer is already {current}" if current in OfferStatus.TERMINAL else f"Offer cannot move from {current} to {target}"
    raise StateConflictError(message, current_status=current, allowed_next_statuses=allowed)


def offer_actor(offer: Offer, user: User) -> str:
    if user is not None and int(user.id) == int(offer.buyer_id):
        return Actor.BUYER
    if user is not None and int(user.id) == int(offer.seller_id):
        return Actor.SELLER
    raise NotFoundError("Offer not found")


def get_offer_for(offer_id: int, user: User) -> Offer:
    offer = db.session.get(Offer, int(offer_id)) if offer_id else None
    if offer is None:
        raise NotFoundError("Offer not found")
    offer_actor(offer, user)
    return offer


def list_offers_for_buyer(buyer: User, *, limit: int = 100) -> list[Offer]:
    return (
        Offer.query.filter_by(buyer_id=int(buyer.id))
        .order_by(Offer.created_at.desc(), Offer.id.desc())
        .limit(int(limit))
        .all()
    )


def list_offers_for_seller(seller: User, *, status: str | None = None, limit: int = 100) -> list[Offer]:
    q = Offer.query.filter_by(seller_id=int(seller.id))
    if status:
        q = q.filter_by(status=status)
    return q.order_by(Offer.created_at.desc(), Offer.id.desc()).limit(int(limit)).all()


def _open_offer_for(buyer_id: int, listing_id: int) -> Offer | None:
    return Offer.query.filter(
        Offer.buyer_id == int(buyer_id),
        Offer.listing_id == int(listing_id),
        Offer.status.in_(tuple(OfferStatus.OPEN)),
    ).first()


def _assert_can_buy(listing: Listing, buyer: User) -> None:
    if int(listing.seller_id) == int(buyer.id):
        raise ValidationError("You cannot buy from your own listing")
    current = listing_service.effective_listing_status(listing)
    if current != listing_service.ListingStatus.ACTIVE:
        raise StateConflictError(
            "Listing is not available",
            details={"listing_id": int(listing.id), "listing_status": current},
        )


def make_offer(
    buyer: User,
    listing_id: int,
    amount_minor: int,
    message: str = "",
    *,
    requirements: str | None = None,
    expected_delivery: datetime | None = None,
    idempotency_key: str | None = None,
) -> Offer:
    """Authorize the offer amount and record the offer as pending_payment.

    The client completes payment confirmation with the returned client secret,
    then calls ``confirm_offer_payment``.
    """
    settings = get_settings()
    if int(amount_minor or 0) < settings.min_offer_amount_minor:
        raise ValidationError(
            "Offer amount is below the minimum payable amount",
            details={"min_amount_minor": settings.min_offer_amount_minor},
        )
    listing = listing_service.get_listing(listing_id)
    _assert_can_buy(listing, buyer)
    existing = _open_offer_for(buyer.id, listing.id)
    if existing is not None:
        raise StateConflictError(
            "You already have an open offer on this listing",
            details={"existing_offer_id": int(existing.id), "existing_offer_status": existing.status},
        )

    provider = payments()
    auth = gateway_call(
        "authorize",
        provider.authorize,
        amount_minor=int(amount_minor),
        currency=settings.currency,
        metadata={"listing_id": listing.id, "buyer_id": buyer.id, "seller_id": listing.seller_id, "type": "offer"},
        idempotency_key=f"offer:{buyer.id}:{listing.id}:{idempotency_key}" if idempotency_key else None,
        public_message="Could not authorize payment",
    )

    now = datetime.utcnow()
    try:
        with atomic():
            listing = lock_row(Listing, listing.id)
            _assert_can_buy(listing, buyer)
            existing = _open_offer_for(buyer.id, listing.id)
            if existing is not None:
                raise StateConflictError(
                    "You already have an open offer on this listing",
                    details={"existing_offer_id": int(existing.id), "existing_offer_status": existing.status},
                )
            offer = Offer(
                buyer_id=int(buyer.id),
                seller_id=int(listing.seller_id),
                listing_id=int(listing.id),
                amount_minor=int(amount_minor),
                currency=settings.currency,
                message=(message or "").strip() or None,
                requirements=(requirements or "").strip() or None,
                expected_delivery=expected_delivery,
                payment_ref=auth.reference,
                client_secret=auth.client_secret,
                status=OfferStatus.PENDING_PAYMENT,
                expires_at=now + timedelta(minutes=settings.pending_payment_offer_minutes),
            )
            db.session.add(offer)
    except Exception:
        run_compensation("offer_authorization_void", provider.cancel_authorization, auth.reference)
        raise
    logger.info("offer_created offer_id=%s listing_id=%s buyer_id=%s", offer.id, listing.id, buyer.id)
    return offer


def _confirmed_result(offer: Offer, *, already_confirmed: bool) -> dict:
    order = db.session.get(Order, int(offer.order_id)) if offer.order_id else None
    chat_ref = open_order_chat(order) if order is not None else None
    return {"offer": offer, "order": order, "chat_channel_ref": chat_ref, "already_confirmed": already_confirmed}


def confirm_offer_payment(offer_id: int, payment_ref: str, *, user: User | None = None) -> dict:
    """Verify the authorization and open the order.

    Idempotent: confirming an offer that is already paid returns the existing
    order and chat reference without another gateway call.
    """
    offer = db.session.get(Offer, int(offer_id)) if offer_id else None
    if offer is None:
        raise NotFoundError("Offer not found")
    if user is not None and offer_actor(offer, user) != Actor.BUYER:
        raise AuthorizationError("Only the buyer confirms payment", current_status=offer.status, allowed_next_statuses=[])
    if (payment_ref or "").strip() != (offer.payment_ref or ""):
        raise ValidationError("payment_ref does not match this offer")
    if offer.status in (OfferStatus.PAID, OfferStatus.ACCEPTED) and offer.order_id:
        return _confirmed_result(offer, already_confirmed=True)
    if offer.status != OfferStatus.PENDING_PAYMENT:
        raise StateConflictError(f"Offer is already {offer.status}", current_status=offer.status, allowed_next_statuses=[])

    provider = payments()
    status = gateway_call("retrieve", provider.retrieve, offer.payment_ref, public_message="Could not verify payment")
    if not status.authorized:
        raise PaymentGatewayError(
            "Payment has not been authorized",
            retryable=status.requires_action,
            requires_action=status.requires_action,
            details={"payment_status": status.status},
        )

    settings = get_settings()
    with atomic():
        listing = lock_row(Listing, offer.listing_id)
        offer = lock_row(Offer, offer.id)
        raced = offer.status in (OfferStatus.PAID, OfferStatus.ACCEPTED) and bool(offer.order_id)
        if not raced:
            order = _open_order_for_paid_offer(offer, listing, settings)
    if raced:
        return _confirmed_result(offer, already_confirmed=True)

    logger.info("offer_paid offer_id=%s order_id=%s", offer.id, order.id)
    result = _confirmed_result(offer, already_confirmed=False)
    notify(
        offer.seller_id,
        "offer_paid",
        subject_type="offer",
        subject_id=offer.id,
        amount_minor=offer.amount_minor,
        message="You received a paid offer",
    )
    return result


def _open_order_for_paid_offer(offer: Offer, listing: Listing | None, settings) -> Order:
    """Create the paid order and hold the listing. Caller holds listing and offer locks."""
    if offer.status != OfferStatus.PENDING_PAYMENT:
        raise StateConflictError(f"Offer is already {offer.status}", current_status=offer.status, allowed_next_statuses=[])
    if listing is None:
        raise NotFoundError("Listing not found")
    current = listing_service.effective_listing_status(listing)
    if current != listing_service.ListingStatus.ACTIVE:
        raise StateConflictError(
            "Listing is no longer available",
            details={"listing_id": int(listing.id), "listing_status": current},
        )
    order = create_order(
        buyer_id=offer.buyer_id,
        seller_id=offer.seller_id,
        listing_id=offer.listing_id,
        offer_id=offer.id,
        amount_minor=offer.amount_minor,
        payment_ref=offer.payment_ref,
        status=OrderStatus.PAID,
        requirements=offer.requirements,
    )
    now = datetime.utcnow()
    offer.status = OfferStatus.PAID
    offer.paid_at = now
    offer.order_id = int(order.id)
    offer.last_payment_error = None
    offer.expires_at = now + timedelta(days=settings.offer_expiry_days)
    listing_service.reserve_listing(listing, order_id=order.id, now=now)
    return order


def _lock_offer_graph(offer_id: int) -> tuple[Listing, Offer]:
    snapshot = db.session.get(Offer, int(offer_id)) if offer_id else None
    if snapshot is None:
        raise NotFoundError("Offer not found")
    listing = lock_row(Listing, snapshot.listing_id)
    offer = lock_row(Offer, snapshot.id)
    return listing, offer


def _reject_sibling(sibling: Offer, provider, *, reason: str) -> bool:
    """Reject an open offer that lost the listing; its hold is voided or its order refunded.

    Returns False, leaving the offer alone, when its order already paid out.
    """
    now = datetime.utcnow()
    if sibling.status == OfferStatus.PAID and sibling.order_id:
        order = lock_row(Order, sibling.order_id)
        if order is not None and (order.payment_released or order.status == OrderStatus.COMPLETED):
            return False
        if order is not None and order.status not in OrderStatus.TERMINAL:
            cancel_locked(order, listing=None, offer=None, actor=Actor.SYSTEM, actor_id=None, reason=reason, check=False)
    elif sibling.payment_ref:
        gateway_call("cancel_authorization", provider.cancel_authorization, sibling.payment_ref, public_message="Could not release payment hold")
    sibling.status = OfferStatus.REJECTED
    sibling.rejection_reason = reason
    sibling.rejected_at = now
    return True


def accept_offer(offer_id: int, seller: User) -> dict:
    with atomic():
        listing, offer = _lock_offer_graph(offer_id)
        actor = offer_actor(offer, seller)
        check_offer_transition(offer, OfferStatus.ACCEPTED, actor)
        # Lock the other open offers before any order row.
        siblings = (
            Offer.query.filter(
                Offer.listing_id == int(offer.listing_id),
                Offer.id != int(offer.id),
                Offer.status.in_(tuple(OfferStatus.OPEN)),
            )
            .order_by(Offer.id.asc())
            .with_for_update()
            .populate_existing()
            .all()
        )
        order = lock_row(Order, offer.order_id)
        if order is None:
            raise StateConflictError("Offer has no order", current_status=offer.status, allowed_next_statuses=[])

        now = datetime.utcnow()
        listing_service.mark_listing_sold(listing, order_id=order.id, now=now)
        offer.status = OfferStatus.ACCEPTED
        offer.accepted_at = now
        order.confirmed_at = now

        cascade = listing.is_single_unit
        rejected = []
        if cascade:
            provider = payments()
            for sibling in siblings:
                if _reject_sibling(sibling, provider, reason=CASCADE_REJECTION_REASON):
                    rejected.append(sibling)
        record_audit_event(
            "offer_accepted",
            actor_user_id=seller.id,
            subject_type="offer",
            subject_id=offer.id,
            amount_minor=offer.amount_minor,
            metadata={"order_id": int(order.id), "auto_rejected": [int(s.id) for s in rejected]},
        )

    logger.info("offer_accepted offer_id=%s order_id=%s auto_rejected=%s", offer.id, order.id, len(rejected))
    notify(
        offer.buyer_id,
        "offer_accepted",
        subject_type="offer",
        subject_id=offer.id,
        amount_minor=offer.amount_minor,
        message="Your offer was accepted",
    )
    for sibling in rejected:
        notify(
            sibling.buyer_id,
            "offer_rejected",
            subject_type="offer",
            subject_id=sibling.id,
            amount_minor=sibling.amount_minor,
            message=CASCADE_REJECTION_REASON,
        )
    return {"offer": offer, "order": order, "auto_rejected_offer_ids": [int(s.id) for s in rejected]}


def reject_offer(offer_id: int, seller: User, *, reason: str = "") -> Offer:
    reason = (reason or "").strip()[:240] or "Rejected by seller"
    with atomic():
        listing, offer = _lock_offer_graph(offer_id)
        actor = offer_actor(offer, seller)
        check_offer_transition(offer, OfferStatus.REJECTED, actor)
        order = lock_row(Order, offer.order_id) if offer.order_id else None
        if order is not None and order.status not in OrderStatus.TERMINAL:
            cancel_locked(order, listing=listing, offer=None, actor=Actor.SELLER, actor_id=seller.id, reason=reason)
        elif offer.payment_ref:
            gateway_call("cancel_authorization", payments().cancel_authorization, offer.payment_ref, public_message="Could not release payment hold")
        offer.status = OfferStatus.REJECTED
        offer.rejection_reason = reason
        offer.rejected_at = datetime.utcnow()

    notify(
        offer.buyer_id,
        "offer_rejected",
        subject_type="offer",
        subject_id=offer.id,
        amount_minor=offer.amount_minor,
        message=reason,
    )
    return offer


def cancel_offer(offer_id: int, buyer: User) -> Offer:
    with atomic():
        listing, offer = _lock_offer_graph(offer_id)
        actor = offer_actor(offer, buyer)
        check_offer_transition(offer, OfferStatus.CANCELLED, actor)
        order = lock_row(Order, offer.order_id) if offer.order_id else None
        if order is not None and order.status not in OrderStatus.TERMINAL:
            cancel_locked(order, listing=listing, offer=offer, actor=Actor.BUYER, actor_id=buyer.id, reason="offer_cancelled")
        else:
            if offer.payment_ref:
                gateway_call("cancel_authorization", payments().cancel_authorization, offer.payment_ref, public_message="Could not release payment hold")
            offer.status = OfferStatus.CANCELLED
            offer.cancelled_at = datetime.utcnow()

    notify(offer.seller_id, "offer_cancelled", subject_type="offer", subject_id=offer.id, amount_minor=offer.amount_minor, message="A buyer withdrew their offer")
    return offer


def create_direct_purchase(buyer: User, listing_id: int, *, requirements: str | None = None, idempotency_key: str | None = None) -> dict:
    """Authorize the listing price and open a pending_payment order holding the listing."""
    settings = get_settings()
    listing = listing_service.get_listing(listing_id)
    _assert_can_buy(listing, buyer)
    if int(listing.price_minor or 0) < settings.min_offer_amount_minor:
        raise ValidationError("Listing price is below the minimum payable amount")

    provider = payments()
    auth = gateway_call(
        "authorize",
        provider.authorize,
        amount_minor=int(listing.price_minor),
        currency=settings.currency,
        metadata={"listing_id": listing.id, "buyer_id": buyer.id, "seller_id": listing.seller_id, "type": "direct_purchase"},
        idempotency_key=f"direct:{buyer.id}:{listing.id}:{idempotency_key}" if idempotency_key else None,
        public_message="Could not authorize payment",
    )
    try:
        with atomic():
            listing = lock_row(Listing, listing.id)
            _assert_can_buy(listing, buyer)
            order = create_order(
                buyer_id=buyer.id,
                seller_id=listing.seller_id,
                listing_id=listing.id,
                amount_minor=listing.price_minor,
                payment_ref=auth.reference,
                status=OrderStatus.PENDING_PAYMENT,
                requirements=(requirements or "").strip() or None,
            )
            listing_service.reserve_listing(listing, order_id=order.id)
    except Exception:
        run_compensation("direct_purchase_authorization_void", provider.cancel_authorization, auth.reference)
        raise

    logger.info("direct_purchase_created order_id=%s listing_id=%s buyer_id=%s", order.id, listing.id, buyer.id)
    chat_ref = open_order_chat(order)
    return {"order": order, "client_secret": auth.client_secret, "chat_channel_ref": chat_ref}


def expire_stale_offers(*, now: datetime | None = None, limit: int = 200) -> dict:
    """Cancel unpaid offers past their payment window and reject paid offers the seller never answered."""
    now = now or datetime.utcnow()
    stale = (
        Offer.query.filter(Offer.status.in_(tuple(OfferStatus.OPEN)), Offer.expires_at <= now)
        .order_by(Offer.id.asc())
        .limit(int(limit))
        .all()
    )
    expired = 0
    failed = 0
    for candidate in stale:
        try:
            with atomic():
                listing, offer = _lock_offer_graph(candidate.id)
                if offer.status not in OfferStatus.OPEN or offer.expires_at is None or offer.expires_at > now:
                    continue
                provider = payments()
                if offer.status == OfferStatus.PAID:
                    order = lock_row(Order, offer.order_id) if offer.order_id else None
                    if order is not None and order.status not in OrderStatus.TERMINAL:
                        cancel_locked(order, listing=listing, offer=None, actor=Actor.SYSTEM, actor_id=None, reason="offer_expired", check=False)
                    offer.status = OfferStatus.REJECTED
                    offer.rejection_reason = "Offer expired"
                    offer.rejected_at = now
                else:
                    if offer.payment_ref:
                        gateway_call("cancel_authorization", provider.cancel_authorization, offer.payment_ref)
                    offer.status = OfferStatus.CANCELLED
                    offer.cancelled_at = now
                expired += 1
        except PaymentGatewayError:
            failed += 1
            logger.warning("offer_expiry_deferred offer_id=%s", candidate.id)
    return {"ok": True, "scanned": len(stale), "expired": expired, "failed": failed}
