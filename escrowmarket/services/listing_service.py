from __future__ import annotations

import logging
from datetime import datetime, timedelta

from escrowmarket.config import get_settings
from escrowmarket.errors import NotFoundError, StateConflictError, ValidationError
from escrowmarket.extensions import db
from escrowmarket.models import Listing
from escrowmarket.utils.money import money_major_to_minor, parse_major_amount
from escrowmarket.utils.transactions import atomic, lock_row

logger = logging.getLogger(__name__)


class ListingStatus:
    DRAFT = "draft"
    ACTIVE = "active"
    RESERVED = "reserved"
    SOLD = "sold"
    INACTIVE = "inactive"

    ALL = {DRAFT, ACTIVE, RESERVED, SOLD, INACTIVE}
    # Statuses a seller may set by hand; reserved/sold only come from purchases.
    SELLER_SETTABLE = {DRAFT, ACTIVE, INACTIVE}


AVAILABILITY_MODES = ("single", "repeatable")


def effective_listing_status(listing: Listing, now: datetime | None = None) -> str:
    """Status with reservation expiry applied; a lapsed reservation reads as active."""
    status = listing.status or ListingStatus.ACTIVE
    if status != ListingStatus.RESERVED:
        return status
    now = now or datetime.utcnow()
    if listing.reserved_until is None or listing.reserved_until <= now:
        return ListingStatus.ACTIVE
    return ListingStatus.RESERVED


def is_available(listing: Listing, now: datetime | None = None) -> bool:
    return effective_listing_status(listing, now) == ListingStatus.ACTIVE


def normalize_expired_reservation(listing: Listing, now: datetime | None = None) -> bool:
    """Persist the lazy release on a locked row; True when the row changed."""
    if listing.status == ListingStatus.RESERVED and effective_listing_status(listing, now) == ListingStatus.ACTIVE:
        _clear_reservation(listing, ListingStatus.ACTIVE)
        return True
    return False


def _clear_reservation(listing: Listing, status: str) -> None:
    listing.status = status
    listing.reserved_until = None
    listing.holder_order_id = None


def reserve_listing(listing: Listing, *, order_id: int, now: datetime | None = None) -> None:
    """Hold a single-unit listing for an in-flight order. Caller holds the row lock."""
    if not listing.is_single_unit:
        return
    now = now or datetime.utcnow()
    current = effective_listing_status(listing, now)
    if current == ListingStatus.RESERVED and listing.holder_order_id == order_id:
        return
    if current != ListingStatus.ACTIVE:
        raise StateConflictError(
            "Listing is not available",
            details={"listing_id": int(listing.id), "listing_status": current},
        )
    listing.status = ListingStatus.RESERVED
    listing.reserved_until = now + timedelta(hours=get_settings().reservation_hours)
    listing.holder_order_id = int(order_id)


def mark_listing_sold(listing: Listing, *, order_id: int, now: datetime | None = None) -> None:
    """Sell a single-unit listing to ``order_id``. Caller holds the row lock."""
    if not listing.is_single_unit:
        return
    current = effective_listing_status(listing, now)
    if current == ListingStatus.SOLD:
        raise StateConflictError("Listing already sold", details={"listing_id": int(listing.id), "listing_status": current})
    if current == ListingStatus.RESERVED and listing.holder_order_id not in (None, int(order_id)):
        raise StateConflictError(
            "Listing is reserved by another order",
            details={"listing_id": int(listing.id), "listing_status": current},
        )
    if current not in (ListingStatus.ACTIVE, ListingStatus.RESERVED):
        raise StateConflictError("Listing is not available", details={"listing_id": int(listing.id), "listing_status": current})
    listing.status = ListingStatus.SOLD
    listing.reserved_until = None
    listing.holder_order_id = int(order_id)


def release_listing(listing: Listing, *, order_id: int) -> bool:
    """Return a listing held by ``order_id`` (reserved or sold to it) to active.

    A listing held by a different order is left alone, so a stale
    cancellation cannot free a listing another buyer now holds.
    """
    if listing.status not in (ListingStatus.RESERVED, ListingStatus.SOLD):
        return False
    if listing.holder_order_id is not None and int(listing.holder_order_id) != int(order_id):
        return False
    if listing.status == ListingStatus.SOLD and listing.holder_order_id is None:
        return False
    _clear_reservation(listing, ListingStatus.ACTIVE)
    return True


def get_listing(listing_id: int) -> Listing:
    listing = db.session.get(Listing, int(listing_id)) if listing_id else None
    if listing is None:
        raise NotFoundError("Listing not found")
    return listing


def create_listing(seller_id: int, *, title: str, price, availability_mode: str = "single", status: str = "active", description: str = "") -> Listing:
    title = (title or "").strip()
    if not title:
        raise ValidationError("title is required")
    parsed = parse_major_amount(price)
    if parsed is None or parsed <= 0:
        raise ValidationError("price must be a positive amount")
    mode = (availability_mode or "single").strip().lower()
    if mode not in AVAILABILITY_MODES:
        raise ValidationError(f"availability_mode must be one of {', '.join(AVAILABILITY_MODES)}")
    status = (status or ListingStatus.ACTIVE).strip().lower()
    if status not in (ListingStatus.DRAFT, ListingStatus.ACTIVE):
        raise ValidationError("new listings start as draft or active")
    with atomic():
        listing = Listing(
            seller_id=int(seller_id),
            title=title[:160],
            description=(description or "").strip() or None,
            price_minor=money_major_to_minor(parsed),
            currency=get_settings().currency,
            availability_mode=mode,
            status=status,
        )
        db.session.add(listing)
    logger.info("listing_created listing_id=%s seller_id=%s", listing.id, seller_id)
    return listing


def set_listing_status(listing_id: int, seller_id: int, target: str) -> Listing:
    target = (target or "").strip().lower()
    if target not in ListingStatus.SELLER_SETTABLE:
        raise ValidationError(f"status must be one of {', '.join(sorted(ListingStatus.SELLER_SETTABLE))}")
    with atomic():
        listing = lock_row(Listing, listing_id)
        if listing is None or int(listing.seller_id) != int(seller_id):
            raise NotFoundError("Listing not found")
        normalize_expired_reservation(listing)
        if listing.status in (ListingStatus.RESERVED, ListingStatus.SOLD):
            raise StateConflictError(
                "Listing is committed to a purchase",
                details={"listing_id": int(listing.id), "listing_status": listing.status},
            )
        listing.status = target
    return listing


def sweep_expired_reservations(*, limit: int = 500, now: datetime | None = None) -> dict:
    """Persist lazy expiry for lapsed reservations. Reads never depend on this running."""
    now = now or datetime.utcnow()
    candidates = (
        Listing.query.filter(Listing.status == ListingStatus.RESERVED, Listing.reserved_until <= now)
        .order_by(Listing.id.asc())
        .limit(int(limit))
        .all()
    )
    released = 0
    for candidate in candidates:
        with atomic():
            listing = lock_row(Listing, candidate.id)
            if listing is not None and normalize_expired_reservation(listing, now):
                released += 1
    if released:
        logger.info("reservation_sweep released=%s", released)
    return {"ok": True, "scanned": len(candidates), "released": released}
