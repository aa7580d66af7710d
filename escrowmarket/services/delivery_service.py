from __future__ import annotations

import json
import logging
from datetime import datetime

from escrowmarket.errors import NotFoundError, ValidationError
from escrowmarket.extensions import db
from escrowmarket.models import Delivery, Order, RevisionNote, User
from escrowmarket.services.notification_service import notify
from escrowmarket.services.order_service import OrderStatus, actor_for, apply_transition, check_transition
from escrowmarket.utils.transactions import atomic, lock_row

logger = logging.getLogger(__name__)


def _clean_attachments(attachments) -> list[dict]:
    if not isinstance(attachments, list) or not attachments:
        raise ValidationError("At least one attachment is required")
    cleaned = []
    for idx, item in enumerate(attachments):
        if not isinstance(item, dict):
            raise ValidationError(f"attachments[{idx}] must be an object with name and url")
        name = str(item.get("name") or "").strip()
        url = str(item.get("url") or "").strip()
        if not name or not url:
            raise ValidationError(f"attachments[{idx}] needs both name and url")
        entry = {"name": name[:200], "url": url[:1000]}
        if item.get("size") is not None:
            try:
                entry["size"] = int(item.get("size"))
            except (TypeError, ValueError):
                raise ValidationError(f"attachments[{idx}].size must be an integer")
        if item.get("content_type"):
            entry["content_type"] = str(item.get("content_type"))[:100]
        cleaned.append(entry)
    return cleaned


def submit_delivery(order_id: int, seller: User, message: str, attachments, *, is_final: bool = False) -> Delivery:
    """Record the seller's work and move the order to delivered."""
    message = (message or "").strip()
    if not message:
        raise ValidationError("A delivery needs a message")
    files = _clean_attachments(attachments)

    with atomic():
        order = lock_row(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        actor = actor_for(order, seller)
        check_transition(order, OrderStatus.DELIVERED, actor)

        now = datetime.utcnow()
        revision_number = Delivery.query.filter_by(order_id=int(order.id)).count() + 1
        delivery = Delivery(
            order_id=int(order.id),
            seller_id=int(order.seller_id),
            revision_number=revision_number,
            message=message,
            attachments_json=json.dumps(files, separators=(",", ":")),
            is_final=bool(is_final),
            status="pending_review",
            created_at=now,
        )
        db.session.add(delivery)

        open_note = (
            RevisionNote.query.filter_by(order_id=int(order.id), completed_at=None)
            .order_by(RevisionNote.revision_number.desc())
            .first()
        )
        if open_note is not None:
            open_note.completed_at = now

        order.delivery_message = message
        order.set_delivery_files(files)
        apply_transition(
            order,
            OrderStatus.DELIVERED,
            actor=actor,
            actor_id=seller.id,
            reason="delivered",
            metadata={"revision_number": revision_number, "files": len(files)},
            now=now,
        )

    logger.info("delivery_submitted order_id=%s revision=%s", order.id, delivery.revision_number)
    notify(
        order.buyer_id,
        "order_delivered",
        subject_type="order",
        subject_id=order.id,
        message="Your order has been delivered. Review it and complete or request a revision.",
    )
    return delivery


def list_deliveries(order_id: int, user: User) -> list[Delivery]:
    order = db.session.get(Order, int(order_id)) if order_id else None
    if order is None:
        raise NotFoundError("Order not found")
    actor_for(order, user)
    return Delivery.query.filter_by(order_id=int(order.id)).order_by(Delivery.revision_number.asc()).all()
