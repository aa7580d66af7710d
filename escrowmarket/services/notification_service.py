from __future__ import annotations

import logging
from datetime import datetime

from escrowmarket.config import get_settings
from escrowmarket.extensions import db
from escrowmarket.integrations.chat.factory import build_chat_provider
from escrowmarket.integrations.common import IntegrationDisabledError
from escrowmarket.integrations.messaging.factory import build_messaging_provider
from escrowmarket.models import Notification, Order
from escrowmarket.utils.observability import get_request_id

logger = logging.getLogger(__name__)


def notify(
    user_id: int,
    event: str,
    *,
    subject_type: str,
    subject_id: int,
    amount_minor: int | None = None,
    message: str = "",
) -> Notification | None:
    """Queue an outbound notification after the triggering state change has committed.

    Fire-and-forget: any failure is logged and swallowed, never raised.
    """
    try:
        row = Notification(
            user_id=int(user_id),
            event=event[:48],
            subject_type=subject_type,
            subject_id=int(subject_id),
            amount_minor=int(amount_minor) if amount_minor is not None else None,
            message=message or event.replace("_", " "),
        )
        db.session.add(row)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("notification_queue_failed event=%s user_id=%s", event, user_id)
        return None

    if get_settings().notifications_queue:
        try:
            from escrowmarket.tasks.market_tasks import deliver_notification_task

            deliver_notification_task.delay(notification_id=int(row.id), trace_id=get_request_id())
            return row
        except Exception:
            logger.warning("notification_enqueue_failed id=%s falling_back=inline", row.id)
    deliver_notification(int(row.id))
    return row


def deliver_notification(notification_id: int) -> bool:
    """Send one queued notification; returns False when it should be retried."""
    row = db.session.get(Notification, int(notification_id))
    if row is None or row.status == "sent":
        return True
    try:
        provider = build_messaging_provider(get_settings())
    except IntegrationDisabledError:
        row.status = "failed"
        row.last_error = "notifications disabled"
        db.session.commit()
        return True
    except Exception:
        logger.exception("notification_provider_unavailable id=%s", notification_id)
        return False

    try:
        result = provider.send(
            user_id=int(row.user_id),
            event=row.event,
            message=row.message,
            meta={"subject_type": row.subject_type, "subject_id": row.subject_id, "amount_minor": row.amount_minor},
            reference=f"notification:{row.id}",
        )
    except Exception:
        logger.exception("notification_send_crashed id=%s", notification_id)
        result = None

    try:
        row.attempts = int(row.attempts or 0) + 1
        row.provider = provider.name
        if result is not None and result.ok:
            row.status = "sent"
            row.provider_ref = result.provider_ref or None
            row.sent_at = datetime.utcnow()
        else:
            row.status = "failed"
            row.last_error = ((result.message if result is not None else "send crashed") or "")[:240]
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("notification_status_update_failed id=%s", notification_id)
        return False
    return row.status == "sent"


def open_order_chat(order: Order) -> str | None:
    """Ensure the buyer/seller channel exists for an order; returns its reference."""
    if order.chat_channel_ref:
        return order.chat_channel_ref
    try:
        provider = build_chat_provider(get_settings())
        result = provider.open_channel(buyer_id=order.buyer_id, seller_id=order.seller_id, order_id=order.id)
    except Exception:
        logger.exception("chat_open_failed order_id=%s", order.id)
        return None
    if not result.ok:
        logger.warning("chat_open_rejected order_id=%s reason=%s", order.id, result.message)
        return None
    try:
        order.chat_channel_ref = result.channel_ref[:128]
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("chat_ref_store_failed order_id=%s", order.id)
        return None
    return order.chat_channel_ref
