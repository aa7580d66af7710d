from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError

from escrowmarket.extensions import db
from escrowmarket.models import AuditEvent
from escrowmarket.utils.observability import get_request_id

logger = logging.getLogger(__name__)


def _safe_value(value: Any):
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def record_audit_event(
    event_type: str,
    *,
    actor_user_id: int | None = None,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    amount_minor: int | None = None,
    severity: str = "INFO",
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> AuditEvent | None:
    """Best-effort audit writer.

    Runs inside a savepoint so a failed insert never poisons the caller's
    transaction; the row commits together with the caller's unit of work.
    Returns the existing row when ``idempotency_key`` was already recorded.
    """
    key = (idempotency_key or "").strip()[:180] or None
    try:
        if key:
            existing = AuditEvent.query.filter_by(idempotency_key=key).first()
            if existing:
                return existing
        event = AuditEvent(
            event_type=(event_type or "unknown").strip()[:80],
            actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
            subject_type=(subject_type or "").strip()[:40] or None,
            subject_id=str(subject_id)[:64] if subject_id is not None else None,
            amount_minor=int(amount_minor) if amount_minor is not None else None,
            request_id=get_request_id()[:80] or None,
            idempotency_key=key,
            severity=(severity or "INFO").strip().upper()[:16],
            metadata_json=json.dumps(_safe_value(metadata or {}), separators=(",", ":"))[:4000],
        )
        with db.session.begin_nested():
            db.session.add(event)
            db.session.flush()
        return event
    except IntegrityError:
        if key:
            return AuditEvent.query.filter_by(idempotency_key=key).first()
        return None
    except Exception:
        logger.exception("audit_event_write_failed event_type=%s", event_type)
        return None
