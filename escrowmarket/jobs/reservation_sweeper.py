from __future__ import annotations

import logging
from datetime import datetime

from escrowmarket.extensions import db
from escrowmarket.services.listing_service import sweep_expired_reservations
from escrowmarket.services.offer_service import expire_stale_offers
from escrowmarket.utils.job_runs import record_job_run

logger = logging.getLogger(__name__)


def _now():
    return datetime.utcnow()


def run_reservation_sweep(*, limit: int = 500) -> dict:
    """Persist lapsed listing reservations as active.

    Readers already treat a lapsed reservation as active; this only keeps the
    stored rows honest for reporting and ad-hoc queries.
    """
    started_at = _now()
    try:
        result = sweep_expired_reservations(limit=limit, now=started_at)
    except Exception as e:
        db.session.rollback()
        logger.exception("reservation_sweep_failed")
        record_job_run(job_name="reservation_sweep", ok=False, started_at=started_at, error=str(e))
        return {"ok": False, "scanned": 0, "released": 0, "error": type(e).__name__, "ts": _now().isoformat()}
    record_job_run(job_name="reservation_sweep", ok=True, started_at=started_at, processed=result["released"])
    return {**result, "ts": _now().isoformat()}


def run_offer_expiry(*, limit: int = 200) -> dict:
    started_at = _now()
    try:
        result = expire_stale_offers(now=started_at, limit=limit)
    except Exception as e:
        db.session.rollback()
        logger.exception("offer_expiry_failed")
        record_job_run(job_name="offer_expiry", ok=False, started_at=started_at, error=str(e))
        return {"ok": False, "scanned": 0, "expired": 0, "failed": 0, "error": type(e).__name__, "ts": _now().isoformat()}
    record_job_run(
        job_name="offer_expiry",
        ok=result["failed"] == 0,
        started_at=started_at,
        processed=result["expired"],
        error=f"{result['failed']} deferred" if result["failed"] else None,
    )
    return {**result, "ts": _now().isoformat()}
