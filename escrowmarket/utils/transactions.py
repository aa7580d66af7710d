from __future__ import annotations

import logging
from contextlib import contextmanager

from escrowmarket.extensions import db

logger = logging.getLogger(__name__)


@contextmanager
def atomic():
    """One unit of work: commit when the block finishes, roll back on any error."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def lock_row(model, entity_id):
    """Load a row under ``SELECT ... FOR UPDATE``.

    Every read-modify-write of a listing, offer, order, or seller balance goes
    through here so concurrent requests on the same entity serialize. Lock
    order across entities is listing, offer, order.
    """
    if entity_id is None:
        return None
    try:
        entity_id = int(entity_id)
    except (TypeError, ValueError):
        return None
    return (
        db.session.query(model)
        .filter(model.id == entity_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )


def run_compensation(label: str, fn, *args, **kwargs) -> bool:
    """Undo an external side effect after the local transaction failed."""
    try:
        fn(*args, **kwargs)
        return True
    except Exception:
        logger.exception("compensation_failed step=%s", label)
        return False
