from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

from flask import has_request_context, request

from escrowmarket.extensions import db
from escrowmarket.models import IdempotencyKey


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def _hash_request(scope: str, payload: Any) -> str:
    try:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    except Exception:
        canonical = str(payload)
    return hashlib.sha256(f"{scope}|{canonical}".encode("utf-8")).hexdigest()


def lookup_response(user_id: int | None, scope: str, payload: Any, *, idempotency_key: str | None = None):
    """Replay guard for client-retried POSTs.

    Returns None when the request carries no key, ``("hit", body, status)`` for
    a stored response, ``("conflict", body, 409)`` when the key was used with
    another payload, and ``("miss", row, 0)`` when the caller should execute
    and then call ``store_response``.
    """
    k = (idempotency_key or get_idempotency_key() or "").strip()[:128]
    if not k:
        return None

    req_hash = _hash_request(scope, payload)
    row = IdempotencyKey.query.filter_by(scope=scope, user_id=user_id, key=k).first()
    if row is not None:
        if row.request_hash != req_hash:
            return (
                "conflict",
                {
                    "ok": False,
                    "error": "IDEMPOTENCY_KEY_REUSE",
                    "message": "This Idempotency-Key was already used with a different request payload.",
                    "status": 409,
                },
                409,
            )
        if row.response_json:
            return ("hit", json.loads(row.response_json), int(row.status_code or 200))
        # Earlier attempt failed before a response was stored; run again.
        return ("miss", row, 0)

    row = IdempotencyKey(key=k, scope=scope, user_id=user_id, request_hash=req_hash)
    db.session.add(row)
    db.session.commit()
    return ("miss", row, 0)


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    row.response_json = json.dumps(response_json, separators=(",", ":"), default=str)
    row.status_code = int(status_code or 200)
    row.completed_at = datetime.utcnow()
    db.session.add(row)
    db.session.commit()
