from __future__ import annotations

from datetime import datetime

from flask import g, jsonify, request

from escrowmarket.errors import ValidationError
from escrowmarket.extensions import db
from escrowmarket.models import User
from escrowmarket.utils.idempotency import lookup_response, store_response
from escrowmarket.utils.jwt_utils import decode_token, get_bearer_token
from escrowmarket.utils.money import money_major_to_minor, parse_major_amount
from escrowmarket.utils.observability import get_request_id, note_error_code


def current_user() -> User | None:
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        uid = int(payload.get("sub"))
    except Exception:
        return None
    user = db.session.get(User, uid)
    if user is not None:
        g.auth_user_id = int(user.id)
    return user


def unauthorized():
    note_error_code("UNAUTHORIZED")
    return jsonify({"ok": False, "error": "UNAUTHORIZED", "message": "Unauthorized", "status": 401, "trace_id": get_request_id()}), 401


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def amount_minor_from(payload: dict, field: str = "amount") -> int:
    """Accept ``amount`` in major units or ``amount_minor``; both end up as minor units."""
    if payload.get(f"{field}_minor") is not None:
        try:
            value = int(payload.get(f"{field}_minor"))
        except (TypeError, ValueError):
            raise ValidationError(f"{field}_minor must be an integer")
        if value <= 0:
            raise ValidationError(f"{field}_minor must be positive")
        return value
    parsed = parse_major_amount(payload.get(field))
    if parsed is None or parsed <= 0:
        raise ValidationError(f"{field} must be a positive number")
    return money_major_to_minor(parsed)


def optional_datetime(payload: dict, field: str) -> datetime | None:
    raw = (payload.get(field) or "")
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date")


def idempotent(user_id: int, scope: str, payload: dict, handler):
    """Run ``handler() -> (body, status)`` once per Idempotency-Key; replays return the stored response."""
    idem = lookup_response(user_id, scope, payload)
    if idem is not None and idem[0] in ("hit", "conflict"):
        return jsonify(idem[1]), idem[2]
    body, status = handler()
    if idem is not None and idem[0] == "miss" and int(status) < 500:
        store_response(idem[1], body, status)
    return jsonify(body), status
