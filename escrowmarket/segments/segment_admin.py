from __future__ import annotations

from flask import Blueprint, jsonify

from escrowmarket.segments.common import current_user, json_body, unauthorized
from escrowmarket.services import ledger_service, order_service
from escrowmarket.utils.observability import get_request_id, note_error_code

admin_bp = Blueprint("admin_bp", __name__, url_prefix="/api/admin")


def _forbidden():
    note_error_code("FORBIDDEN")
    return jsonify({"ok": False, "error": "FORBIDDEN", "message": "Admin only", "status": 403, "trace_id": get_request_id()}), 403


@admin_bp.put("/orders/<int:order_id>/resolve-dispute")
def resolve_dispute(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    if not u.is_admin:
        return _forbidden()
    payload = json_body()
    order = order_service.resolve_dispute(order_id, u, outcome=payload.get("outcome") or "", note=payload.get("note") or "")
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@admin_bp.put("/withdrawals/<int:withdrawal_id>/status")
def settle_withdrawal(withdrawal_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    if not u.is_admin:
        return _forbidden()
    payload = json_body()
    withdrawal = ledger_service.admin_settle_withdrawal(withdrawal_id, u, payload.get("status") or "", reason=payload.get("reason") or "")
    return jsonify({"ok": True, "withdrawal": withdrawal.to_dict()}), 200
