from __future__ import annotations

from flask import Blueprint, jsonify

from escrowmarket.segments.common import amount_minor_from, current_user, idempotent, json_body, unauthorized
from escrowmarket.services import ledger_service

earnings_bp = Blueprint("earnings_bp", __name__, url_prefix="/api")


@earnings_bp.get("/earnings")
def earnings():
    u = current_user()
    if not u:
        return unauthorized()
    return jsonify({"ok": True, **ledger_service.earnings_summary(u.id)}), 200


@earnings_bp.get("/withdrawals")
def list_withdrawals():
    u = current_user()
    if not u:
        return unauthorized()
    rows = ledger_service.list_withdrawals(u.id)
    return jsonify({"ok": True, "items": [w.to_dict() for w in rows]}), 200


@earnings_bp.post("/withdrawals")
def request_withdrawal():
    u = current_user()
    if not u:
        return unauthorized()
    payload = json_body()

    def _run():
        withdrawal = ledger_service.request_withdrawal(
            u,
            amount_minor_from(payload),
            payment_method=payload.get("payment_method") or "gateway",
            destination=payload.get("destination"),
        )
        return {"ok": True, "withdrawal": withdrawal.to_dict()}, 201

    return idempotent(int(u.id), "withdrawals:create", payload, _run)


@earnings_bp.post("/withdrawals/<int:withdrawal_id>/cancel")
def cancel_withdrawal(withdrawal_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    withdrawal = ledger_service.cancel_withdrawal(u, withdrawal_id)
    return jsonify({"ok": True, "withdrawal": withdrawal.to_dict()}), 200
