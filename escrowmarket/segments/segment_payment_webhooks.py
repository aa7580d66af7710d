from __future__ import annotations

import base64

from flask import Blueprint, current_app, jsonify, request

from escrowmarket.config import get_settings
from escrowmarket.extensions import db
from escrowmarket.services.payment_webhook_service import process_payment_webhook
from escrowmarket.utils.observability import get_request_id

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/payments")
def payments_webhook():
    raw = request.get_data() or b""
    sig = request.headers.get("Stripe-Signature")

    if get_settings().payment_webhook_queue:
        try:
            from escrowmarket.tasks.market_tasks import process_payment_webhook_task

            process_payment_webhook_task.delay(
                raw_b64=base64.b64encode(raw).decode("ascii"),
                signature=sig,
                trace_id=get_request_id(),
            )
            return jsonify({"ok": True, "queued": True, "trace_id": get_request_id()}), 200
        except Exception:
            current_app.logger.warning("payment_webhook_enqueue_failed falling_back=inline")

    try:
        body, status = process_payment_webhook(raw, sig, source="api/webhooks/payments")
    except Exception:
        db.session.rollback()
        current_app.logger.exception("payment_webhook_route_failed")
        return jsonify({"ok": False, "error": "WEBHOOK_HANDLER_FAILED", "status": 500, "trace_id": get_request_id()}), 500
    body.setdefault("trace_id", get_request_id())
    return jsonify(body), int(status)
