from __future__ import annotations

from flask import Blueprint, jsonify, request

from escrowmarket.errors import ValidationError
from escrowmarket.segments.common import current_user, idempotent, json_body, unauthorized
from escrowmarket.services import delivery_service, offer_service, order_service
from escrowmarket.utils.idempotency import get_idempotency_key

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api/orders")


def _order_json(order, actor: str | None = None) -> dict:
    data = order.to_dict()
    if actor:
        data["viewer_role"] = actor
        data["allowed_next_statuses"] = order_service.allowed_next_statuses(actor, order.status)
    return data


@orders_bp.post("/direct-purchase")
def direct_purchase():
    u = current_user()
    if not u:
        return unauthorized()
    payload = json_body()

    def _run():
        try:
            listing_id = int(payload.get("listing_id"))
        except (TypeError, ValueError):
            raise ValidationError("listing_id is required")
        result = offer_service.create_direct_purchase(
            u,
            listing_id,
            requirements=payload.get("requirements"),
            idempotency_key=get_idempotency_key(),
        )
        return {
            "ok": True,
            "order": _order_json(result["order"], order_service.Actor.BUYER),
            "client_secret": result["client_secret"],
            "chat_channel_ref": result["chat_channel_ref"],
        }, 201

    return idempotent(int(u.id), "orders:direct_purchase", payload, _run)


@orders_bp.post("/<int:order_id>/confirm-payment")
def confirm_payment(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    order = order_service.confirm_order_payment(order_id, json_body().get("payment_ref") or "", user=u)
    return jsonify({"ok": True, "order": _order_json(order, order_service.Actor.BUYER), "chat_channel_ref": order.chat_channel_ref}), 200


@orders_bp.get("/mine")
def my_orders():
    u = current_user()
    if not u:
        return unauthorized()
    rows = order_service.list_orders_for(u, as_role=order_service.Actor.BUYER, status=(request.args.get("status") or "").strip() or None)
    return jsonify({"ok": True, "items": [_order_json(o, order_service.Actor.BUYER) for o in rows]}), 200


@orders_bp.get("/sales")
def my_sales():
    u = current_user()
    if not u:
        return unauthorized()
    rows = order_service.list_orders_for(u, as_role=order_service.Actor.SELLER, status=(request.args.get("status") or "").strip() or None)
    return jsonify({"ok": True, "items": [_order_json(o, order_service.Actor.SELLER) for o in rows]}), 200


@orders_bp.get("/<int:order_id>")
def get_order(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    order, actor = order_service.get_order_for(order_id, u)
    return jsonify({"ok": True, "order": _order_json(order, actor)}), 200


@orders_bp.get("/<int:order_id>/timeline")
def timeline(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    rows = order_service.order_timeline(order_id, u)
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@orders_bp.put("/<int:order_id>/status")
def update_status(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    payload = json_body()
    order = order_service.transition_order(
        order_id,
        u,
        payload.get("target") or payload.get("status") or "",
        reason=payload.get("reason") or "",
        notes=payload.get("notes") or "",
    )
    _, actor = order_service.get_order_for(order.id, u)
    return jsonify({"ok": True, "order": _order_json(order, actor)}), 200


@orders_bp.put("/<int:order_id>/deliver")
def deliver(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    payload = json_body()
    delivery = delivery_service.submit_delivery(
        order_id,
        u,
        payload.get("message") or "",
        payload.get("attachments"),
        is_final=bool(payload.get("is_final", False)),
    )
    order, actor = order_service.get_order_for(order_id, u)
    return jsonify({"ok": True, "delivery": delivery.to_dict(), "order": _order_json(order, actor)}), 200


@orders_bp.get("/<int:order_id>/deliveries")
def deliveries(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    rows = delivery_service.list_deliveries(order_id, u)
    return jsonify({"ok": True, "items": [d.to_dict() for d in rows]}), 200


@orders_bp.put("/<int:order_id>/request-revision")
def request_revision(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    result = order_service.request_revision(order_id, u, notes=json_body().get("notes") or "")
    return jsonify(
        {
            "ok": True,
            "order": _order_json(result["order"], order_service.Actor.BUYER),
            "revisions_used": result["revisions_used"],
            "revisions_left": result["revisions_left"],
        }
    ), 200


@orders_bp.put("/<int:order_id>/complete")
def complete(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    order = order_service.complete_order(order_id, u)
    return jsonify({"ok": True, "order": _order_json(order, order_service.Actor.BUYER)}), 200


@orders_bp.put("/<int:order_id>/cancel")
def cancel(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    order = order_service.cancel_order(order_id, u, reason=json_body().get("reason") or "")
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.put("/<int:order_id>/dispute")
def dispute(order_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    order = order_service.open_dispute(order_id, u, reason=json_body().get("reason") or "")
    return jsonify({"ok": True, "order": order.to_dict()}), 200
