from __future__ import annotations

from flask import Blueprint, jsonify, request

from escrowmarket.errors import ValidationError
from escrowmarket.segments.common import (
    amount_minor_from,
    current_user,
    idempotent,
    json_body,
    optional_datetime,
    unauthorized,
)
from escrowmarket.services import offer_service
from escrowmarket.utils.idempotency import get_idempotency_key

offers_bp = Blueprint("offers_bp", __name__, url_prefix="/api/offers")


def _offer_json(offer, user) -> dict:
    return offer.to_dict(include_secret=int(offer.buyer_id) == int(user.id))


@offers_bp.post("")
def make_offer():
    u = current_user()
    if not u:
        return unauthorized()
    payload = json_body()

    def _run():
        try:
            listing_id = int(payload.get("listing_id"))
        except (TypeError, ValueError):
            raise ValidationError("listing_id is required")
        offer = offer_service.make_offer(
            u,
            listing_id,
            amount_minor_from(payload),
            payload.get("message") or "",
            requirements=payload.get("requirements"),
            expected_delivery=optional_datetime(payload, "expected_delivery"),
            idempotency_key=get_idempotency_key(),
        )
        return {"ok": True, "offer": _offer_json(offer, u)}, 201

    return idempotent(int(u.id), "offers:create", payload, _run)


@offers_bp.post("/confirm-payment")
def confirm_payment():
    u = current_user()
    if not u:
        return unauthorized()
    payload = json_body()
    try:
        offer_id = int(payload.get("offer_id"))
    except (TypeError, ValueError):
        raise ValidationError("offer_id is required")
    result = offer_service.confirm_offer_payment(offer_id, payload.get("payment_ref") or "", user=u)
    order = result["order"]
    return jsonify(
        {
            "ok": True,
            "offer": _offer_json(result["offer"], u),
            "order": order.to_dict() if order is not None else None,
            "chat_channel_ref": result["chat_channel_ref"],
            "already_confirmed": result["already_confirmed"],
        }
    ), 200


@offers_bp.put("/<int:offer_id>/accept")
def accept(offer_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    result = offer_service.accept_offer(offer_id, u)
    return jsonify(
        {
            "ok": True,
            "offer": _offer_json(result["offer"], u),
            "order": result["order"].to_dict(),
            "auto_rejected_offer_ids": result["auto_rejected_offer_ids"],
        }
    ), 200


@offers_bp.put("/<int:offer_id>/reject")
def reject(offer_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    offer = offer_service.reject_offer(offer_id, u, reason=json_body().get("reason") or "")
    return jsonify({"ok": True, "offer": _offer_json(offer, u)}), 200


@offers_bp.put("/<int:offer_id>/cancel")
def cancel(offer_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    offer = offer_service.cancel_offer(offer_id, u)
    return jsonify({"ok": True, "offer": _offer_json(offer, u)}), 200


@offers_bp.get("/mine")
def my_offers():
    u = current_user()
    if not u:
        return unauthorized()
    rows = offer_service.list_offers_for_buyer(u)
    return jsonify({"ok": True, "items": [_offer_json(r, u) for r in rows]}), 200


@offers_bp.get("/received")
def received_offers():
    u = current_user()
    if not u:
        return unauthorized()
    rows = offer_service.list_offers_for_seller(u, status=(request.args.get("status") or "").strip() or None)
    return jsonify({"ok": True, "items": [_offer_json(r, u) for r in rows]}), 200


@offers_bp.get("/<int:offer_id>")
def get_offer(offer_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    offer = offer_service.get_offer_for(offer_id, u)
    return jsonify({"ok": True, "offer": _offer_json(offer, u)}), 200
