from __future__ import annotations

from flask import Blueprint, jsonify

from escrowmarket.segments.common import current_user, json_body, unauthorized
from escrowmarket.services import listing_service

listings_bp = Blueprint("listings_bp", __name__, url_prefix="/api/listings")


def _listing_json(listing) -> dict:
    return listing.to_dict(effective_status=listing_service.effective_listing_status(listing))


@listings_bp.post("")
def create_listing():
    u = current_user()
    if not u:
        return unauthorized()
    payload = json_body()
    listing = listing_service.create_listing(
        u.id,
        title=payload.get("title") or "",
        price=payload.get("price"),
        availability_mode=payload.get("availability_mode") or "single",
        status=payload.get("status") or "active",
        description=payload.get("description") or "",
    )
    return jsonify({"ok": True, "listing": _listing_json(listing)}), 201


@listings_bp.get("/<int:listing_id>")
def get_listing(listing_id: int):
    listing = listing_service.get_listing(listing_id)
    return jsonify({"ok": True, "listing": _listing_json(listing)}), 200


@listings_bp.put("/<int:listing_id>/status")
def set_listing_status(listing_id: int):
    u = current_user()
    if not u:
        return unauthorized()
    listing = listing_service.set_listing_status(listing_id, u.id, json_body().get("status") or "")
    return jsonify({"ok": True, "listing": _listing_json(listing)}), 200
