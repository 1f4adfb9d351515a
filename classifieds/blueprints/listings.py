"""Listings blueprint — /listings/*

Read side of the paywall: listing summary with its featured state, and
the contact details that are only handed out to the owner or to users
holding a reveal grant.
"""

from flask import Blueprint, abort, jsonify
from flask_login import current_user, login_required

from classifieds.extensions import db
from classifieds.models.listing import Listing
from classifieds.models.transaction import PURPOSE_REVEAL_CONTACT
from classifieds.services import entitlement_service, pricing_service

listings_bp = Blueprint("listings", __name__, url_prefix="/listings")


def _get_listing_or_404(listing_id):
    listing = db.session.get(Listing, listing_id)
    if listing is None:
        abort(404)
    return listing


@listings_bp.route("/<listing_id>")
def detail(listing_id):
    listing = _get_listing_or_404(listing_id)
    until = entitlement_service.featured_until(listing.id)
    return jsonify({
        "id": listing.id,
        "title": listing.title,
        "owner_id": listing.owner_id,
        "featured": until is not None,
        "featured_until": until.isoformat() if until else None,
    })


@listings_bp.route("/<listing_id>/contact")
@login_required
def contact(listing_id):
    """Contact details, or 402 with the reveal price when locked."""
    listing = _get_listing_or_404(listing_id)

    if listing.owner_id == current_user.id or entitlement_service.has_reveal(
        current_user.id, listing.id
    ):
        return jsonify({"listing_id": listing.id, "contact": listing.contact_details()})

    amount, currency = pricing_service.resolve_price(PURPOSE_REVEAL_CONTACT)
    return jsonify({
        "error": "Payment required to reveal contact details.",
        "purpose": PURPOSE_REVEAL_CONTACT,
        "listing_id": listing.id,
        "price": {"amount": str(amount), "currency": currency},
    }), 402
