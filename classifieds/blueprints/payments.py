"""Payments blueprint — /payments/*

Purchase initiation, status polling and history for the logged-in user.
Service errors (PaymentError) propagate to the JSON handler registered
in create_app().

Route Map:
  GET  /payments/prices            — Current price table
  POST /payments/intent            — Start an embedded card payment
  POST /payments/checkout          — Start a hosted Checkout payment
  POST /payments/subscription      — Start a subscription Checkout
  POST /payments/paypal            — Get PayPal-by-email instructions
  GET  /payments/history           — The user's transactions
  GET  /payments/entitlements      — The user's active grants
  GET  /payments/<tx_id>           — Poll one transaction
  POST /payments/<tx_id>/verify    — Ask Stripe directly when the webhook is late
"""

import logging

from flask import Blueprint, abort, jsonify, request
from flask_login import current_user, login_required

from classifieds.extensions import limiter
from classifieds.services import (
    entitlement_service,
    ledger_service,
    pricing_service,
    purchase_service,
    reconciliation_service,
)

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


def _purchase_args():
    """purpose / listing_id / message_id from the request.

    Any amount the client sends is deliberately not read.
    """
    data = request.get_json(silent=True) or request.form
    return (
        (data.get("purpose") or "").strip(),
        data.get("listing_id") or None,
        data.get("message_id") or None,
    )


@payments_bp.route("/prices")
def prices():
    return jsonify({"prices": pricing_service.price_table()})


# ──────────────────────────────────────────────
# Purchase initiation
# ──────────────────────────────────────────────

@payments_bp.route("/intent", methods=["POST"])
@login_required
@limiter.limit("30 per minute")
def create_intent():
    """Create a pending transaction + PaymentIntent; returns client_secret."""
    purpose, listing_id, message_id = _purchase_args()
    result = purchase_service.initiate_payment_intent(
        current_user.id, purpose, listing_id=listing_id, message_id=message_id
    )
    return jsonify(result), 201


@payments_bp.route("/checkout", methods=["POST"])
@login_required
@limiter.limit("30 per minute")
def create_checkout():
    """Create a pending transaction + Checkout Session; returns its URL."""
    purpose, listing_id, message_id = _purchase_args()
    result = purchase_service.initiate_checkout_session(
        current_user.id, purpose, listing_id=listing_id, message_id=message_id
    )
    return jsonify(result), 201


@payments_bp.route("/subscription", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def create_subscription():
    data = request.get_json(silent=True) or request.form
    result = purchase_service.initiate_subscription(
        current_user.id, plan_key=data.get("plan_key")
    )
    return jsonify(result), 201


@payments_bp.route("/paypal", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def create_paypal():
    purpose, listing_id, message_id = _purchase_args()
    result = purchase_service.initiate_paypal(
        current_user.id, purpose, listing_id=listing_id, message_id=message_id
    )
    return jsonify(result), 201


# ──────────────────────────────────────────────
# Status & history
# ──────────────────────────────────────────────

@payments_bp.route("/history")
@login_required
def history():
    transactions = ledger_service.list_for_user(current_user.id)
    return jsonify({"transactions": [tx.to_dict() for tx in transactions]})


@payments_bp.route("/entitlements")
@login_required
def entitlements():
    grants = entitlement_service.active_grants_for_user(current_user.id)
    return jsonify({"entitlements": [grant.to_dict() for grant in grants]})


@payments_bp.route("/<tx_id>")
@login_required
def status(tx_id):
    """Polled after checkout. `entitlement_pending` is true while a
    succeeded payment's grant is queued for retry, so "paid" and
    "access granted" can be shown separately."""
    return jsonify(_status_payload(_own_transaction(tx_id)))


@payments_bp.route("/<tx_id>/verify", methods=["POST"])
@login_required
@limiter.limit("20 per minute")
def verify(tx_id):
    """Settle a pending Stripe payment from the processor's own record.

    The success page calls this when polling shows `pending` for too long.
    """
    tx = _own_transaction(tx_id)
    tx, result = reconciliation_service.verify_with_processor(tx.id)
    payload = _status_payload(tx)
    payload["result"] = result
    return jsonify(payload)


def _own_transaction(tx_id):
    tx = ledger_service.get_transaction(tx_id)
    if tx is None or (tx.user_id != current_user.id and not current_user.is_admin):
        abort(404)
    return tx


def _status_payload(tx):
    payload = tx.to_dict()
    payload["entitlement_pending"] = reconciliation_service.entitlement_pending(tx.id)
    payload["entitlements"] = [
        grant.to_dict() for grant in entitlement_service.grants_for_transaction(tx.id)
    ]
    return payload
