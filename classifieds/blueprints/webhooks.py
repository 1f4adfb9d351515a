"""Webhooks blueprint — /stripe/webhooks

Receives Stripe webhook events. CSRF-exempt and rate-limit exempt.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, jsonify, request

from classifieds.errors import ConfigurationError, SignatureInvalidError, ValidationError
from classifieds.extensions import limiter
from classifieds.services.reconciliation_service import handle_webhook_event
from classifieds.services.stripe_service import verify_webhook

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks", methods=["POST"])
@limiter.exempt
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET, nothing is written before this
    3. Pass to handle_webhook_event (idempotent via the transaction state machine)
    4. Return 200 to acknowledge receipt, whether or not state changed

    CSRF is exempted for this blueprint in create_app().
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    # --- Verify signature ---
    try:
        event = verify_webhook(payload, sig_header)
    except SignatureInvalidError as e:
        logger.warning(
            f"SECURITY: webhook signature rejected from {request.remote_addr}: "
            f"{e.message} {e.details.get('reason', '')}".rstrip()
        )
        return jsonify({"error": e.message}), 400
    except ValidationError as e:
        logger.warning(f"Webhook payload rejected: {e.message}")
        return jsonify({"error": e.message}), 400
    except ConfigurationError as e:
        logger.error(f"Webhook cannot be verified: {e.message}")
        return jsonify({"error": "Webhook not configured"}), 500

    # --- Process event ---
    success, message = handle_webhook_event(event)

    if success:
        return jsonify({"received": True, "status": message}), 200
    else:
        logger.error(f"Webhook processing failed: {message}")
        return jsonify({"error": "Webhook processing failed"}), 500
