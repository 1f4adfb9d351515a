"""Admin blueprint — /admin/*

Payment operations for staff. JSON only.
All routes protected by @admin_required decorator.

Route Map:
  GET  /admin/transactions                          — Recent transactions (?status=)
  GET  /admin/transactions/<id>                     — Transaction + grants + audit trail
  POST /admin/transactions/<id>/simulate-success    — Test trigger (ALLOW_TEST_TRIGGER)
  POST /admin/transactions/<id>/confirm             — Confirm a PayPal payment
  GET  /admin/reconciliation-errors                 — Queued entitlement failures
  POST /admin/reconciliation-errors/<id>/retry      — Retry one
  POST /admin/reconciliation-errors/retry           — Retry all open
  POST /admin/reconciliation-errors/<id>/resolve    — Close one by hand (late successes)
  GET  /admin/settings                              — Price table + overrides
  POST /admin/settings                              — Update overrides
  GET  /admin/revenue                               — Succeeded revenue summary
"""

import logging

from flask import Blueprint, abort, current_app, jsonify, request
from flask_login import current_user

from classifieds.decorators import admin_required
from classifieds.models.audit import AuditEvent
from classifieds.models.transaction import Transaction
from classifieds.services import (
    entitlement_service,
    ledger_service,
    pricing_service,
    reconciliation_service,
    settings_service,
)

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


# ══════════════════════════════════════════════
#  TRANSACTIONS
# ══════════════════════════════════════════════

@admin_bp.route("/transactions")
@admin_required
def transaction_list():
    status = request.args.get("status") or None
    if status and status not in Transaction.STATUSES:
        return jsonify({"error": f"Unknown status: {status}"}), 400
    transactions = ledger_service.list_recent(limit=200, status=status)
    return jsonify({"transactions": [tx.to_dict() for tx in transactions]})


@admin_bp.route("/transactions/<tx_id>")
@admin_required
def transaction_detail(tx_id):
    tx = ledger_service.get_transaction(tx_id)
    if tx is None:
        abort(404)

    audit = (
        AuditEvent.query
        .filter_by(transaction_id=tx.id)
        .order_by(AuditEvent.created_at.asc())
        .all()
    )
    payload = tx.to_dict()
    payload["meta"] = tx.meta or {}
    payload["entitlement_pending"] = reconciliation_service.entitlement_pending(tx.id)
    payload["entitlements"] = [
        grant.to_dict() for grant in entitlement_service.grants_for_transaction(tx.id)
    ]
    payload["audit"] = [
        {
            "action": event.action,
            "actor_user_id": event.actor_user_id,
            "metadata": event.metadata_ or {},
            "created_at": event.created_at.isoformat() if event.created_at else None,
        }
        for event in audit
    ]
    return jsonify(payload)


@admin_bp.route("/transactions/<tx_id>/simulate-success", methods=["POST"])
@admin_required
def transaction_simulate_success(tx_id):
    """Run the succeeded path without a webhook (local development)."""
    if not current_app.config.get("ALLOW_TEST_TRIGGER"):
        abort(404)
    tx, result = reconciliation_service.simulate_success(tx_id, current_user.id)
    return jsonify({"result": result, "transaction": tx.to_dict()})


@admin_bp.route("/transactions/<tx_id>/confirm", methods=["POST"])
@admin_required
def transaction_confirm(tx_id):
    """Confirm a PayPal-by-email payment has been received."""
    tx, result = reconciliation_service.confirm_manual_payment(tx_id, current_user.id)
    return jsonify({"result": result, "transaction": tx.to_dict()})


# ══════════════════════════════════════════════
#  RECONCILIATION ERRORS
# ══════════════════════════════════════════════

@admin_bp.route("/reconciliation-errors")
@admin_required
def reconciliation_error_list():
    status = request.args.get("status", "open")
    if status == "all":
        status = None
    errors = reconciliation_service.list_reconciliation_errors(status=status)
    return jsonify({"errors": [error.to_dict() for error in errors]})


@admin_bp.route("/reconciliation-errors/<error_id>/retry", methods=["POST"])
@admin_required
def reconciliation_error_retry(error_id):
    resolved = reconciliation_service.retry_reconciliation_error(
        error_id, actor_user_id=current_user.id
    )
    return jsonify({"resolved": resolved})


@admin_bp.route("/reconciliation-errors/retry", methods=["POST"])
@admin_required
def reconciliation_error_retry_all():
    resolved, failed = reconciliation_service.retry_reconciliation_errors(
        actor_user_id=current_user.id
    )
    return jsonify({"resolved": resolved, "failed": failed})


@admin_bp.route("/reconciliation-errors/<error_id>/resolve", methods=["POST"])
@admin_required
def reconciliation_error_resolve(error_id):
    data = request.get_json(silent=True) or request.form
    row = reconciliation_service.resolve_reconciliation_error(
        error_id, current_user.id, note=data.get("note")
    )
    return jsonify({"error": row.to_dict()})


# ══════════════════════════════════════════════
#  SETTINGS & REPORTING
# ══════════════════════════════════════════════

@admin_bp.route("/settings")
@admin_required
def settings():
    return jsonify({
        "overrides": settings_service.get_settings(),
        "prices": pricing_service.price_table(),
    })


@admin_bp.route("/settings", methods=["POST"])
@admin_required
def settings_update():
    changes = request.get_json(silent=True) or request.form.to_dict()
    if not changes:
        return jsonify({"error": "No settings given."}), 400
    applied = settings_service.update_settings(changes, actor_user_id=current_user.id)
    return jsonify({
        "updated": applied,
        "prices": pricing_service.price_table(),
    })


@admin_bp.route("/revenue")
@admin_required
def revenue():
    return jsonify({"revenue": ledger_service.revenue_summary()})
