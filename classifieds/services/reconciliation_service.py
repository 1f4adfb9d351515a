"""Reconciliation service — turns verified payment events into state.

Responsible for:
- Webhook delivery logging + fast-path duplicate detection (stripe_events)
- Dispatching events by type to the success / failure / refund handlers
- Resolving the ledger row an event belongs to
- Applying the entitlement for a purpose exactly once per transaction
- Queueing entitlement failures for retry (reconciliation_errors)
- Settling a pending payment by polling Stripe when its webhook is late
- The admin-only manual paths (test trigger, PayPal confirmation)

Ordering inside a success:
    1. ledger_service.transition(pending -> succeeded)   committed
    2. apply_entitlement()                               committed separately
    3. payment_succeeded signal                          fire-and-forget

Step 2 only runs when step 1 actually changed the row, so redelivered or
concurrent events never grant twice. A failure in step 2 never undoes
step 1: the money has moved, the failure is queued instead.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from classifieds.errors import (
    TransactionNotFoundError,
    ValidationError,
)
from classifieds.extensions import db
from classifieds.models.listing import Listing
from classifieds.models.message import Message
from classifieds.models.reconciliation_error import ReconciliationError
from classifieds.models.stripe_event import StripeEvent
from classifieds.models.transaction import (
    PROVIDER_PAYPAL,
    PROVIDER_STRIPE,
    PURPOSE_FEATURE,
    PURPOSE_MESSAGE,
    PURPOSE_REVEAL_CONTACT,
    PURPOSE_SUBSCRIPTION,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_REFUNDED,
    STATUS_SUCCEEDED,
    Transaction,
)
from classifieds.models.user import User
from classifieds.services import (
    entitlement_service,
    events,
    ledger_service,
    stripe_service,
)
from classifieds.services.config_provider import current_config
from classifieds.services.ledger_service import log_payment_audit
from classifieds.services.pricing_service import feature_days
from classifieds.services.stripe_service import from_minor_units

logger = logging.getLogger(__name__)

# Checkout Session payment_status values that mean the money is in.
_PAID_SESSION_STATUSES = ("paid", "no_payment_required")

STAGE_GRANT = "grant"
STAGE_REVOKE = "revoke"
STAGE_LATE_SUCCESS = "late_success"
# late_success rows wait for an admin; the retry queue never grants for them.
RETRYABLE_STAGES = (STAGE_GRANT, STAGE_REVOKE)


# ──────────────────────────────────────────────
# Webhook entry point
# ──────────────────────────────────────────────

def handle_webhook_event(event):
    """Process a verified, normalised Event.

    Idempotency: a delivery whose event id is already in stripe_events is
    acknowledged without reprocessing. Correctness does not depend on this
    table; the transaction state machine makes reprocessing a no-op.

    Returns (success: bool, message: str). success=False means an
    unexpected error; the endpoint answers 500 so Stripe retries.
    """
    if event.id:
        existing = StripeEvent.query.filter_by(stripe_event_id=event.id).first()
        if existing:
            logger.info(f"Duplicate webhook event {event.id}, skipping")
            return True, "already_processed"

    try:
        result, tx_id = handle_event(event)
    except Exception as e:
        logger.error(f"Error handling {event.type}: {e}", exc_info=True)
        db.session.rollback()
        return False, str(e)

    if event.id:
        stripe_event = StripeEvent(
            stripe_event_id=event.id,
            event_type=event.type,
            transaction_id=tx_id,
            result=result,
        )
        db.session.add(stripe_event)
        try:
            db.session.commit()
        except IntegrityError:
            # A concurrent delivery of the same event logged it first.
            db.session.rollback()
            logger.info(f"Webhook event {event.id} logged concurrently")

    return True, result


def handle_event(event):
    """Dispatch one Event by type. Returns (result, transaction_id|None).

    Unknown event types are logged and ignored.
    """
    handlers = {
        "payment_intent.succeeded": _handle_success,
        "checkout.session.completed": _handle_checkout_completed,
        "checkout.session.async_payment_succeeded": _handle_success,
        "payment_intent.payment_failed": _handle_failure,
        "checkout.session.async_payment_failed": _handle_failure,
        "checkout.session.expired": _handle_failure,
        "charge.refunded": _handle_refund,
    }

    handler = handlers.get(event.type)
    if handler is None:
        logger.info(f"Ignoring unhandled event type {event.type}")
        return "ignored", None
    return handler(event)


# ──────────────────────────────────────────────
# Event handlers
# ──────────────────────────────────────────────

def _handle_checkout_completed(event):
    """A completed session is only paid once payment_status says so.

    Delayed methods (bank debits) complete with "unpaid" and settle later
    through checkout.session.async_payment_succeeded.
    """
    payment_status = event.object.get("payment_status")
    if payment_status and payment_status not in _PAID_SESSION_STATUSES:
        logger.info(
            f"Checkout session {event.object.get('id')} completed with "
            f"payment_status={payment_status}; awaiting payment"
        )
        return "awaiting_payment", None
    return _handle_success(event)


def _handle_success(event):
    obj = event.object
    refs = _refs(obj.get("id"), obj.get("payment_intent"))

    tx = _resolve_transaction(event, refs)
    if tx is None:
        tx = _synthesize_transaction(event, refs)
        if tx is None:
            return "unmatched", None

    meta_patch = {
        "provider_ref": obj.get("id"),
        "payment_intent_ref": _payment_intent_ref(obj),
        "event_id": event.id,
        "event_type": event.type,
        "raw": obj,
    }
    if obj.get("subscription"):
        meta_patch["subscription_ref"] = obj["subscription"]

    result = reconcile_success(tx, meta_patch)
    if result == "noop":
        _flag_late_success(tx.id, event)
    return result, tx.id


def _flag_late_success(tx_id, event):
    """Queue a success that arrived after the transaction was marked failed.

    The ledger keeps `failed` (no resurrection), but the customer was
    charged, so an admin has to refund or honour it.
    """
    tx = ledger_service.get_transaction(tx_id)
    if tx is None or tx.status != STATUS_FAILED:
        return
    ref = _payment_intent_ref(event.object) or event.object.get("id")
    logger.warning(
        f"Processor reported success for failed transaction {tx_id} ({ref}); "
        f"queued for manual review"
    )
    _queue_reconciliation_error(
        tx_id,
        STAGE_LATE_SUCCESS,
        f"{event.type} for {ref} arrived after the transaction was marked failed",
    )


def _handle_failure(event):
    obj = event.object
    tx = _resolve_transaction(event, _refs(obj.get("id"), obj.get("payment_intent")))
    if tx is None:
        logger.warning(f"No transaction for {event.type} {obj.get('id')}")
        return "unmatched", None

    error = obj.get("last_payment_error") or {}
    tx, changed = ledger_service.transition(tx.id, STATUS_FAILED, {
        "event_id": event.id,
        "event_type": event.type,
        "failure_message": error.get("message") if isinstance(error, dict) else None,
        "raw": obj,
    })
    if not changed:
        return "noop", tx.id

    events.emit(
        events.payment_failed,
        transaction_id=tx.id,
        metadata=dict(tx.meta or {}),
    )
    return "processed", tx.id


def _handle_refund(event):
    """charge.refunded: full refunds move succeeded -> refunded.

    The charge carries its PaymentIntent id, which matches provider_ref
    (intent flow) or payment_intent_ref (checkout flow).
    """
    obj = event.object
    tx = _resolve_transaction(event, _refs(obj.get("payment_intent"), obj.get("id")))
    if tx is None:
        logger.warning(f"No transaction for refunded charge {obj.get('id')}")
        return "unmatched", None

    if not _is_full_refund(obj):
        logger.info(
            f"Partial refund on transaction {tx.id} "
            f"({obj.get('amount_refunded')} of {obj.get('amount')}); status kept"
        )
        return "partial_refund", tx.id

    tx, changed = ledger_service.transition(tx.id, STATUS_REFUNDED, {
        "event_id": event.id,
        "event_type": event.type,
        "amount_refunded": obj.get("amount_refunded"),
    })
    if not changed:
        return "noop", tx.id

    revoked = 0
    if current_config().get("REVOKE_ON_REFUND", True):
        revoked = revoke_entitlements_safely(tx)

    events.emit(
        events.payment_refunded,
        transaction_id=tx.id,
        purpose=tx.purpose,
        revoked=revoked,
    )
    return "processed", tx.id


def _is_full_refund(charge):
    if "refunded" in charge:
        return charge.get("refunded") is True
    amount, refunded = charge.get("amount"), charge.get("amount_refunded")
    return bool(amount) and refunded is not None and refunded >= amount


# ──────────────────────────────────────────────
# Resolution
# ──────────────────────────────────────────────

def _refs(*candidates):
    return [ref for ref in candidates if isinstance(ref, str) and ref]


def _payment_intent_ref(obj):
    if obj.get("object") == "payment_intent":
        return obj.get("id")
    ref = obj.get("payment_intent")
    return ref if isinstance(ref, str) else None


def _resolve_transaction(event, refs):
    """Find the ledger row for an event.

    pc_transaction_id from metadata is used when it names an existing
    Stripe transaction belonging to the metadata's pc_user_id. Otherwise
    fall back to the processor references.
    """
    metadata = event.metadata or {}
    tx_id = metadata.get("pc_transaction_id")
    if tx_id:
        tx = ledger_service.get_transaction(tx_id)
        user_id = metadata.get("pc_user_id")
        if (
            tx is not None
            and tx.provider == PROVIDER_STRIPE
            and (not user_id or user_id == tx.user_id)
        ):
            return tx
        logger.warning(
            f"Metadata transaction {tx_id} on {event.type} is unknown or "
            f"inconsistent; falling back to provider reference"
        )

    for ref in refs:
        tx = ledger_service.find_by_provider_ref(PROVIDER_STRIPE, ref)
        if tx is not None:
            return tx
    return None


def _synthesize_transaction(event, refs):
    """Record a payment Stripe says succeeded but the ledger never saw.

    Only possible when the metadata names an existing user and a known
    purpose; everything else is logged as unmatched. The row goes through
    the normal pending -> succeeded transition so the purchase is honoured.
    """
    obj, metadata = event.object, event.metadata or {}
    user_id = metadata.get("pc_user_id")
    purpose = metadata.get("pc_purpose")
    if (
        not refs
        or not user_id
        or purpose not in Transaction.PURPOSES
        or db.session.get(User, user_id) is None
    ):
        logger.warning(
            f"Unmatched {event.type} for {refs}: no transaction and not enough "
            f"metadata to record one"
        )
        return None

    listing_id = metadata.get("pc_listing_id") or None
    if listing_id and db.session.get(Listing, listing_id) is None:
        listing_id = None
    if purpose in (PURPOSE_REVEAL_CONTACT, PURPOSE_FEATURE) and listing_id is None:
        logger.warning(
            f"Unmatched {event.type} for {refs}: {purpose} payment names no "
            f"known listing"
        )
        return None
    message_id = metadata.get("pc_message_id") or None
    if purpose == PURPOSE_MESSAGE and (
        message_id is None or db.session.get(Message, message_id) is None
    ):
        logger.warning(
            f"Unmatched {event.type} for {refs}: message payment names no "
            f"known message"
        )
        return None

    currency = obj.get("currency") or current_config().get("PAYMENT_CURRENCY", "USD")
    minor = obj.get("amount_received") or obj.get("amount_total") or obj.get("amount") or 0
    amount = from_minor_units(minor, currency)

    tx = ledger_service.create_transaction(
        user_id, listing_id, purpose, amount, currency, PROVIDER_STRIPE,
        meta={
            "synthesized": True,
            "source_event": event.id,
            "message_id": message_id,
        },
    )
    try:
        tx = ledger_service.attach_provider_ref(
            tx.id, refs[0], payment_intent_ref=_payment_intent_ref(obj)
        )
    except IntegrityError:
        db.session.rollback()
        ledger_service.transition(tx.id, STATUS_FAILED, {"reason": "duplicate_synthesized"})
        return ledger_service.find_by_provider_ref(PROVIDER_STRIPE, refs[0])

    logger.warning(f"Synthesized transaction {tx.id} from {event.type} {refs[0]}")
    return tx


# ──────────────────────────────────────────────
# Success path & entitlements
# ──────────────────────────────────────────────

def reconcile_success(tx, meta_patch=None):
    """Move tx to succeeded and, only if that changed it, grant + notify.

    Returns "processed" or "noop".
    """
    tx, changed = ledger_service.transition(tx.id, STATUS_SUCCEEDED, meta_patch)
    if not changed:
        return "noop"

    apply_entitlement_safely(tx)

    events.emit(
        events.payment_succeeded,
        transaction_id=tx.id,
        purpose=tx.purpose,
        metadata=dict(tx.meta or {}),
    )
    if tx.purpose == PURPOSE_SUBSCRIPTION:
        events.emit(
            events.subscription_started,
            transaction_id=tx.id,
            user_id=tx.user_id,
            subscription_ref=(tx.meta or {}).get("subscription_ref"),
        )
    return "processed"


def apply_entitlement(tx):
    """Grant whatever tx.purpose buys. Flush only; idempotent per purpose."""
    if tx.purpose == PURPOSE_REVEAL_CONTACT:
        grant, created = entitlement_service.grant_reveal(
            tx.user_id, tx.listing_id, tx.id
        )
        if created:
            listing = db.session.get(Listing, tx.listing_id)
            listing.mark_contact_revealed(tx.user_id)

    elif tx.purpose == PURPOSE_FEATURE:
        days = (tx.meta or {}).get("feature_days") or feature_days()
        until = datetime.now(timezone.utc) + timedelta(days=int(days))
        grant = entitlement_service.grant_or_extend_feature(tx.listing_id, until, tx.id)

    elif tx.purpose == PURPOSE_MESSAGE:
        message = db.session.get(Message, tx.message_id) if tx.message_id else None
        if message is None:
            raise ValidationError(
                "Message for paid transaction not found", transaction_id=tx.id
            )
        grant, _ = entitlement_service.grant_message(
            tx.user_id, message.id, tx.listing_id or message.listing_id, tx.id
        )
        message.mark_paid(tx.user_id)

    elif tx.purpose == PURPOSE_SUBSCRIPTION:
        ref = (tx.meta or {}).get("subscription_ref") or tx.provider_ref or tx.id
        grant, _ = entitlement_service.grant_subscription(tx.user_id, tx.id, ref)

    else:
        raise ValidationError(f"No entitlement for purpose {tx.purpose!r}")

    log_payment_audit("entitlement.granted", transaction_id=tx.id, metadata={
        "purpose": tx.purpose,
        "scope_key": grant.scope_key,
        "expires_at": grant.expires_at.isoformat() if grant.expires_at else None,
    })
    return grant


def apply_entitlement_safely(tx):
    """apply_entitlement() + commit; on error queue it instead of raising.

    Returns True when the entitlement is in place.
    """
    tx_id = tx.id
    try:
        apply_entitlement(tx)
        db.session.commit()
        return True
    except Exception as e:
        db.session.rollback()
        logger.error(
            f"Entitlement application failed for transaction {tx_id}: {e}",
            exc_info=True,
        )
        _queue_reconciliation_error(tx_id, STAGE_GRANT, e)
        return False


def revoke_entitlements_safely(tx):
    """Revoke the grants tx paid for. Returns the number revoked."""
    tx_id = tx.id
    try:
        revoked = entitlement_service.revoke_for_transaction(tx_id)
        log_payment_audit("entitlement.revoked", transaction_id=tx_id, metadata={
            "purpose": tx.purpose,
            "count": revoked,
        })
        db.session.commit()
        return revoked
    except Exception as e:
        db.session.rollback()
        logger.error(
            f"Entitlement revocation failed for transaction {tx_id}: {e}",
            exc_info=True,
        )
        _queue_reconciliation_error(tx_id, STAGE_REVOKE, e)
        return 0


def _queue_reconciliation_error(tx_id, stage, error):
    message = str(error) or repr(error)
    row = ReconciliationError.query.filter_by(
        transaction_id=tx_id, stage=stage, status="open"
    ).first()
    if row is None:
        row = ReconciliationError(
            transaction_id=tx_id, stage=stage, error_message=message
        )
        db.session.add(row)
    else:
        row.attempts += 1
        row.error_message = message
    db.session.flush()
    log_payment_audit("reconciliation.failed", transaction_id=tx_id, metadata={
        "stage": stage,
        "error": row.error_message,
    })
    db.session.commit()


# ──────────────────────────────────────────────
# Retry queue
# ──────────────────────────────────────────────

def entitlement_pending(tx_id):
    """True while tx has an open reconciliation error."""
    return ReconciliationError.query.filter_by(
        transaction_id=tx_id, status="open"
    ).first() is not None


def list_reconciliation_errors(status="open", limit=200, stages=None):
    query = ReconciliationError.query
    if status:
        query = query.filter_by(status=status)
    if stages:
        query = query.filter(ReconciliationError.stage.in_(stages))
    return query.order_by(ReconciliationError.created_at.asc()).limit(limit).all()


def retry_reconciliation_error(error_id, actor_user_id=None):
    """Re-run one queued grant / revoke. Returns True if it now succeeded."""
    row = db.session.get(ReconciliationError, error_id)
    if row is None:
        raise ValidationError("Reconciliation error not found", error_id=error_id)
    if row.status != "open":
        return True
    if row.stage not in RETRYABLE_STAGES:
        raise ValidationError(
            f"{row.stage} errors are resolved by an admin, not retried",
            error_id=error_id,
        )

    tx = row.transaction
    try:
        if row.stage == STAGE_GRANT:
            if tx.status == STATUS_SUCCEEDED:
                apply_entitlement(tx)
        elif row.stage == STAGE_REVOKE:
            if tx.status == STATUS_REFUNDED:
                entitlement_service.revoke_for_transaction(tx.id)
        row.status = "resolved"
        row.resolved_at = datetime.now(timezone.utc)
        log_payment_audit(
            "reconciliation.retried",
            transaction_id=tx.id,
            actor_user_id=actor_user_id,
            metadata={"stage": row.stage, "attempts": row.attempts},
        )
        db.session.commit()
        logger.info(f"Reconciliation {row.stage} for transaction {tx.id} resolved")
        return True
    except Exception as e:
        db.session.rollback()
        logger.error(
            f"Retry of reconciliation error {error_id} failed: {e}", exc_info=True
        )
        row = db.session.get(ReconciliationError, error_id)
        row.attempts += 1
        row.error_message = str(e) or repr(e)
        db.session.commit()
        return False


def retry_reconciliation_errors(limit=50, actor_user_id=None):
    """Drain up to `limit` open errors, oldest first.

    Returns (resolved_count, still_failing_count).
    """
    error_ids = [
        row.id for row in list_reconciliation_errors(limit=limit, stages=RETRYABLE_STAGES)
    ]
    resolved = failed = 0
    for error_id in error_ids:
        if retry_reconciliation_error(error_id, actor_user_id=actor_user_id):
            resolved += 1
        else:
            failed += 1
    return resolved, failed



def resolve_reconciliation_error(error_id, actor_user_id, note=None):
    """Close an error by hand, e.g. once a late success has been refunded
    at the processor. Returns the row."""
    row = db.session.get(ReconciliationError, error_id)
    if row is None:
        raise ValidationError("Reconciliation error not found", error_id=error_id)
    if row.status == "open":
        row.status = "resolved"
        row.resolved_at = datetime.now(timezone.utc)
        log_payment_audit(
            "reconciliation.resolved",
            transaction_id=row.transaction_id,
            actor_user_id=actor_user_id,
            metadata={"stage": row.stage, "note": note},
        )
        db.session.commit()
        logger.info(
            f"Admin {actor_user_id} resolved {row.stage} error for "
            f"transaction {row.transaction_id}"
        )
    return row


# ──────────────────────────────────────────────
# Status check (webhook late or lost)
# ──────────────────────────────────────────────

def verify_with_processor(tx_id):
    """Poll Stripe for a pending transaction and settle it if it is paid.

    Runs through reconcile_success(), so a webhook arriving afterwards is
    a no-op. Returns (transaction, result) where result is "processed",
    "noop" (already settled) or "pending" (processor not paid yet).
    """
    tx = ledger_service.get_transaction(tx_id)
    if tx is None:
        raise TransactionNotFoundError("Transaction not found", transaction_id=tx_id)
    if tx.provider != PROVIDER_STRIPE:
        raise ValidationError(
            "Only Stripe transactions can be verified with the processor",
            transaction_id=tx_id,
        )
    if tx.status != STATUS_PENDING:
        return tx, "noop"
    if not tx.provider_ref:
        raise ValidationError(
            "Transaction has no processor reference yet", transaction_id=tx_id
        )

    payment = stripe_service.retrieve_payment(tx.provider_ref)
    if not payment["paid"]:
        logger.info(
            f"Transaction {tx_id} still unpaid at the processor "
            f"({payment['status']})"
        )
        return tx, "pending"

    meta_patch = {
        "payment_intent_ref": payment["payment_intent"],
        "verified_by": "status_check",
        "processor_status": payment["status"],
    }
    if payment["subscription"]:
        meta_patch["subscription_ref"] = payment["subscription"]
    result = reconcile_success(tx, meta_patch)
    logger.info(f"Status check settled transaction {tx_id}: {result}")
    return ledger_service.get_transaction(tx_id), result


# ──────────────────────────────────────────────
# Manual paths (admin only)
# ──────────────────────────────────────────────

def simulate_success(tx_id, actor_user_id):
    """Run the succeeded path for tx_id without a webhook.

    Local development aid; callers gate it behind admin access and
    ALLOW_TEST_TRIGGER. Returns (transaction, result).
    """
    tx = ledger_service.get_transaction(tx_id)
    if tx is None:
        raise TransactionNotFoundError("Transaction not found", transaction_id=tx_id)

    log_payment_audit(
        "transaction.simulated", transaction_id=tx.id, actor_user_id=actor_user_id
    )
    db.session.commit()
    logger.warning(f"Test trigger: admin {actor_user_id} simulating success for {tx.id}")

    result = reconcile_success(tx, {"simulated": True, "simulated_by": actor_user_id})
    return ledger_service.get_transaction(tx_id), result


def confirm_manual_payment(tx_id, actor_user_id):
    """Admin confirms a PayPal-by-email payment arrived.

    Returns (transaction, result).
    """
    tx = ledger_service.get_transaction(tx_id)
    if tx is None:
        raise TransactionNotFoundError("Transaction not found", transaction_id=tx_id)
    if tx.provider != PROVIDER_PAYPAL:
        raise ValidationError(
            "Only PayPal transactions can be confirmed manually", transaction_id=tx_id
        )

    log_payment_audit(
        "transaction.confirmed", transaction_id=tx.id, actor_user_id=actor_user_id
    )
    db.session.commit()

    result = reconcile_success(tx, {"confirmed_by": actor_user_id})
    return ledger_service.get_transaction(tx_id), result
