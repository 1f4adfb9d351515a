"""Ledger service — the transaction ledger and its state machine.

Responsible for:
- Inserting pending transactions (validated user / purpose / listing)
- Attaching the processor reference once the gateway call returns
- transition(): the ONLY mutator of transactions.status
- Lookups by id and by processor reference (webhook join key)
- Audit logging of ledger changes

transition() is a compare-and-swap: the UPDATE is guarded by the status
the caller observed, so two concurrent deliveries of the same event can
never both move a transaction out of `pending`. The loser gets
(transaction, False) and must not apply side effects.
"""

import logging
from decimal import Decimal

from sqlalchemy import func, or_, update

from classifieds.errors import (
    InvalidPurposeError,
    TransactionNotFoundError,
    ValidationError,
)
from classifieds.extensions import db
from classifieds.models.audit import AuditEvent
from classifieds.models.listing import Listing
from classifieds.models.transaction import STATUS_PENDING, STATUS_SUCCEEDED, Transaction
from classifieds.models.user import User
from classifieds.services.stripe_service import normalize_currency

logger = logging.getLogger(__name__)

# Patch keys that map onto columns instead of the meta bag.
_REF_KEYS = ("provider_ref", "payment_intent_ref")


def log_payment_audit(action, transaction_id=None, actor_user_id=None, metadata=None):
    """Log a payment-related audit event.

    Actor is None for webhook-driven (system-initiated) changes.
    Uses flush() so the caller controls the commit boundary.
    """
    event = AuditEvent(
        transaction_id=transaction_id,
        actor_user_id=actor_user_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()


def create_transaction(user_id, listing_id, purpose, amount, currency,
                       provider, meta=None):
    """Insert a pending transaction. Returns the committed Transaction.

    Raises ValidationError if the user / listing / provider / amount is
    invalid and InvalidPurposeError for unknown purposes.
    """
    if not user_id or db.session.get(User, user_id) is None:
        raise ValidationError("Unknown user", user_id=user_id)
    if purpose not in Transaction.PURPOSES:
        raise InvalidPurposeError(f"Invalid purpose: {purpose!r}", purpose=purpose)
    if provider not in Transaction.PROVIDERS:
        raise ValidationError(f"Unknown provider: {provider!r}")
    if listing_id is not None and db.session.get(Listing, listing_id) is None:
        raise ValidationError("Listing not found", listing_id=listing_id)

    amount = Decimal(str(amount))
    if amount < 0:
        raise ValidationError("Amount must not be negative")

    tx = Transaction(
        user_id=user_id,
        listing_id=listing_id,
        purpose=purpose,
        amount=amount,
        currency=normalize_currency(currency),
        provider=provider,
        status=STATUS_PENDING,
        meta=dict(meta or {}),
    )
    db.session.add(tx)
    db.session.flush()

    log_payment_audit("transaction.created", transaction_id=tx.id, metadata={
        "purpose": purpose,
        "amount": str(amount),
        "currency": tx.currency,
        "provider": provider,
    })
    db.session.commit()

    logger.info(f"Transaction {tx.id} created: {purpose} {amount} {tx.currency} via {provider}")
    return tx


def attach_provider_ref(tx_id, ref, payment_intent_ref=None):
    """Store the processor's intent / session id on a pending transaction.

    Raises TransactionNotFoundError, or ValidationError when the
    transaction has already left `pending`.
    """
    tx = get_transaction(tx_id)
    if tx is None:
        raise TransactionNotFoundError("Transaction not found", transaction_id=tx_id)

    values = {"provider_ref": ref}
    if payment_intent_ref:
        values["payment_intent_ref"] = payment_intent_ref

    result = db.session.execute(
        update(Transaction)
        .where(Transaction.id == tx_id, Transaction.status == STATUS_PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        db.session.refresh(tx)
        raise ValidationError(
            f"Transaction is {tx.status}; provider reference can only be set while pending",
            transaction_id=tx_id,
        )

    db.session.commit()
    db.session.refresh(tx)
    return tx


def transition(tx_id, new_status, meta_patch=None):
    """Move a transaction to new_status. The only writer of status.

    Returns (transaction, changed). Disallowed moves (duplicates such as
    succeeded -> succeeded, regressions such as succeeded -> failed, or
    anything out of a terminal state) are no-ops: the transaction comes
    back unchanged with changed=False and a warning is logged.

    meta_patch is merged into meta; its provider_ref / payment_intent_ref
    keys fill the matching columns when those are still empty.
    """
    tx = get_transaction(tx_id)
    if tx is None:
        raise TransactionNotFoundError("Transaction not found", transaction_id=tx_id)
    if new_status not in Transaction.STATUSES:
        raise ValidationError(f"Unknown status: {new_status!r}")

    observed = tx.status
    if not tx.can_transition_to(new_status):
        logger.warning(
            f"Duplicate or out-of-order event: transaction {tx_id} is {observed}, "
            f"ignoring transition to {new_status}"
        )
        return tx, False

    patch = dict(meta_patch or {})
    values = {"status": new_status}
    for key in _REF_KEYS:
        ref = patch.pop(key, None)
        if ref and getattr(tx, key) is None:
            values[key] = ref
    values["meta"] = {**(tx.meta or {}), **patch}

    result = db.session.execute(
        update(Transaction)
        .where(Transaction.id == tx_id, Transaction.status == observed)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Another delivery moved it first.
        db.session.rollback()
        db.session.refresh(tx)
        logger.warning(
            f"Concurrent transition on transaction {tx_id}: now {tx.status}, "
            f"dropping {observed} -> {new_status}"
        )
        return tx, False

    log_payment_audit(f"transaction.{new_status}", transaction_id=tx_id, metadata={
        "from": observed,
        "to": new_status,
    })
    db.session.commit()
    db.session.refresh(tx)

    logger.info(f"Transaction {tx_id}: {observed} -> {new_status}")
    return tx, True


def get_transaction(tx_id):
    if not tx_id:
        return None
    return db.session.get(Transaction, str(tx_id))


def find_by_provider_ref(provider, ref):
    """Look up a transaction by processor reference.

    Matches either the intent / session id or, for checkout sessions, the
    underlying PaymentIntent id. Returns None when nothing matches.
    """
    if not ref:
        return None
    return (
        Transaction.query
        .filter(Transaction.provider == provider)
        .filter(or_(
            Transaction.provider_ref == ref,
            Transaction.payment_intent_ref == ref,
        ))
        .order_by(Transaction.created_at.asc())
        .first()
    )


def list_for_user(user_id, limit=50):
    """A user's transactions, newest first."""
    return (
        Transaction.query
        .filter_by(user_id=user_id)
        .order_by(Transaction.created_at.desc())
        .limit(limit)
        .all()
    )


def list_recent(limit=200, status=None):
    query = Transaction.query
    if status:
        query = query.filter_by(status=status)
    return query.order_by(Transaction.created_at.desc()).limit(limit).all()


def revenue_summary():
    """Succeeded revenue grouped by currency and purpose.

    Returns [{"currency", "purpose", "count", "total"}].
    """
    rows = (
        db.session.query(
            Transaction.currency,
            Transaction.purpose,
            func.count(Transaction.id),
            func.sum(Transaction.amount),
        )
        .filter(Transaction.status == STATUS_SUCCEEDED)
        .group_by(Transaction.currency, Transaction.purpose)
        .order_by(Transaction.currency, Transaction.purpose)
        .all()
    )
    return [
        {
            "currency": currency,
            "purpose": purpose,
            "count": count,
            "total": str(total if total is not None else Decimal("0")),
        }
        for currency, purpose, count, total in rows
    ]
