"""Entitlement service — the access-grant ledger.

Responsible for:
- Lifetime contact-reveal grants, idempotent per (user, listing)
- Feature/boost windows per listing: a new purchase extends to the later
  expiry (max), never stacks, never shortens
- Paid-message unlock and subscription grants
- Revocation (refunds, admin)

Every write goes through _get_or_create(), which relies on the unique
scope_key so two racing grants for the same thing collapse into one row.
All functions flush only; the caller owns the commit.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from classifieds.errors import ValidationError
from classifieds.extensions import db
from classifieds.models.entitlement import EntitlementGrant, _aware
from classifieds.models.listing import Listing
from classifieds.models.transaction import (
    PURPOSE_FEATURE,
    PURPOSE_MESSAGE,
    PURPOSE_REVEAL_CONTACT,
    PURPOSE_SUBSCRIPTION,
    STATUS_SUCCEEDED,
    Transaction,
)

logger = logging.getLogger(__name__)

FEATURE_UNTIL_KEY = "feature_until"


def reveal_scope(user_id, listing_id):
    return f"{PURPOSE_REVEAL_CONTACT}:{user_id}:{listing_id}"


def feature_scope(listing_id):
    return f"{PURPOSE_FEATURE}:{listing_id}"


def message_scope(message_id):
    return f"{PURPOSE_MESSAGE}:{message_id}"


def subscription_scope(user_id, ref):
    return f"{PURPOSE_SUBSCRIPTION}:{user_id}:{ref}"


def _utcnow():
    return datetime.now(timezone.utc)


def _get_or_create(scope_key, **fields):
    """Return (grant, created) for scope_key, inserting if absent.

    The insert runs in a SAVEPOINT; losing a race to a concurrent insert
    of the same scope_key rolls back only the savepoint and returns the
    winner's row.
    """
    grant = _find(scope_key)
    if grant is not None:
        return grant, False

    grant = EntitlementGrant(scope_key=scope_key, granted_at=_utcnow(), **fields)
    try:
        with db.session.begin_nested():
            db.session.add(grant)
    except IntegrityError:
        logger.info(f"Grant {scope_key} created concurrently, reusing it")
        winner = _find(scope_key)
        if winner is None:
            raise
        return winner, False
    return grant, True


def _find(scope_key):
    return EntitlementGrant.query.filter_by(scope_key=scope_key).first()


def _reactivate(grant, tx_id, expires_at=None):
    grant.revoked_at = None
    grant.transaction_id = tx_id
    grant.granted_at = _utcnow()
    grant.expires_at = expires_at
    db.session.flush()


# ──────────────────────────────────────────────
# Contact reveal
# ──────────────────────────────────────────────

def grant_reveal(user_id, listing_id, tx_id):
    """Grant lifetime access to a listing's contact details.

    Idempotent: returns (existing_grant, False) when the pair already has
    an active grant, however many transactions paid for it.
    """
    grant, created = _get_or_create(
        reveal_scope(user_id, listing_id),
        user_id=user_id,
        listing_id=listing_id,
        purpose=PURPOSE_REVEAL_CONTACT,
        transaction_id=tx_id,
        expires_at=None,
    )
    if not created and grant.revoked_at is not None:
        _reactivate(grant, tx_id)
        created = True
    return grant, created


def has_reveal(user_id, listing_id):
    grant = EntitlementGrant.query.filter_by(
        scope_key=reveal_scope(user_id, listing_id)
    ).first()
    return grant is not None and grant.is_active()


# ──────────────────────────────────────────────
# Feature / boost
# ──────────────────────────────────────────────

def grant_or_extend_feature(listing_id, until, tx_id):
    """Feature a listing until `until`, or push an existing window out.

    expires_at becomes max(existing expires_at, until): a later purchase
    with a shorter window never shortens the boost, and windows do not add
    up. Returns the grant.

    The grant belongs to the paying user, or to the listing owner when no
    transaction is given (admin or CLI grants).
    """
    until = _aware(until)
    tx = db.session.get(Transaction, tx_id) if tx_id else None
    if tx is not None:
        holder_id = tx.user_id
        # Kept per purchase so a refund can rebuild the window from the rest.
        tx.meta = {**(tx.meta or {}), FEATURE_UNTIL_KEY: until.isoformat()}
    else:
        listing = db.session.get(Listing, listing_id)
        if listing is None:
            raise ValidationError("Listing not found", listing_id=listing_id)
        holder_id = listing.owner_id
    grant, created = _get_or_create(
        feature_scope(listing_id),
        user_id=holder_id,
        listing_id=listing_id,
        purpose=PURPOSE_FEATURE,
        transaction_id=tx_id,
        expires_at=until,
    )
    if created:
        return grant

    if grant.revoked_at is not None:
        _reactivate(grant, tx_id, expires_at=until)
    elif grant.expires_at is None or _aware(grant.expires_at) < until:
        grant.expires_at = until
        grant.transaction_id = tx_id
        db.session.flush()
    else:
        logger.info(
            f"Feature for listing {listing_id} already runs until "
            f"{grant.expires_at}; keeping it"
        )
    return grant


def is_featured(listing_id, now=None):
    grant = EntitlementGrant.query.filter_by(
        scope_key=feature_scope(listing_id)
    ).first()
    return (
        grant is not None
        and grant.expires_at is not None
        and grant.is_active(now=now)
    )


def featured_until(listing_id):
    grant = EntitlementGrant.query.filter_by(
        scope_key=feature_scope(listing_id)
    ).first()
    if grant is None or not grant.is_active():
        return None
    return _aware(grant.expires_at)


# ──────────────────────────────────────────────
# Paid messages & subscriptions
# ──────────────────────────────────────────────

def grant_message(user_id, message_id, listing_id, tx_id):
    """Record the unlock of one paid message. Returns (grant, created)."""
    return _get_or_create(
        message_scope(message_id),
        user_id=user_id,
        listing_id=listing_id,
        message_id=message_id,
        purpose=PURPOSE_MESSAGE,
        transaction_id=tx_id,
        expires_at=None,
    )


def grant_subscription(user_id, tx_id, ref):
    """Record a subscription start. No expiry here: recurring billing
    state lives with the processor. Returns (grant, created)."""
    grant, created = _get_or_create(
        subscription_scope(user_id, ref),
        user_id=user_id,
        purpose=PURPOSE_SUBSCRIPTION,
        transaction_id=tx_id,
        expires_at=None,
    )
    if not created and grant.revoked_at is not None:
        _reactivate(grant, tx_id)
        created = True
    return grant, created


# ──────────────────────────────────────────────
# Revocation & queries
# ──────────────────────────────────────────────

def revoke(purpose, user_id=None, listing_id=None):
    """Revoke active grants of `purpose` for a user and/or listing.

    At least one of user_id / listing_id is required. Returns the number
    of grants revoked.
    """
    if user_id is None and listing_id is None:
        raise ValueError("revoke() needs a user_id or a listing_id")

    query = EntitlementGrant.query.filter_by(purpose=purpose, revoked_at=None)
    if user_id is not None:
        query = query.filter_by(user_id=user_id)
    if listing_id is not None:
        query = query.filter_by(listing_id=listing_id)
    return _revoke_all(query.all())


def revoke_for_transaction(tx_id):
    """Withdraw what tx_id paid for after a refund.

    A grant is only revoked when no other succeeded transaction still pays
    for it. Otherwise it is handed over to that transaction; a feature
    window shrinks back to the latest expiry the remaining purchases
    cover. Returns the number of grants revoked.
    """
    tx = db.session.get(Transaction, tx_id)
    grants = {
        g.id: g for g in EntitlementGrant.query.filter_by(
            transaction_id=tx_id, revoked_at=None
        ).all()
    }
    scope_key = _scope_for(tx) if tx is not None else None
    if scope_key:
        grant = _find(scope_key)
        # Grants made without a payment (admin, CLI) are left alone.
        if grant is not None and grant.revoked_at is None and grant.transaction_id:
            grants[grant.id] = grant

    to_revoke = []
    for grant in grants.values():
        others = _covering_transactions(grant, exclude_tx_id=tx_id)
        if grant.purpose == PURPOSE_FEATURE:
            if not _shrink_feature(grant, others):
                to_revoke.append(grant)
        elif others:
            grant.transaction_id = others[0].id
            logger.info(
                f"Grant {grant.scope_key} still paid for by transaction {others[0].id}"
            )
        else:
            to_revoke.append(grant)
    db.session.flush()
    return _revoke_all(to_revoke)


def _scope_for(tx):
    if tx.purpose == PURPOSE_REVEAL_CONTACT and tx.listing_id:
        return reveal_scope(tx.user_id, tx.listing_id)
    if tx.purpose == PURPOSE_FEATURE and tx.listing_id:
        return feature_scope(tx.listing_id)
    if tx.purpose == PURPOSE_MESSAGE and tx.message_id:
        return message_scope(tx.message_id)
    # Subscription grants are keyed by processor ref; transaction_id finds them.
    return None


def _covering_transactions(grant, exclude_tx_id):
    """Other succeeded transactions paying for grant, newest first."""
    if grant.purpose == PURPOSE_SUBSCRIPTION:
        return []
    query = Transaction.query.filter(
        Transaction.status == STATUS_SUCCEEDED,
        Transaction.purpose == grant.purpose,
        Transaction.id != exclude_tx_id,
    )
    if grant.purpose == PURPOSE_FEATURE:
        query = query.filter(Transaction.listing_id == grant.listing_id)
    else:
        query = query.filter(Transaction.user_id == grant.user_id)
        if grant.purpose == PURPOSE_REVEAL_CONTACT:
            query = query.filter(Transaction.listing_id == grant.listing_id)
    txs = query.order_by(Transaction.created_at.desc()).all()
    if grant.purpose == PURPOSE_MESSAGE:
        txs = [t for t in txs if t.message_id == grant.message_id]
    return txs


def _shrink_feature(grant, others):
    """Cut a feature window back to what `others` still cover.

    Returns False when nothing in the future is left to cover.
    """
    now = _utcnow()
    windows = []
    for other in others:
        end = feature_window_end(other)
        if end is not None and end > now:
            windows.append((end, other))
    if not windows:
        return False
    end, covering = max(windows, key=lambda w: w[0])
    grant.expires_at = end
    grant.transaction_id = covering.id
    logger.info(
        f"Feature for listing {grant.listing_id} cut back to {end} "
        f"(transaction {covering.id})"
    )
    return True


def feature_window_end(tx):
    """The expiry a succeeded feature transaction bought, if recorded."""
    value = (tx.meta or {}).get(FEATURE_UNTIL_KEY)
    if not value:
        return None
    return _aware(datetime.fromisoformat(value))


def _revoke_all(grants):
    now = _utcnow()
    for grant in grants:
        grant.revoked_at = now
        logger.info(f"Revoked grant {grant.scope_key}")
    db.session.flush()
    return len(grants)


def grants_for_transaction(tx_id):
    return EntitlementGrant.query.filter_by(transaction_id=tx_id).all()


def active_grants_for_user(user_id):
    grants = (
        EntitlementGrant.query
        .filter_by(user_id=user_id, revoked_at=None)
        .order_by(EntitlementGrant.granted_at.desc())
        .all()
    )
    now = _utcnow()
    return [g for g in grants if g.is_active(now=now)]
