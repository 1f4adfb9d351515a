"""Entitlement grant model (access ledger).

A row is durable proof that a user paid for and received an access
right. Rows are only written as a side effect of a transaction reaching
`succeeded`, never from client input.

scope_key is the uniqueness unit, enforced by a unique constraint so two
racing successful payments cannot create two grants for the same thing:

    reveal_contact  -> "reveal_contact:<user_id>:<listing_id>"  (lifetime)
    feature         -> "feature:<listing_id>"                  (time-boxed)
    message         -> "message:<message_id>"                  (lifetime)
    subscription    -> "subscription:<user_id>:<ref>"          (processor-managed)

Revocation sets revoked_at instead of deleting, so a later purchase can
reactivate the same row.
"""

import uuid
from datetime import datetime, timezone

from classifieds.extensions import db


class EntitlementGrant(db.Model):
    __tablename__ = "entitlement_grants"
    __table_args__ = (
        db.Index(
            "ix_entitlement_grants_user_listing_purpose",
            "user_id", "listing_id", "purpose",
        ),
    )

    PURPOSES = ["reveal_contact", "feature", "message", "subscription"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    scope_key = db.Column(db.String(255), unique=True, nullable=False)
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    listing_id = db.Column(
        db.String(36), db.ForeignKey("listings.id"), nullable=True
    )
    message_id = db.Column(
        db.String(36), db.ForeignKey("messages.id"), nullable=True
    )
    purpose = db.Column(db.String(30), nullable=False)
    transaction_id = db.Column(
        db.String(36), db.ForeignKey("transactions.id"), nullable=True
    )  # audit: the transaction that last granted / extended this row
    granted_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    expires_at = db.Column(
        db.DateTime(timezone=True), nullable=True
    )  # null = lifetime
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def is_active(self, now=None):
        if self.revoked_at is not None:
            return False
        if self.expires_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return _aware(self.expires_at) > now

    def to_dict(self):
        return {
            "id": self.id,
            "purpose": self.purpose,
            "user_id": self.user_id,
            "listing_id": self.listing_id,
            "message_id": self.message_id,
            "transaction_id": self.transaction_id,
            "granted_at": self.granted_at.isoformat() if self.granted_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
        }

    def __repr__(self):
        return f"<EntitlementGrant {self.scope_key}>"


def _aware(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
