"""Transaction model (payment ledger).

One row per purchase attempt. Created `pending` by purchase initiation,
mutated only by ledger_service.transition() / attach_provider_ref(),
never deleted.

State machine:
    pending   -> succeeded | failed
    succeeded -> refunded
    failed, refunded are terminal

provider_ref is the processor's PaymentIntent / Checkout Session id and
is the join key for webhooks. payment_intent_ref additionally holds the
PaymentIntent id for checkout-session transactions so charge.refunded
(which only carries a payment_intent) can be correlated.
"""

import uuid
from decimal import Decimal

from classifieds.extensions import db


PURPOSE_REVEAL_CONTACT = "reveal_contact"
PURPOSE_FEATURE = "feature"
PURPOSE_MESSAGE = "message"
PURPOSE_SUBSCRIPTION = "subscription"

PROVIDER_STRIPE = "stripe"
PROVIDER_PAYPAL = "paypal"
PROVIDER_MANUAL_TEST = "manual_test"

STATUS_PENDING = "pending"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
STATUS_REFUNDED = "refunded"


class Transaction(db.Model):
    __tablename__ = "transactions"
    __table_args__ = (
        db.UniqueConstraint(
            "provider", "provider_ref", name="uq_transactions_provider_ref"
        ),
        db.Index(
            "ix_transactions_user_listing_purpose",
            "user_id", "listing_id", "purpose",
        ),
        db.Index(
            "ix_transactions_payment_intent_ref", "provider", "payment_intent_ref"
        ),
    )

    PURPOSES = [
        PURPOSE_REVEAL_CONTACT,
        PURPOSE_FEATURE,
        PURPOSE_MESSAGE,
        PURPOSE_SUBSCRIPTION,
    ]
    PROVIDERS = [PROVIDER_STRIPE, PROVIDER_PAYPAL, PROVIDER_MANUAL_TEST]
    STATUSES = [STATUS_PENDING, STATUS_SUCCEEDED, STATUS_FAILED, STATUS_REFUNDED]

    # Allowed (from -> to) moves; anything else is a duplicate / no-op.
    TRANSITIONS = {
        STATUS_PENDING: (STATUS_SUCCEEDED, STATUS_FAILED),
        STATUS_SUCCEEDED: (STATUS_REFUNDED,),
        STATUS_FAILED: (),
        STATUS_REFUNDED: (),
    }

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    listing_id = db.Column(
        db.String(36), db.ForeignKey("listings.id"), nullable=True
    )
    purpose = db.Column(
        db.String(30), nullable=False
    )  # reveal_contact | feature | message | subscription
    amount = db.Column(db.Numeric(12, 2), nullable=False)  # major units
    currency = db.Column(db.String(3), nullable=False)  # ISO 4217, upper-case
    provider = db.Column(
        db.String(30), nullable=False
    )  # stripe | paypal | manual_test
    provider_ref = db.Column(db.String(255), nullable=True)  # pi_... / cs_...
    payment_intent_ref = db.Column(db.String(255), nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default=STATUS_PENDING
    )  # pending | succeeded | failed | refunded
    meta = db.Column(db.JSON, default=dict)  # informational only
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="transactions")
    listing = db.relationship("Listing")

    @property
    def is_terminal(self):
        return not self.TRANSITIONS.get(self.status)

    @property
    def message_id(self):
        return (self.meta or {}).get("message_id")

    def can_transition_to(self, new_status):
        return new_status in self.TRANSITIONS.get(self.status, ())

    def to_dict(self):
        amount = self.amount if self.amount is not None else Decimal("0")
        return {
            "id": self.id,
            "user_id": self.user_id,
            "listing_id": self.listing_id,
            "purpose": self.purpose,
            "amount": str(amount),
            "currency": self.currency,
            "provider": self.provider,
            "provider_ref": self.provider_ref,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Transaction {self.id} {self.purpose} ({self.status})>"
