"""Stripe event model (webhook delivery log).

Every verified webhook delivery is recorded by its Stripe event ID along
with the outcome. A redelivered event whose id is already here is
acknowledged without re-running reconciliation. This is only the fast
path: the transaction state machine is what makes reprocessing safe.
"""

import uuid

from classifieds.extensions import db


class StripeEvent(db.Model):
    __tablename__ = "stripe_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "payment_intent.succeeded"
    transaction_id = db.Column(db.String(36), nullable=True)
    result = db.Column(
        db.String(50), nullable=True
    )  # processed | noop | ignored | unmatched
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<StripeEvent {self.stripe_event_id} ({self.event_type})>"
