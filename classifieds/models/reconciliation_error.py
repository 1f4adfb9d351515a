"""Reconciliation error model (retry queue).

When a transaction has durably moved to `succeeded` but applying its
entitlement raised, the failure lands here instead of rolling back the
payment. `flask retry-reconciliation` and the admin retry route drain
open rows; entitlement application is idempotent so retries are safe.

A `late_success` row records a success the processor reported after the
ledger had already marked the transaction failed. Nothing is granted for
it automatically; an admin refunds or honours the payment and resolves it.
"""

import uuid

from classifieds.extensions import db


class ReconciliationError(db.Model):
    __tablename__ = "reconciliation_errors"

    STATUSES = ["open", "resolved"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    transaction_id = db.Column(
        db.String(36), db.ForeignKey("transactions.id"), nullable=False
    )
    stage = db.Column(
        db.String(50), nullable=False, default="grant"
    )  # grant | revoke | late_success
    error_message = db.Column(db.Text, nullable=False)
    attempts = db.Column(db.Integer, default=1, nullable=False)
    status = db.Column(db.String(20), default="open", nullable=False, index=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # --- Relationships ---
    transaction = db.relationship("Transaction")

    def to_dict(self):
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "stage": self.stage,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ReconciliationError tx={self.transaction_id} ({self.status})>"
