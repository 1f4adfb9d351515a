"""Listing model.

Only the fields the payment pipeline touches: the owner, the hidden
contact details sold behind the paywall, and a reveal counter bumped by
mark_contact_revealed(). Featured state is NOT stored here; it is derived
from entitlement_grants (see entitlement_service.is_featured).
"""

import logging
import uuid

from classifieds.extensions import db

logger = logging.getLogger(__name__)


class Listing(db.Model):
    __tablename__ = "listings"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    owner_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    title = db.Column(db.String(255), nullable=False)
    contact_email = db.Column(db.String(255), nullable=True)
    contact_phone = db.Column(db.String(50), nullable=True)
    contact_reveal_count = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    owner = db.relationship("User", back_populates="listings")

    def mark_contact_revealed(self, user_id):
        """Record that user_id now has access to this listing's contact.

        Called once per new reveal grant. Uses flush() so the caller
        controls the commit boundary.
        """
        self.contact_reveal_count = (self.contact_reveal_count or 0) + 1
        db.session.flush()
        logger.info(f"Contact revealed: listing={self.id} to_user={user_id}")

    def contact_details(self):
        return {
            "email": self.contact_email,
            "phone": self.contact_phone,
        }

    def __repr__(self):
        return f"<Listing {self.title}>"
