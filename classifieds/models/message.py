"""Message model.

Buyer -> seller messages. A message sent by a buyer who has not paid is
stored locked; purpose=message payments flip is_paid via mark_paid().
"""

import logging
import uuid
from datetime import datetime, timezone

from classifieds.extensions import db

logger = logging.getLogger(__name__)


class Message(db.Model):
    __tablename__ = "messages"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    from_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    to_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    listing_id = db.Column(
        db.String(36), db.ForeignKey("listings.id"), nullable=True
    )
    body = db.Column(db.Text, nullable=False)
    is_paid = db.Column(db.Boolean, default=False, nullable=False)
    is_contact_revealed = db.Column(db.Boolean, default=False, nullable=False)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def mark_paid(self, user_id, reveal_contact=True):
        """Unlock the message. Idempotent; flush only."""
        if self.is_paid:
            return False
        self.is_paid = True
        self.is_contact_revealed = bool(reveal_contact)
        self.paid_at = datetime.now(timezone.utc)
        db.session.flush()
        logger.info(f"Message {self.id} marked paid by user={user_id}")
        return True

    def __repr__(self):
        return f"<Message {self.id} paid={self.is_paid}>"
