"""Payment notifications.

Receivers for the payment domain events that email the payer, and the
seller when someone pays to see their contact details. Connected
once by create_app() via register_notifications(app); receivers only
react to the app they were registered for.
"""

import logging

from classifieds.extensions import db
from classifieds.models.transaction import Transaction
from classifieds.services import events
from classifieds.services.email_service import send_email

logger = logging.getLogger(__name__)

SUBJECTS = {
    "reveal_contact": "Seller contact unlocked",
    "feature": "Your listing is now featured",
    "message": "Your message has been delivered",
    "subscription": "Your subscription is active",
}


def notify_payment_succeeded(sender, transaction_id, purpose, metadata=None, **kwargs):
    tx = db.session.get(Transaction, transaction_id)
    if tx is None or tx.user is None or not tx.user.email:
        return
    if not sender.config.get("MAIL_NOTIFICATIONS", True):
        return
    send_email(
        to=tx.user.email,
        subject=SUBJECTS.get(purpose, "Payment received"),
        template="emails/payment_succeeded.html",
        context={"transaction": tx, "user": tx.user, "listing": tx.listing},
    )
    logger.info(f"Queued payment receipt for transaction {transaction_id}")


def notify_seller_contact_revealed(sender, transaction_id, purpose, metadata=None, **kwargs):
    """Tell the seller a buyer paid to see their contact details."""
    if purpose != "reveal_contact":
        return
    if not sender.config.get("MAIL_NOTIFICATIONS", True):
        return
    if not sender.config.get("NOTIFY_SELLER_ON_REVEAL", True):
        return
    tx = db.session.get(Transaction, transaction_id)
    if tx is None or tx.listing is None:
        return
    seller = tx.listing.owner
    if seller is None or not seller.email or seller.id == tx.user_id:
        return
    send_email(
        to=seller.email,
        subject="Someone purchased access to your listing",
        template="emails/contact_revealed.html",
        context={"seller": seller, "buyer": tx.user, "listing": tx.listing},
    )
    logger.info(f"Queued reveal notice to seller for transaction {transaction_id}")


def notify_payment_failed(sender, transaction_id, metadata=None, **kwargs):
    tx = db.session.get(Transaction, transaction_id)
    if tx is None or tx.user is None or not tx.user.email:
        return
    if not sender.config.get("MAIL_NOTIFICATIONS", True):
        return
    send_email(
        to=tx.user.email,
        subject="Your payment did not go through",
        template="emails/payment_failed.html",
        context={
            "transaction": tx,
            "user": tx.user,
            "reason": (metadata or {}).get("failure_message"),
        },
    )
    logger.info(f"Queued failed-payment notice for transaction {transaction_id}")


def register_notifications(app):
    events.payment_succeeded.connect(notify_payment_succeeded, sender=app)
    events.payment_succeeded.connect(notify_seller_contact_revealed, sender=app)
    events.payment_failed.connect(notify_payment_failed, sender=app)
