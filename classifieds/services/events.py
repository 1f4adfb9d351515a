"""Domain events emitted by the payment pipeline.

Collaborators (email notifications, dashboards) connect receivers to these
blinker signals; the pipeline does not know who listens.

    from classifieds.services.events import payment_succeeded

    @payment_succeeded.connect
    def on_paid(sender, transaction_id, purpose, metadata):
        ...

Receivers are called with the Flask app as sender and keyword arguments
only. emit() is fire-and-forget: a receiver that raises is logged and
skipped, it never fails the reconciliation that emitted the event.
"""

import logging

from blinker import Namespace
from flask import current_app

logger = logging.getLogger(__name__)

_signals = Namespace()

payment_succeeded = _signals.signal("payment-succeeded")
payment_failed = _signals.signal("payment-failed")
payment_refunded = _signals.signal("payment-refunded")
subscription_started = _signals.signal("subscription-started")


def emit(signal, **kwargs):
    """Send signal to every receiver, isolating receiver failures.

    Returns the number of receivers that ran without raising.
    """
    sender = current_app._get_current_object()
    delivered = 0
    for receiver in signal.receivers_for(sender):
        try:
            receiver(sender, **kwargs)
            delivered += 1
        except Exception:
            logger.error(
                f"Receiver {getattr(receiver, '__name__', receiver)!r} "
                f"for {signal.name} failed",
                exc_info=True,
            )
    return delivered
