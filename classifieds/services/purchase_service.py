"""Purchase service — starting a payment.

Every flow follows the same order:
    1. validate user / purpose / listing / message
    2. price from pricing_service (client amounts are never read)
    3. insert a pending transaction (committed)
    4. call the gateway with pc_* metadata pointing back at the row
    5. attach the processor reference

A gateway failure in step 4 leaves the transaction pending for audit and
for a late webhook to resolve; the error propagates to the caller.
"""

import logging
from urllib.parse import quote

from classifieds.errors import (
    ConfigurationError,
    InvalidPurposeError,
    PaymentError,
    ValidationError,
)
from classifieds.extensions import db
from classifieds.models.listing import Listing
from classifieds.models.message import Message
from classifieds.models.transaction import (
    PROVIDER_PAYPAL,
    PROVIDER_STRIPE,
    PURPOSE_FEATURE,
    PURPOSE_MESSAGE,
    PURPOSE_REVEAL_CONTACT,
    PURPOSE_SUBSCRIPTION,
    Transaction,
)
from classifieds.models.user import User
from classifieds.services import entitlement_service, ledger_service, stripe_service
from classifieds.services.config_provider import current_config
from classifieds.services.pricing_service import feature_days, resolve_price

logger = logging.getLogger(__name__)

_LABELS = {
    PURPOSE_REVEAL_CONTACT: "Reveal seller contact",
    PURPOSE_FEATURE: "Feature listing",
    PURPOSE_MESSAGE: "Unlock message",
    PURPOSE_SUBSCRIPTION: "Subscription",
}


# ──────────────────────────────────────────────
# Validation
# ──────────────────────────────────────────────

def validate_purchase(user_id, purpose, listing_id=None, message_id=None):
    """Check a one-off purchase request. Returns (user, listing, message).

    Raises InvalidPurposeError / ValidationError.
    """
    user = db.session.get(User, user_id) if user_id else None
    if user is None or not user.is_active:
        raise ValidationError("Unknown user")
    if purpose not in Transaction.PURPOSES:
        raise InvalidPurposeError(f"Invalid purpose: {purpose!r}", purpose=purpose)
    if purpose == PURPOSE_SUBSCRIPTION:
        raise ValidationError("Subscriptions are started through the subscription checkout")

    message = None
    if purpose == PURPOSE_MESSAGE:
        message = db.session.get(Message, message_id) if message_id else None
        if message is None or message.from_user_id != user.id:
            raise ValidationError("Message not found", message_id=message_id)
        if message.is_paid:
            raise ValidationError("Message is already unlocked", message_id=message_id)
        listing_id = listing_id or message.listing_id

    listing = db.session.get(Listing, listing_id) if listing_id else None
    if purpose in (PURPOSE_REVEAL_CONTACT, PURPOSE_FEATURE) and listing is None:
        raise ValidationError("Listing not found", listing_id=listing_id)
    if purpose == PURPOSE_MESSAGE and listing_id and listing is None:
        raise ValidationError("Listing not found", listing_id=listing_id)

    if purpose == PURPOSE_REVEAL_CONTACT:
        if listing.owner_id == user.id:
            raise ValidationError("You cannot buy the contact of your own listing")
        if entitlement_service.has_reveal(user.id, listing.id):
            raise ValidationError("Contact already revealed", listing_id=listing.id)
    if purpose == PURPOSE_FEATURE and listing.owner_id != user.id:
        raise ValidationError("Only the owner can feature a listing", listing_id=listing.id)

    return user, listing, message


def _gateway_metadata(tx):
    return {
        "pc_transaction_id": tx.id,
        "pc_purpose": tx.purpose,
        "pc_listing_id": tx.listing_id,
        "pc_message_id": tx.message_id,
        "pc_user_id": tx.user_id,
    }


def _create_pending(user, listing, message, purpose, provider, extra_meta=None):
    amount, currency = resolve_price(purpose)
    meta = {"message_id": message.id if message else None}
    if purpose == PURPOSE_FEATURE:
        meta["feature_days"] = feature_days()
    meta.update(extra_meta or {})
    return ledger_service.create_transaction(
        user.id,
        listing.id if listing else None,
        purpose,
        amount,
        currency,
        provider,
        meta=meta,
    )


def _attach(tx, ref, payment_intent_ref=None):
    try:
        ledger_service.attach_provider_ref(tx.id, ref, payment_intent_ref=payment_intent_ref)
    except ValidationError:
        # The webhook beat us; it has already recorded the reference.
        logger.info(f"Transaction {tx.id} resolved before its reference was attached")


def _gateway_failed(tx, error):
    error.details.setdefault("transaction_id", tx.id)
    logger.warning(
        f"Gateway call failed for transaction {tx.id}; left pending: {error.message}"
    )


def _return_urls(tx):
    base_url = (current_config().get("APP_BASE_URL") or "").rstrip("/")
    return (
        f"{base_url}/?pc_payment=success&tx={tx.id}",
        f"{base_url}/?pc_payment=cancel&tx={tx.id}",
    )


# ──────────────────────────────────────────────
# Stripe flows
# ──────────────────────────────────────────────

def initiate_payment_intent(user_id, purpose, listing_id=None, message_id=None):
    """Embedded card form flow.

    Returns {"transaction_id", "client_secret", "amount", "currency",
    "publishable_key"}.
    """
    user, listing, message = validate_purchase(user_id, purpose, listing_id, message_id)
    tx = _create_pending(user, listing, message, purpose, PROVIDER_STRIPE)

    try:
        intent = stripe_service.create_intent(
            stripe_service.to_minor_units(tx.amount, tx.currency),
            tx.currency,
            _gateway_metadata(tx),
            description=f"{_LABELS[purpose]} ({tx.id})",
            idempotency_key=f"pc-intent-{tx.id}",
        )
    except PaymentError as e:
        _gateway_failed(tx, e)
        raise

    _attach(tx, intent["provider_ref"], payment_intent_ref=intent["provider_ref"])
    return {
        "transaction_id": tx.id,
        "client_secret": intent["client_secret"],
        "amount": str(tx.amount),
        "currency": tx.currency,
        "publishable_key": current_config().get("STRIPE_PUBLISHABLE_KEY"),
    }


def initiate_checkout_session(user_id, purpose, listing_id=None, message_id=None):
    """Redirect flow. Returns {"transaction_id", "checkout_session_id", "url"}."""
    user, listing, message = validate_purchase(user_id, purpose, listing_id, message_id)
    tx = _create_pending(user, listing, message, purpose, PROVIDER_STRIPE)
    success_url, cancel_url = _return_urls(tx)

    line_item = {
        "price_data": {
            "currency": tx.currency.lower(),
            "unit_amount": stripe_service.to_minor_units(tx.amount, tx.currency),
            "product_data": {"name": _LABELS[purpose]},
        },
        "quantity": 1,
    }
    try:
        session = stripe_service.create_checkout_session(
            line_item,
            success_url,
            cancel_url,
            _gateway_metadata(tx),
            mode="payment",
            customer_email=user.email,
            idempotency_key=f"pc-checkout-{tx.id}",
        )
    except PaymentError as e:
        _gateway_failed(tx, e)
        raise

    _attach(tx, session["provider_ref"], payment_intent_ref=session["payment_intent"])
    return {
        "transaction_id": tx.id,
        "checkout_session_id": session["provider_ref"],
        "url": session["url"],
    }


def initiate_subscription(user_id, plan_key=None):
    """Checkout in subscription mode against STRIPE_SUBSCRIPTION_PRICE_ID.

    The recorded amount is PRICE_SUBSCRIPTION (informational, 0 when
    unset); Stripe bills the configured price.
    """
    user = db.session.get(User, user_id) if user_id else None
    if user is None or not user.is_active:
        raise ValidationError("Unknown user")

    config = current_config()
    price_id = config.get("STRIPE_SUBSCRIPTION_PRICE_ID")
    if not price_id:
        raise ConfigurationError("Subscription price is not configured (STRIPE_SUBSCRIPTION_PRICE_ID)")

    tx = _create_pending(
        user, None, None, PURPOSE_SUBSCRIPTION, PROVIDER_STRIPE,
        extra_meta={"plan_key": plan_key or "default", "price_id": price_id},
    )
    success_url, cancel_url = _return_urls(tx)

    try:
        session = stripe_service.create_checkout_session(
            {"price": price_id, "quantity": 1},
            success_url,
            cancel_url,
            _gateway_metadata(tx),
            mode="subscription",
            customer_email=user.email,
            idempotency_key=f"pc-subscription-{tx.id}",
            config=config,
        )
    except PaymentError as e:
        _gateway_failed(tx, e)
        raise

    _attach(tx, session["provider_ref"])
    return {
        "transaction_id": tx.id,
        "checkout_session_id": session["provider_ref"],
        "url": session["url"],
    }


# ──────────────────────────────────────────────
# PayPal (manual)
# ──────────────────────────────────────────────

def initiate_paypal(user_id, purpose, listing_id=None, message_id=None):
    """PayPal-by-email: record a pending transaction and return payment
    instructions. An admin confirms receipt later
    (reconciliation_service.confirm_manual_payment).
    """
    user, listing, message = validate_purchase(user_id, purpose, listing_id, message_id)

    paypal_email = (current_config().get("PAYPAL_EMAIL") or "").strip()
    if not paypal_email:
        raise ConfigurationError("PayPal payments are not configured (PAYPAL_EMAIL)")

    tx = _create_pending(user, listing, message, purpose, PROVIDER_PAYPAL)
    amount = str(tx.amount)

    # No "@" means the admin stored a PayPal.me handle rather than an email.
    paypal_me_link = None
    if "@" not in paypal_email:
        paypal_me_link = f"https://paypal.me/{quote(paypal_email)}/{amount}"

    logger.info(f"PayPal instructions issued for transaction {tx.id}")
    return {
        "transaction_id": tx.id,
        "provider": PROVIDER_PAYPAL,
        "amount": amount,
        "currency": tx.currency,
        "paypal_email": paypal_email,
        "paypal_me_link": paypal_me_link,
        "instructions": (
            f"Please send {amount} {tx.currency} to the PayPal account "
            f"{paypal_email} quoting reference {tx.id}. Access is granted once "
            f"an administrator confirms the payment."
        ),
    }
