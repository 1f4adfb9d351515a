"""Stripe service — the payment gateway adapter.

Responsible for:
- Currency-aware conversion between major and minor units (exact, Decimal)
- Creating PaymentIntents (embedded card form flow)
- Creating Checkout Sessions (redirect flow, one-off payments + subscriptions)
- Retrieving payment state when a webhook is late
- Verifying webhook signatures and normalising the payload into an Event

Stripe SDK exceptions never leave this module; they are mapped to the
errors in classifieds.errors. Credentials are read through a
ConfigProvider and passed per call (api_key=...) rather than set on the
stripe module globally.
"""

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

import stripe

from classifieds.errors import (
    ConfigurationError,
    GatewayRequestError,
    GatewayUnavailableError,
    SignatureInvalidError,
    ValidationError,
)
from classifieds.services.config_provider import current_config

logger = logging.getLogger(__name__)


# Stripe's zero-decimal currencies: amounts are sent as-is.
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})

# Three-decimal currencies need a different ledger scale; not supported.
UNSUPPORTED_CURRENCIES = frozenset({"BHD", "JOD", "KWD", "OMR", "TND"})


@dataclass
class Event:
    """A verified, normalised processor callback.

    Reconciliation only ever sees this shape, whatever the processor sent.
    """

    type: str
    object: dict
    metadata: dict = field(default_factory=dict)
    id: str = None
    livemode: bool = False
    verified: bool = True


# ──────────────────────────────────────────────
# Currency helpers
# ──────────────────────────────────────────────

def normalize_currency(currency):
    """Upper-case and validate an ISO 4217 code.

    Raises ValidationError for malformed or unsupported codes.
    """
    code = (currency or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError(f"Invalid currency code: {currency!r}")
    if code in UNSUPPORTED_CURRENCIES:
        raise ValidationError(f"Currency {code} is not supported")
    return code


def currency_exponent(currency):
    """Number of minor-unit digits: 0 for zero-decimal currencies, else 2."""
    return 0 if normalize_currency(currency) in ZERO_DECIMAL_CURRENCIES else 2


def _to_decimal(amount):
    if isinstance(amount, Decimal):
        value = amount
    elif isinstance(amount, float):
        # str() gives the shortest repr, so 19.99 -> Decimal("19.99")
        value = Decimal(str(amount))
    else:
        try:
            value = Decimal(str(amount).strip())
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")
    return value


def to_minor_units(amount, currency):
    """Convert a major-unit amount to the integer Stripe expects.

    to_minor_units(19.99, "USD") == 1999
    to_minor_units(500, "JPY") == 500

    Raises ValidationError if the amount is negative or carries more
    precision than the currency allows (no silent rounding).
    """
    value = _to_decimal(amount)
    if value < 0:
        raise ValidationError("Amount must not be negative")
    scaled = value.scaleb(currency_exponent(currency))
    if scaled != scaled.to_integral_value():
        raise ValidationError(
            f"Amount {value} has more precision than {normalize_currency(currency)} allows"
        )
    return int(scaled)


def from_minor_units(minor, currency):
    """Inverse of to_minor_units: 1999, "USD" -> Decimal("19.99")."""
    exponent = currency_exponent(currency)
    value = Decimal(int(minor)).scaleb(-exponent)
    return value.quantize(Decimal(1).scaleb(-exponent))


# ──────────────────────────────────────────────
# API calls
# ──────────────────────────────────────────────

def _api_key(config):
    api_key = config.get("STRIPE_SECRET_KEY")
    if not api_key:
        raise GatewayUnavailableError("Stripe secret key not configured.")
    return api_key


def _call_stripe(operation, func, **params):
    """Invoke a Stripe SDK call and map its errors onto our taxonomy."""
    try:
        return func(**params)
    except (stripe.APIConnectionError, stripe.RateLimitError) as e:
        logger.error(f"Stripe {operation} unavailable: {e}")
        raise GatewayUnavailableError(
            "Payment processor is unavailable. Please try again."
        ) from e
    except stripe.AuthenticationError as e:
        logger.error(f"Stripe {operation} rejected our credentials: {e}")
        raise GatewayUnavailableError("Payment processor credentials rejected.") from e
    except stripe.StripeError as e:
        message = getattr(e, "user_message", None) or str(e)
        logger.warning(f"Stripe {operation} error: {message}")
        raise GatewayRequestError(
            message, stripe_code=getattr(e, "code", None)
        ) from e


def create_intent(amount_minor, currency, metadata, description=None,
                  idempotency_key=None, config=None):
    """Create a PaymentIntent for a one-off payment.

    metadata must carry pc_transaction_id so the webhook can find the
    ledger row even before provider_ref is attached.

    Returns {"provider_ref": "pi_...", "client_secret": "..."}.
    Raises GatewayUnavailableError / GatewayRequestError.
    """
    config = config or current_config()
    api_key = _api_key(config)

    params = {
        "amount": int(amount_minor),
        "currency": normalize_currency(currency).lower(),
        "automatic_payment_methods": {"enabled": True},
        "metadata": _stringify(metadata),
        "api_key": api_key,
    }
    if description:
        params["description"] = description
    if idempotency_key:
        params["idempotency_key"] = idempotency_key

    intent = _call_stripe("create_intent", stripe.PaymentIntent.create, **params)
    logger.info(f"Created PaymentIntent {intent.id} for {params['amount']} {params['currency']}")
    return {
        "provider_ref": intent.id,
        "client_secret": intent.client_secret,
    }


def create_checkout_session(line_item, success_url, cancel_url, metadata,
                            mode="payment", customer_email=None,
                            idempotency_key=None, config=None):
    """Create a Stripe Checkout Session (redirect flow).

    mode="payment" for reveal / feature / message, "subscription" for
    plans. In payment mode the metadata is copied onto the underlying
    PaymentIntent as well, so payment_intent.* events resolve to the same
    ledger row.

    Returns {"provider_ref": "cs_...", "url": "...", "payment_intent": "pi_..." | None}.
    """
    config = config or current_config()
    api_key = _api_key(config)
    metadata = _stringify(metadata)

    params = {
        "mode": mode,
        "line_items": [line_item],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata,
        "client_reference_id": metadata.get("pc_user_id"),
        "api_key": api_key,
    }
    if mode == "payment":
        params["payment_intent_data"] = {"metadata": metadata}
    else:
        params["subscription_data"] = {"metadata": metadata}
    if customer_email:
        params["customer_email"] = customer_email
    if idempotency_key:
        params["idempotency_key"] = idempotency_key

    session = _call_stripe(
        "create_checkout_session", stripe.checkout.Session.create, **params
    )
    logger.info(f"Created Checkout Session {session.id} ({mode})")
    return {
        "provider_ref": session.id,
        "url": getattr(session, "url", None),
        "payment_intent": getattr(session, "payment_intent", None),
    }


def retrieve_payment(provider_ref, config=None):
    """Ask Stripe for the current state of a PaymentIntent or Checkout Session.

    Used when the success webhook is late or lost. Returns
    {"provider_ref", "object", "paid", "status", "payment_intent", "subscription"}.
    """
    config = config or current_config()
    api_key = _api_key(config)

    if provider_ref.startswith("cs_"):
        session = _call_stripe(
            "retrieve_session", stripe.checkout.Session.retrieve,
            id=provider_ref, api_key=api_key,
        )
        status = getattr(session, "payment_status", None)
        return {
            "provider_ref": provider_ref,
            "object": "checkout.session",
            "paid": status in ("paid", "no_payment_required"),
            "status": status,
            "payment_intent": _ref_of(getattr(session, "payment_intent", None)),
            "subscription": _ref_of(getattr(session, "subscription", None)),
        }

    intent = _call_stripe(
        "retrieve_intent", stripe.PaymentIntent.retrieve,
        id=provider_ref, api_key=api_key,
    )
    status = getattr(intent, "status", None)
    return {
        "provider_ref": provider_ref,
        "object": "payment_intent",
        "paid": status == "succeeded",
        "status": status,
        "payment_intent": provider_ref,
        "subscription": None,
    }


def _ref_of(value):
    """An id from a field that may be expanded into an object."""
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


# ──────────────────────────────────────────────
# Webhook verification
# ──────────────────────────────────────────────

def verify_webhook(raw_body, signature_header, secret=None, config=None):
    """Verify a webhook delivery and return a normalised Event.

    The Stripe-Signature header carries a timestamp and one or more HMAC
    SHA-256 signatures of "<timestamp>.<raw body>". Deliveries older than
    STRIPE_WEBHOOK_TOLERANCE seconds are rejected.

    With no secret configured the payload is only trusted when
    STRIPE_WEBHOOK_ALLOW_UNSIGNED is on (local development); otherwise
    this raises ConfigurationError.

    Raises SignatureInvalidError on a missing / bad / stale signature and
    ValidationError on a payload that is not a Stripe event.
    """
    config = config or current_config()
    secret = secret if secret is not None else config.get("STRIPE_WEBHOOK_SECRET")
    if isinstance(raw_body, bytes):
        raw_body = raw_body.decode("utf-8")

    if secret:
        if not signature_header:
            raise SignatureInvalidError("Missing signature")
        tolerance = int(config.get("STRIPE_WEBHOOK_TOLERANCE", 300))
        try:
            stripe.WebhookSignature.verify_header(
                raw_body, signature_header, secret, tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalidError("Invalid signature", reason=str(e)) from e
        verified = True
    elif config.get("STRIPE_WEBHOOK_ALLOW_UNSIGNED"):
        logger.warning("Accepting unsigned webhook payload (STRIPE_WEBHOOK_ALLOW_UNSIGNED is on)")
        verified = False
    else:
        raise ConfigurationError("Webhook secret not configured")

    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        raise ValidationError("Invalid webhook payload") from e

    event = parse_event(payload)
    event.verified = verified
    return event


def parse_event(payload):
    """Normalise a decoded Stripe event dict into an Event."""
    if not isinstance(payload, dict) or not payload.get("type"):
        raise ValidationError("Invalid webhook payload")

    data = payload.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise ValidationError("Webhook payload has no data.object")

    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}

    return Event(
        id=payload.get("id"),
        type=payload["type"],
        object=obj,
        metadata={str(k): v for k, v in metadata.items()},
        livemode=bool(payload.get("livemode", False)),
    )


def _stringify(metadata):
    """Stripe metadata values must be strings; None becomes ""."""
    return {
        str(key): "" if value is None else str(value)
        for key, value in (metadata or {}).items()
    }
