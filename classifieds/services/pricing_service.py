"""Pricing service — the single source of truth for what a purchase costs.

Prices are major-unit decimals from the admin price table (settings
overrides over PRICE_* config), one global PAYMENT_CURRENCY. Client
submitted amounts are never consulted.

    reveal_contact -> PRICE_REVEAL_CONTACT
    feature        -> PRICE_FEATURE
    message        -> PRICE_MESSAGE, or PRICE_REVEAL_CONTACT when blank
    subscription   -> PRICE_SUBSCRIPTION, informational only; the real
                      price lives with the processor (0 when blank)
"""

from decimal import Decimal, InvalidOperation

from classifieds.errors import ConfigurationError, InvalidPurposeError, ValidationError
from classifieds.models.transaction import (
    PURPOSE_FEATURE,
    PURPOSE_MESSAGE,
    PURPOSE_REVEAL_CONTACT,
    PURPOSE_SUBSCRIPTION,
    Transaction,
)
from classifieds.services.config_provider import current_config
from classifieds.services.stripe_service import (
    currency_exponent,
    normalize_currency,
    to_minor_units,
)

PRICE_KEYS = {
    PURPOSE_REVEAL_CONTACT: "PRICE_REVEAL_CONTACT",
    PURPOSE_FEATURE: "PRICE_FEATURE",
    PURPOSE_MESSAGE: "PRICE_MESSAGE",
    PURPOSE_SUBSCRIPTION: "PRICE_SUBSCRIPTION",
}


def resolve_price(purpose, context=None, config=None):
    """Return (amount: Decimal, currency: str) for a purpose.

    context is accepted for callers that carry purchase details; no
    current purpose prices on it.

    Raises InvalidPurposeError for unknown purposes and
    ConfigurationError when a required price is unset or malformed.
    """
    if purpose not in Transaction.PURPOSES:
        raise InvalidPurposeError(f"Invalid purpose: {purpose!r}", purpose=purpose)

    config = config or current_config()
    currency = _currency(config)

    raw = config.get(PRICE_KEYS[purpose])
    key = PRICE_KEYS[purpose]
    if purpose == PURPOSE_MESSAGE and _blank(raw):
        raw, key = config.get("PRICE_REVEAL_CONTACT"), "PRICE_REVEAL_CONTACT"
    if purpose == PURPOSE_SUBSCRIPTION and _blank(raw):
        return _quantize(Decimal("0"), currency), currency

    if _blank(raw):
        raise ConfigurationError(f"Price for {purpose} is not configured ({key})")

    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation:
        raise ConfigurationError(f"{key} is not a valid amount: {raw!r}")
    if not amount.is_finite() or amount <= 0:
        raise ConfigurationError(f"{key} must be a positive amount")

    try:
        to_minor_units(amount, currency)
    except ValidationError as e:
        raise ConfigurationError(f"{key}: {e.message}")

    return _quantize(amount, currency), currency


def price_table(config=None):
    """{purpose: {"amount": "19.00", "currency": "USD"}} for every purpose
    that currently resolves; unset ones map to None."""
    config = config or current_config()
    table = {}
    for purpose in Transaction.PURPOSES:
        try:
            amount, currency = resolve_price(purpose, config=config)
            table[purpose] = {"amount": str(amount), "currency": currency}
        except ConfigurationError:
            table[purpose] = None
    return table


def feature_days(config=None):
    """Length of a feature/boost window in days (FEATURE_DAYS, default 7)."""
    config = config or current_config()
    raw = config.get("FEATURE_DAYS", 7)
    try:
        days = int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"FEATURE_DAYS is not an integer: {raw!r}")
    if days < 1:
        raise ConfigurationError("FEATURE_DAYS must be at least 1")
    return days


def _currency(config):
    try:
        return normalize_currency(config.get("PAYMENT_CURRENCY", "USD"))
    except ValidationError as e:
        raise ConfigurationError(f"PAYMENT_CURRENCY: {e.message}")


def _quantize(amount, currency):
    return amount.quantize(Decimal(1).scaleb(-currency_exponent(currency)))


def _blank(value):
    return value is None or str(value).strip() == ""
