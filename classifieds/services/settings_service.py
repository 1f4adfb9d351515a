"""Settings service — admin edits to the price table.

Values are validated before they are stored so a typo cannot take the
pricing resolver down: prices must parse as positive amounts the
configured currency can represent, FEATURE_DAYS must be a positive
integer, PAYMENT_CURRENCY a supported ISO code. A blank value deletes
the override (falls back to the Flask config).
"""

import logging

from flask import current_app

from classifieds.errors import ConfigurationError, ValidationError
from classifieds.extensions import db
from classifieds.models.setting import Setting
from classifieds.services.config_provider import ConfigProvider, load_overrides
from classifieds.services.ledger_service import log_payment_audit
from classifieds.services.pricing_service import PRICE_KEYS, feature_days, resolve_price
from classifieds.services.stripe_service import normalize_currency

logger = logging.getLogger(__name__)


def get_settings():
    """{key: override or None} for every editable key."""
    rows = {row.key: row.value for row in Setting.query.all()}
    return {key: rows.get(key) for key in Setting.EDITABLE_KEYS}


def update_settings(changes, actor_user_id=None):
    """Validate and store overrides. Returns the applied {key: value}.

    Raises ValidationError naming the first bad key; nothing is stored
    in that case.
    """
    unknown = [key for key in changes if key not in Setting.EDITABLE_KEYS]
    if unknown:
        raise ValidationError(f"Not an editable setting: {', '.join(sorted(unknown))}")

    cleaned = {
        key: ("" if value is None else str(value).strip())
        for key, value in changes.items()
    }
    if "PAYMENT_CURRENCY" in cleaned and cleaned["PAYMENT_CURRENCY"]:
        cleaned["PAYMENT_CURRENCY"] = normalize_currency(cleaned["PAYMENT_CURRENCY"])

    _validate(cleaned)

    for key, value in cleaned.items():
        row = db.session.get(Setting, key)
        if not value:
            if row is not None:
                db.session.delete(row)
            continue
        if row is None:
            db.session.add(Setting(key=key, value=value))
        else:
            row.value = value
    db.session.flush()

    log_payment_audit(
        "settings.updated", actor_user_id=actor_user_id, metadata=cleaned
    )
    db.session.commit()
    logger.info(f"Settings updated by {actor_user_id}: {sorted(cleaned)}")
    return cleaned


def _validate(cleaned):
    """Resolve every affected value against the would-be configuration."""
    candidate = ConfigProvider(current_app.config, {**load_overrides(), **cleaned})

    for purpose, key in PRICE_KEYS.items():
        if key in cleaned or "PAYMENT_CURRENCY" in cleaned:
            try:
                resolve_price(purpose, config=candidate)
            except ConfigurationError as e:
                raise ValidationError(e.message, key=key)

    if "FEATURE_DAYS" in cleaned:
        try:
            feature_days(config=candidate)
        except ConfigurationError as e:
            raise ValidationError(e.message, key="FEATURE_DAYS")
