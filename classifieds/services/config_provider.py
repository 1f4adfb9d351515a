"""Config provider — one read path for prices and gateway credentials.

The pricing resolver and the Stripe adapter never touch current_app.config
or the settings table directly; they take a ConfigProvider. Admin
overrides from the settings table win over the Flask config, blank
overrides are ignored.

Usage:
    from classifieds.services.config_provider import current_config

    config = current_config()
    config.get("PRICE_FEATURE")
"""

from flask import current_app

from classifieds.models.setting import Setting


class ConfigProvider:
    """Read-only view over a base mapping plus optional overrides."""

    def __init__(self, base, overrides=None):
        self._base = base
        self._overrides = {
            key: value
            for key, value in (overrides or {}).items()
            if value not in (None, "")
        }

    def get(self, key, default=None):
        if key in self._overrides:
            return self._overrides[key]
        value = self._base.get(key)
        return default if value is None else value

    def __contains__(self, key):
        return key in self._overrides or self._base.get(key) is not None


def load_overrides():
    """Return {key: value} for every admin-editable settings row."""
    rows = Setting.query.filter(Setting.key.in_(Setting.EDITABLE_KEYS)).all()
    return {row.key: row.value for row in rows}


def current_config():
    """Build a ConfigProvider for the current app (requires app context)."""
    return ConfigProvider(current_app.config, load_overrides())
