"""Setting model.

Admin-editable key/value overrides (price table, feature window,
currency). Read through ConfigProvider, which layers these rows over the
Flask config. Only keys in EDITABLE_KEYS are honoured.
"""

from classifieds.extensions import db


class Setting(db.Model):
    __tablename__ = "settings"

    EDITABLE_KEYS = [
        "PAYMENT_CURRENCY",
        "PRICE_REVEAL_CONTACT",
        "PRICE_FEATURE",
        "PRICE_MESSAGE",
        "PRICE_SUBSCRIPTION",
        "FEATURE_DAYS",
        "PAYPAL_EMAIL",
    ]

    key = db.Column(db.String(100), primary_key=True)
    value = db.Column(db.String(255), nullable=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self):
        return f"<Setting {self.key}={self.value}>"
