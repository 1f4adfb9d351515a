import os


def _env_flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    # --- Stripe ---
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_PUBLISHABLE_KEY = os.environ.get("STRIPE_PUBLISHABLE_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_WEBHOOK_TOLERANCE = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE", 300))
    # Accept unsigned webhook payloads when no secret is set. Local dev only.
    STRIPE_WEBHOOK_ALLOW_UNSIGNED = _env_flag("STRIPE_WEBHOOK_ALLOW_UNSIGNED")
    STRIPE_SUBSCRIPTION_PRICE_ID = os.environ.get("STRIPE_SUBSCRIPTION_PRICE_ID")
    STRIPE_MAX_NETWORK_RETRIES = int(os.environ.get("STRIPE_MAX_NETWORK_RETRIES", 2))
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Pricing (major units; admin overrides live in the settings table) ---
    PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "USD")
    PRICE_REVEAL_CONTACT = os.environ.get("PRICE_REVEAL_CONTACT", "19.00")
    PRICE_FEATURE = os.environ.get("PRICE_FEATURE", "9.00")
    PRICE_MESSAGE = os.environ.get("PRICE_MESSAGE", "")  # blank -> reveal price
    PRICE_SUBSCRIPTION = os.environ.get("PRICE_SUBSCRIPTION", "")
    FEATURE_DAYS = int(os.environ.get("FEATURE_DAYS", 7))

    # --- Entitlements ---
    REVOKE_ON_REFUND = _env_flag("REVOKE_ON_REFUND", "true")

    # --- Manual payments / dev tooling ---
    PAYPAL_EMAIL = os.environ.get("PAYPAL_EMAIL", "")
    ALLOW_TEST_TRIGGER = _env_flag("ALLOW_TEST_TRIGGER", "true")

    # --- Email (SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")          # App Password
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "Premium Classifieds")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME
    MAIL_NOTIFICATIONS = _env_flag("MAIL_NOTIFICATIONS", "true")
    NOTIFY_SELLER_ON_REVEAL = _env_flag("NOTIFY_SELLER_ON_REVEAL", "true")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Session / cookies ---
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = "Lax"

    # --- WTF / CSRF ---
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "APP_BASE_URL",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_PUBLISHABLE_KEY = "pk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_WEBHOOK_ALLOW_UNSIGNED = False
    STRIPE_SUBSCRIPTION_PRICE_ID = "price_sub_test"
    STRIPE_MAX_NETWORK_RETRIES = 0
    APP_BASE_URL = "http://localhost:5000"
    PAYMENT_CURRENCY = "USD"
    PRICE_REVEAL_CONTACT = "19.00"
    PRICE_FEATURE = "9.00"
    PRICE_MESSAGE = ""
    PRICE_SUBSCRIPTION = "29.00"
    FEATURE_DAYS = 7
    REVOKE_ON_REFUND = True
    PAYPAL_EMAIL = "payments@classifieds.test"
    ALLOW_TEST_TRIGGER = True
    MAIL_NOTIFICATIONS = False
    WTF_CSRF_ENABLED = False  # disable CSRF for test requests
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True
    ALLOW_TEST_TRIGGER = _env_flag("ALLOW_TEST_TRIGGER")


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
