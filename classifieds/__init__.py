import os
import logging

import click
import stripe
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash

from classifieds.config import config_by_name
from classifieds.errors import PaymentError
from classifieds.extensions import db, migrate, login_manager, csrf, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Stripe SDK ---
    # Keys are passed per request; only transport settings are global.
    stripe.max_network_retries = app.config.get("STRIPE_MAX_NETWORK_RETRIES", 2)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from classifieds import models  # noqa: F401

    # --- Register blueprints ---
    from classifieds.blueprints.auth import auth_bp
    from classifieds.blueprints.payments import payments_bp
    from classifieds.blueprints.listings import listings_bp
    from classifieds.blueprints.admin import admin_bp
    from classifieds.blueprints.webhooks import webhooks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(listings_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(webhooks_bp)

    # Exempt webhooks from CSRF: raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)

    # --- Domain event receivers ---
    from classifieds.services.notification_service import register_notifications
    register_notifications(app)

    # --- Root route ---
    @app.route("/")
    def index():
        return jsonify({"service": "classifieds-payments", "status": "ok"})

    # --- Error handlers ---
    register_error_handlers(app)

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Permissions Policy (restrict browser features)
        response.headers["Permissions-Policy"] = (
            "camera=(), microphone=(), geolocation=(), payment=(self)"
        )
        # API responses never embed or script anything
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_error_handlers(app):
    """JSON bodies for every error the API can return."""

    @app.errorhandler(PaymentError)
    def payment_error(e):
        if e.status_code >= 500:
            app.logger.error(f"{type(e).__name__}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify({"error": e.description, "code": e.name}), e.code

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error", "code": "Internal Server Error"}), 500


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-admin")
    @click.option("--email", default="admin@classifieds.local", help="Admin email")
    @click.option("--password", default="admin123", help="Admin password")
    def seed_admin(email, password):
        """Create the admin user if it does not exist.

        Usage:
            flask seed-admin
            flask seed-admin --email admin@example.com --password s3cret
        """
        from classifieds.models.user import User

        existing = User.query.filter_by(email=email).first()
        if existing:
            click.echo(f"Admin user already exists: {email}")
            return

        admin = User(
            email=email,
            password_hash=generate_password_hash(password),
            full_name="Admin",
            is_admin=True,
        )
        db.session.add(admin)
        db.session.commit()
        click.echo(f"Created admin user: {email}")

    @app.cli.command("retry-reconciliation")
    @click.option("--limit", default=50, show_default=True, help="Max errors to retry.")
    def retry_reconciliation(limit):
        """Retry queued entitlement grants / revocations, oldest first.

        Usage:
            flask retry-reconciliation
            flask retry-reconciliation --limit 200
        """
        from classifieds.services.reconciliation_service import retry_reconciliation_errors

        resolved, failed = retry_reconciliation_errors(limit=limit)
        click.echo(f"Resolved: {resolved}  Still failing: {failed}")

    @app.cli.command("set-price")
    @click.argument("key")
    @click.argument("value")
    def set_price(key, value):
        """Store an admin override, e.g. `flask set-price PRICE_FEATURE 12.00`.

        An empty VALUE ("") removes the override.
        """
        from classifieds.services.pricing_service import price_table
        from classifieds.services.settings_service import update_settings

        try:
            update_settings({key.upper(): value})
        except PaymentError as e:
            raise click.ClickException(e.message)

        click.echo(f"{key.upper()} = {value or '(config default)'}")
        for purpose, price in price_table().items():
            shown = f"{price['amount']} {price['currency']}" if price else "(not set)"
            click.echo(f"  {purpose:<15} {shown}")
