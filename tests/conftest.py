"""Shared test fixtures for the classifieds payments test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: admin, seller, buyer, a listing and a locked message
- login: log a test client in as a seeded user
- send_webhook: post an HMAC-signed Stripe event to /stripe/webhooks
- make_transaction: pending ledger row with a provider reference
"""

import hashlib
import hmac
import json
import time
import uuid

import pytest
from werkzeug.security import generate_password_hash

from classifieds import create_app
from classifieds.extensions import db as _db
from classifieds.models.listing import Listing
from classifieds.models.message import Message
from classifieds.models.user import User
from classifieds.services import ledger_service

PASSWORD = "password123"
WEBHOOK_SECRET = "whsec_test_fake"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def seed_data(app, db_session):
    """Seed the database with users, a listing and a message.

    Returns plain IDs so tests can use them across request contexts.
    """
    admin = User(
        email="admin@classifieds.local",
        password_hash=generate_password_hash(PASSWORD),
        full_name="Admin User",
        is_admin=True,
    )
    seller = User(
        email="seller@example.com",
        password_hash=generate_password_hash(PASSWORD),
        full_name="Sam Seller",
    )
    buyer = User(
        email="buyer@example.com",
        password_hash=generate_password_hash(PASSWORD),
        full_name="Bea Buyer",
    )
    _db.session.add_all([admin, seller, buyer])
    _db.session.flush()

    listing = Listing(
        owner_id=seller.id,
        title="Vintage road bike",
        contact_email="sam@example.com",
        contact_phone="555-0142",
    )
    other_listing = Listing(
        owner_id=seller.id,
        title="Oak dining table",
        contact_email="sam@example.com",
        contact_phone="555-0142",
    )
    _db.session.add_all([listing, other_listing])
    _db.session.flush()

    message = Message(
        from_user_id=buyer.id,
        to_user_id=seller.id,
        listing_id=listing.id,
        body="Is the bike still available?",
    )
    _db.session.add(message)
    _db.session.commit()

    return {
        "admin_id": admin.id,
        "admin_email": admin.email,
        "seller_id": seller.id,
        "seller_email": seller.email,
        "buyer_id": buyer.id,
        "buyer_email": buyer.email,
        "listing_id": listing.id,
        "other_listing_id": other_listing.id,
        "message_id": message.id,
    }


@pytest.fixture
def login(client):
    """login(email) -> response; logs the shared test client in."""

    def _login(email, password=PASSWORD):
        resp = client.post("/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.get_json()
        return resp

    return _login


def _sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header for payload (v1 scheme)."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _build_event(event_type, obj, event_id=None):
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "livemode": False,
        "data": {"object": obj},
    }


@pytest.fixture
def send_webhook(client):
    """send_webhook(event_type, obj, event_id=None) -> response."""

    def _send(event_type, obj, event_id=None, secret=WEBHOOK_SECRET, timestamp=None):
        payload = json.dumps(_build_event(event_type, obj, event_id))
        return client.post(
            "/stripe/webhooks",
            data=payload,
            content_type="application/json",
            headers={"Stripe-Signature": _sign_payload(payload, secret, timestamp)},
        )

    return _send


@pytest.fixture
def make_transaction(seed_data):
    """make_transaction(purpose="reveal_contact", ...) -> pending Transaction.

    Defaults to the buyer revealing the seeded listing via a PaymentIntent.
    """

    def _make(purpose="reveal_contact", user_id=None, listing_id=None,
              amount="19.00", provider="stripe", provider_ref=None, meta=None):
        tx = ledger_service.create_transaction(
            user_id or seed_data["buyer_id"],
            listing_id if listing_id is not None else seed_data["listing_id"],
            purpose,
            amount,
            "USD",
            provider,
            meta=meta,
        )
        if provider_ref:
            tx = ledger_service.attach_provider_ref(
                tx.id, provider_ref, payment_intent_ref=provider_ref
            )
        return tx

    return _make


def _intent_object(tx, intent_id="pi_test_123", amount=1900, metadata=None):
    if metadata is None:
        metadata = {
            "pc_transaction_id": tx.id,
            "pc_purpose": tx.purpose,
            "pc_listing_id": tx.listing_id or "",
            "pc_message_id": tx.message_id or "",
            "pc_user_id": tx.user_id,
        }
    return {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount,
        "amount_received": amount,
        "currency": "usd",
        "status": "succeeded",
        "metadata": metadata,
    }


@pytest.fixture
def intent_object():
    """intent_object(tx, intent_id=..., amount=..., metadata=None) -> a
    payment_intent data.object whose metadata points back at tx."""
    return _intent_object


@pytest.fixture
def sign_payload():
    """sign_payload(payload, secret=..., timestamp=None) -> Stripe-Signature header."""
    return _sign_payload
