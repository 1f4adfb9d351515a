"""Tests for the listings blueprint (the paywall read side)."""

from datetime import datetime, timedelta, timezone

from classifieds.extensions import db
from classifieds.services import entitlement_service


class TestContact:

    def test_locked_contact_returns_402_with_price(self, client, login, seed_data):
        login(seed_data["buyer_email"])

        resp = client.get(f"/listings/{seed_data['listing_id']}/contact")

        assert resp.status_code == 402
        data = resp.get_json()
        assert data["purpose"] == "reveal_contact"
        assert data["price"] == {"amount": "19.00", "currency": "USD"}
        assert "contact" not in data

    def test_owner_sees_contact(self, client, login, seed_data):
        login(seed_data["seller_email"])

        resp = client.get(f"/listings/{seed_data['listing_id']}/contact")

        assert resp.status_code == 200
        assert resp.get_json()["contact"] == {"email": "sam@example.com", "phone": "555-0142"}

    def test_reveal_holder_sees_contact(self, client, login, make_transaction, seed_data):
        tx = make_transaction()
        entitlement_service.grant_reveal(seed_data["buyer_id"], seed_data["listing_id"], tx.id)
        db.session.commit()
        login(seed_data["buyer_email"])

        resp = client.get(f"/listings/{seed_data['listing_id']}/contact")
        other = client.get(f"/listings/{seed_data['other_listing_id']}/contact")

        assert resp.status_code == 200
        assert resp.get_json()["contact"]["email"] == "sam@example.com"
        assert other.status_code == 402

    def test_contact_unlocked_by_webhook(self, client, login, send_webhook,
                                         make_transaction, intent_object, seed_data):
        tx = make_transaction(provider_ref="pi_test_123")
        login(seed_data["buyer_email"])
        assert client.get(f"/listings/{seed_data['listing_id']}/contact").status_code == 402

        send_webhook("payment_intent.succeeded", intent_object(tx))

        assert client.get(f"/listings/{seed_data['listing_id']}/contact").status_code == 200

    def test_requires_login(self, client, seed_data):
        assert client.get(f"/listings/{seed_data['listing_id']}/contact").status_code == 401

    def test_unknown_listing(self, client, login, seed_data):
        login(seed_data["buyer_email"])
        assert client.get("/listings/nope/contact").status_code == 404


class TestDetail:

    def test_not_featured_by_default(self, client, seed_data):
        data = client.get(f"/listings/{seed_data['listing_id']}").get_json()
        assert data["title"] == "Vintage road bike"
        assert data["featured"] is False
        assert data["featured_until"] is None

    def test_featured_listing(self, client, make_transaction, seed_data):
        tx = make_transaction(purpose="feature", user_id=seed_data["seller_id"], amount="9.00")
        entitlement_service.grant_or_extend_feature(
            seed_data["listing_id"], datetime.now(timezone.utc) + timedelta(days=7), tx.id
        )
        db.session.commit()

        data = client.get(f"/listings/{seed_data['listing_id']}").get_json()

        assert data["featured"] is True
        assert data["featured_until"] is not None
