"""Tests for the payments blueprint and purchase flows.

Covers:
- Server-side pricing (client-supplied amounts are never used)
- Purchase validation (purpose, ownership, already revealed)
- Gateway failures leave the pending transaction behind
- Checkout, subscription and PayPal flows
- Status polling, history and ownership of transaction data
- Settling a pending payment from Stripe when the webhook is late
"""

from unittest.mock import MagicMock, patch

import stripe

from classifieds.extensions import db
from classifieds.models.transaction import Transaction
from classifieds.services import entitlement_service, ledger_service

INTENT_CREATE = "classifieds.services.stripe_service.stripe.PaymentIntent.create"
SESSION_CREATE = "classifieds.services.stripe_service.stripe.checkout.Session.create"


def _fake_intent():
    return MagicMock(id="pi_new_1", client_secret="pi_new_1_secret_abc")


def _fake_session(session_id="cs_new_1"):
    return MagicMock(
        id=session_id,
        url=f"https://checkout.stripe.com/c/pay/{session_id}",
        payment_intent=None,
    )


class TestPaymentIntent:

    @patch(INTENT_CREATE)
    def test_client_amount_is_ignored(self, mock_create, client, login, seed_data):
        """A client posting amount=0.01 is still charged the configured 19.00."""
        mock_create.return_value = _fake_intent()
        login(seed_data["buyer_email"])

        resp = client.post("/payments/intent", json={
            "purpose": "reveal_contact",
            "listing_id": seed_data["listing_id"],
            "amount": "0.01",
        })

        assert resp.status_code == 201
        data = resp.get_json()
        assert data["amount"] == "19.00"
        assert data["currency"] == "USD"
        assert data["client_secret"] == "pi_new_1_secret_abc"
        assert data["publishable_key"] == "pk_test_fake"

        kwargs = mock_create.call_args.kwargs
        assert kwargs["amount"] == 1900
        assert kwargs["currency"] == "usd"
        assert kwargs["metadata"]["pc_transaction_id"] == data["transaction_id"]
        assert kwargs["metadata"]["pc_user_id"] == seed_data["buyer_id"]
        assert kwargs["idempotency_key"] == f"pc-intent-{data['transaction_id']}"

        tx = db.session.get(Transaction, data["transaction_id"])
        assert tx.status == "pending"
        assert tx.provider_ref == "pi_new_1"
        assert tx.payment_intent_ref == "pi_new_1"

    @patch(INTENT_CREATE)
    def test_gateway_unreachable_leaves_pending_row(self, mock_create, client, login, seed_data):
        mock_create.side_effect = stripe.APIConnectionError("connection reset")
        login(seed_data["buyer_email"])

        resp = client.post("/payments/intent", json={
            "purpose": "reveal_contact", "listing_id": seed_data["listing_id"],
        })

        assert resp.status_code == 503
        data = resp.get_json()
        assert data["code"] == "GatewayUnavailableError"
        tx = db.session.get(Transaction, data["details"]["transaction_id"])
        assert tx.status == "pending"
        assert tx.provider_ref is None

    @patch(INTENT_CREATE)
    def test_gateway_rejection_returns_502(self, mock_create, client, login, seed_data):
        mock_create.side_effect = stripe.InvalidRequestError("Invalid currency", param="currency")
        login(seed_data["buyer_email"])

        resp = client.post("/payments/intent", json={
            "purpose": "reveal_contact", "listing_id": seed_data["listing_id"],
        })

        assert resp.status_code == 502
        assert resp.get_json()["code"] == "GatewayRequestError"

    def test_missing_secret_key_returns_503(self, app, client, login, seed_data, monkeypatch):
        monkeypatch.setitem(app.config, "STRIPE_SECRET_KEY", None)
        login(seed_data["buyer_email"])

        resp = client.post("/payments/intent", json={
            "purpose": "reveal_contact", "listing_id": seed_data["listing_id"],
        })

        assert resp.status_code == 503

    def test_invalid_purpose(self, client, login, seed_data):
        login(seed_data["buyer_email"])
        resp = client.post("/payments/intent", json={
            "purpose": "donation", "listing_id": seed_data["listing_id"],
        })
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "InvalidPurposeError"
        assert Transaction.query.count() == 0

    def test_cannot_buy_own_contact(self, client, login, seed_data):
        login(seed_data["seller_email"])
        resp = client.post("/payments/intent", json={
            "purpose": "reveal_contact", "listing_id": seed_data["listing_id"],
        })
        assert resp.status_code == 400
        assert Transaction.query.count() == 0

    def test_already_revealed(self, client, login, make_transaction, seed_data):
        tx = make_transaction()
        entitlement_service.grant_reveal(seed_data["buyer_id"], seed_data["listing_id"], tx.id)
        db.session.commit()
        login(seed_data["buyer_email"])

        resp = client.post("/payments/intent", json={
            "purpose": "reveal_contact", "listing_id": seed_data["listing_id"],
        })

        assert resp.status_code == 400
        assert "already revealed" in resp.get_json()["error"]

    def test_feature_requires_ownership(self, client, login, seed_data):
        login(seed_data["buyer_email"])
        resp = client.post("/payments/intent", json={
            "purpose": "feature", "listing_id": seed_data["listing_id"],
        })
        assert resp.status_code == 400

    def test_unknown_listing(self, client, login, seed_data):
        login(seed_data["buyer_email"])
        resp = client.post("/payments/intent", json={
            "purpose": "reveal_contact", "listing_id": "nope",
        })
        assert resp.status_code == 400

    @patch(INTENT_CREATE)
    def test_message_unlock_uses_reveal_price(self, mock_create, client, login, seed_data):
        """PRICE_MESSAGE is blank in testing, so the reveal price applies."""
        mock_create.return_value = _fake_intent()
        login(seed_data["buyer_email"])

        resp = client.post("/payments/intent", json={
            "purpose": "message", "message_id": seed_data["message_id"],
        })

        assert resp.status_code == 201
        tx = db.session.get(Transaction, resp.get_json()["transaction_id"])
        assert tx.message_id == seed_data["message_id"]
        assert tx.listing_id == seed_data["listing_id"]
        assert mock_create.call_args.kwargs["metadata"]["pc_message_id"] == seed_data["message_id"]

    def test_message_of_another_user_rejected(self, client, login, seed_data):
        login(seed_data["seller_email"])
        resp = client.post("/payments/intent", json={
            "purpose": "message", "message_id": seed_data["message_id"],
        })
        assert resp.status_code == 400

    def test_requires_login(self, client, seed_data):
        resp = client.post("/payments/intent", json={
            "purpose": "reveal_contact", "listing_id": seed_data["listing_id"],
        })
        assert resp.status_code == 401


class TestCheckout:

    @patch(SESSION_CREATE)
    def test_feature_checkout(self, mock_create, client, login, seed_data):
        mock_create.return_value = _fake_session()
        login(seed_data["seller_email"])

        resp = client.post("/payments/checkout", json={
            "purpose": "feature", "listing_id": seed_data["listing_id"], "amount": 1,
        })

        assert resp.status_code == 201
        data = resp.get_json()
        assert data["checkout_session_id"] == "cs_new_1"
        assert data["url"].endswith("cs_new_1")

        kwargs = mock_create.call_args.kwargs
        assert kwargs["mode"] == "payment"
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 900
        assert kwargs["success_url"] == (
            f"http://localhost:5000/?pc_payment=success&tx={data['transaction_id']}"
        )
        assert kwargs["customer_email"] == seed_data["seller_email"]

        tx = db.session.get(Transaction, data["transaction_id"])
        assert tx.provider_ref == "cs_new_1"
        assert tx.meta["feature_days"] == 7

    @patch(SESSION_CREATE)
    def test_subscription_checkout(self, mock_create, client, login, seed_data):
        mock_create.return_value = _fake_session("cs_sub_1")
        login(seed_data["buyer_email"])

        resp = client.post("/payments/subscription", json={"plan_key": "pro"})

        assert resp.status_code == 201
        kwargs = mock_create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_sub_test", "quantity": 1}]

        tx = db.session.get(Transaction, resp.get_json()["transaction_id"])
        assert tx.purpose == "subscription"
        assert str(tx.amount) == "29.00"
        assert tx.meta["plan_key"] == "pro"

    def test_subscription_not_configured(self, app, client, login, seed_data, monkeypatch):
        monkeypatch.setitem(app.config, "STRIPE_SUBSCRIPTION_PRICE_ID", None)
        login(seed_data["buyer_email"])

        resp = client.post("/payments/subscription", json={})

        assert resp.status_code == 500
        assert resp.get_json()["code"] == "ConfigurationError"

    def test_subscription_purpose_not_accepted_as_one_off(self, client, login, seed_data):
        login(seed_data["buyer_email"])
        resp = client.post("/payments/checkout", json={"purpose": "subscription"})
        assert resp.status_code == 400


class TestPayPal:

    def test_instructions(self, client, login, seed_data):
        login(seed_data["buyer_email"])

        resp = client.post("/payments/paypal", json={
            "purpose": "reveal_contact", "listing_id": seed_data["listing_id"],
        })

        assert resp.status_code == 201
        data = resp.get_json()
        assert data["provider"] == "paypal"
        assert data["paypal_email"] == "payments@classifieds.test"
        assert data["paypal_me_link"] is None
        assert data["transaction_id"] in data["instructions"]
        tx = db.session.get(Transaction, data["transaction_id"])
        assert (tx.provider, tx.status) == ("paypal", "pending")

    def test_paypal_me_handle(self, app, client, login, seed_data, monkeypatch):
        monkeypatch.setitem(app.config, "PAYPAL_EMAIL", "classifiedsco")
        login(seed_data["buyer_email"])

        resp = client.post("/payments/paypal", json={
            "purpose": "reveal_contact", "listing_id": seed_data["listing_id"],
        })

        assert resp.get_json()["paypal_me_link"] == "https://paypal.me/classifiedsco/19.00"

    def test_not_configured(self, app, client, login, seed_data, monkeypatch):
        monkeypatch.setitem(app.config, "PAYPAL_EMAIL", None)
        login(seed_data["buyer_email"])

        resp = client.post("/payments/paypal", json={
            "purpose": "reveal_contact", "listing_id": seed_data["listing_id"],
        })

        assert resp.status_code == 500
        assert Transaction.query.count() == 0


class TestStatusAndHistory:

    def test_prices_are_public(self, client, seed_data):
        resp = client.get("/payments/prices")
        assert resp.status_code == 200
        prices = resp.get_json()["prices"]
        assert prices["reveal_contact"] == {"amount": "19.00", "currency": "USD"}
        assert prices["feature"] == {"amount": "9.00", "currency": "USD"}

    def test_owner_can_poll_status(self, client, login, make_transaction, seed_data):
        tx = make_transaction(provider_ref="pi_test_123")
        login(seed_data["buyer_email"])

        resp = client.get(f"/payments/{tx.id}")

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "pending"
        assert data["amount"] == "19.00"
        assert data["entitlement_pending"] is False
        assert data["entitlements"] == []

    def test_status_after_webhook(self, client, login, send_webhook, make_transaction,
                                  intent_object, seed_data):
        tx = make_transaction(provider_ref="pi_test_123")
        send_webhook("payment_intent.succeeded", intent_object(tx))
        login(seed_data["buyer_email"])

        data = client.get(f"/payments/{tx.id}").get_json()

        assert data["status"] == "succeeded"
        assert [grant["purpose"] for grant in data["entitlements"]] == ["reveal_contact"]

    def test_other_users_transaction_is_404(self, client, login, make_transaction, seed_data):
        tx = make_transaction()
        login(seed_data["seller_email"])
        assert client.get(f"/payments/{tx.id}").status_code == 404

    def test_admin_can_poll_any_transaction(self, client, login, make_transaction, seed_data):
        tx = make_transaction()
        login(seed_data["admin_email"])
        assert client.get(f"/payments/{tx.id}").status_code == 200

    def test_history_lists_own_transactions(self, client, login, make_transaction, seed_data):
        mine = make_transaction()
        make_transaction(purpose="feature", user_id=seed_data["seller_id"], amount="9.00")
        login(seed_data["buyer_email"])

        transactions = client.get("/payments/history").get_json()["transactions"]

        assert [t["id"] for t in transactions] == [mine.id]

    def test_entitlements_lists_active_grants(self, client, login, make_transaction, seed_data):
        tx = make_transaction()
        entitlement_service.grant_reveal(seed_data["buyer_id"], seed_data["listing_id"], tx.id)
        db.session.commit()
        login(seed_data["buyer_email"])

        grants = client.get("/payments/entitlements").get_json()["entitlements"]

        assert len(grants) == 1
        assert grants[0]["listing_id"] == seed_data["listing_id"]


INTENT_RETRIEVE = "classifieds.services.stripe_service.stripe.PaymentIntent.retrieve"
SESSION_RETRIEVE = "classifieds.services.stripe_service.stripe.checkout.Session.retrieve"


class TestVerifyWithStripe:
    """POST /payments/<id>/verify settles a payment whose webhook is late."""

    @patch(INTENT_RETRIEVE)
    def test_paid_intent_settles_and_grants(self, mock_retrieve, client, login,
                                            make_transaction, seed_data):
        mock_retrieve.return_value = MagicMock(id="pi_test_123", status="succeeded")
        tx = make_transaction(provider_ref="pi_test_123")
        login(seed_data["buyer_email"])

        resp = client.post(f"/payments/{tx.id}/verify")

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["result"] == "processed"
        assert data["status"] == "succeeded"
        assert [grant["purpose"] for grant in data["entitlements"]] == ["reveal_contact"]
        assert mock_retrieve.call_args.kwargs["id"] == "pi_test_123"
        assert mock_retrieve.call_args.kwargs["api_key"] == "sk_test_fake"
        assert db.session.get(Transaction, tx.id).meta["verified_by"] == "status_check"
        assert entitlement_service.has_reveal(seed_data["buyer_id"], seed_data["listing_id"])

    @patch(INTENT_RETRIEVE)
    def test_webhook_after_verify_is_noop(self, mock_retrieve, client, login, send_webhook,
                                          make_transaction, intent_object, seed_data):
        mock_retrieve.return_value = MagicMock(id="pi_test_123", status="succeeded")
        tx = make_transaction(provider_ref="pi_test_123")
        login(seed_data["buyer_email"])
        client.post(f"/payments/{tx.id}/verify")

        resp = send_webhook("payment_intent.succeeded", intent_object(tx))

        assert resp.get_json()["status"] == "noop"
        assert len(entitlement_service.grants_for_transaction(tx.id)) == 1

    @patch(INTENT_RETRIEVE)
    def test_unpaid_intent_stays_pending(self, mock_retrieve, client, login,
                                         make_transaction, seed_data):
        mock_retrieve.return_value = MagicMock(id="pi_test_123", status="processing")
        tx = make_transaction(provider_ref="pi_test_123")
        login(seed_data["buyer_email"])

        data = client.post(f"/payments/{tx.id}/verify").get_json()

        assert data["result"] == "pending"
        assert data["status"] == "pending"
        assert data["entitlements"] == []

    @patch(SESSION_RETRIEVE)
    def test_paid_checkout_session_records_intent(self, mock_retrieve, client, login,
                                                  make_transaction, seed_data):
        mock_retrieve.return_value = MagicMock(
            id="cs_test_1", payment_status="paid",
            payment_intent="pi_from_session", subscription=None,
        )
        tx = ledger_service.create_transaction(
            seed_data["buyer_id"], seed_data["listing_id"], "reveal_contact",
            "19.00", "USD", "stripe",
        )
        ledger_service.attach_provider_ref(tx.id, "cs_test_1")
        login(seed_data["buyer_email"])

        data = client.post(f"/payments/{tx.id}/verify").get_json()

        assert data["result"] == "processed"
        assert db.session.get(Transaction, tx.id).payment_intent_ref == "pi_from_session"

    @patch(INTENT_RETRIEVE)
    def test_settled_transaction_is_not_polled(self, mock_retrieve, client, login, send_webhook,
                                               make_transaction, intent_object, seed_data):
        tx = make_transaction(provider_ref="pi_test_123")
        send_webhook("payment_intent.succeeded", intent_object(tx))
        login(seed_data["buyer_email"])

        data = client.post(f"/payments/{tx.id}/verify").get_json()

        assert data["result"] == "noop"
        mock_retrieve.assert_not_called()

    @patch(INTENT_RETRIEVE)
    def test_gateway_outage_returns_503(self, mock_retrieve, client, login,
                                        make_transaction, seed_data):
        mock_retrieve.side_effect = stripe.APIConnectionError("connection reset")
        tx = make_transaction(provider_ref="pi_test_123")
        login(seed_data["buyer_email"])

        resp = client.post(f"/payments/{tx.id}/verify")

        assert resp.status_code == 503
        assert db.session.get(Transaction, tx.id).status == "pending"

    def test_paypal_transaction_cannot_be_verified(self, client, login, make_transaction, seed_data):
        tx = make_transaction(provider="paypal")
        login(seed_data["buyer_email"])
        assert client.post(f"/payments/{tx.id}/verify").status_code == 400

    def test_other_users_transaction_is_404(self, client, login, make_transaction, seed_data):
        tx = make_transaction(provider_ref="pi_test_123")
        login(seed_data["seller_email"])
        assert client.post(f"/payments/{tx.id}/verify").status_code == 404
