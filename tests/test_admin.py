"""Tests for the admin blueprint.

Covers:
- Access control (401 anonymous, 403 non-admin)
- Transaction list / detail with audit trail
- Test trigger gated by ALLOW_TEST_TRIGGER
- Manual PayPal confirmation
- Reconciliation error queue
- Price settings and revenue summary
"""

from unittest.mock import patch

from classifieds.extensions import db
from classifieds.models.setting import Setting
from classifieds.services import entitlement_service, ledger_service, reconciliation_service


def _queue_failed_grant(tx):
    ledger_service.transition(tx.id, "succeeded")
    with patch(
        "classifieds.services.reconciliation_service.entitlement_service.grant_reveal",
        side_effect=RuntimeError("lock timeout"),
    ):
        reconciliation_service.apply_entitlement_safely(tx)


class TestAccess:

    def test_anonymous_gets_401(self, client, seed_data):
        assert client.get("/admin/transactions").status_code == 401

    def test_non_admin_gets_403(self, client, login, seed_data):
        login(seed_data["buyer_email"])
        assert client.get("/admin/transactions").status_code == 403
        assert client.post("/admin/settings", json={"PRICE_FEATURE": "1.00"}).status_code == 403
        assert Setting.query.count() == 0


class TestTransactions:

    def test_list_and_filter(self, client, login, make_transaction, seed_data):
        pending = make_transaction()
        failed = make_transaction(listing_id=seed_data["other_listing_id"])
        ledger_service.transition(failed.id, "failed")
        login(seed_data["admin_email"])

        all_ids = {t["id"] for t in client.get("/admin/transactions").get_json()["transactions"]}
        failed_ids = [
            t["id"] for t in
            client.get("/admin/transactions?status=failed").get_json()["transactions"]
        ]

        assert all_ids == {pending.id, failed.id}
        assert failed_ids == [failed.id]

    def test_unknown_status_filter(self, client, login, seed_data):
        login(seed_data["admin_email"])
        assert client.get("/admin/transactions?status=lost").status_code == 400

    def test_detail_includes_audit_trail(self, client, login, make_transaction, seed_data):
        tx = make_transaction(provider_ref="pi_test_123")
        login(seed_data["admin_email"])

        resp = client.get(f"/admin/transactions/{tx.id}")

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["provider_ref"] == "pi_test_123"
        actions = [event["action"] for event in data["audit"]]
        assert "transaction.created" in actions

    def test_detail_404(self, client, login, seed_data):
        login(seed_data["admin_email"])
        assert client.get("/admin/transactions/missing").status_code == 404


class TestManualPaths:

    def test_simulate_success_grants(self, client, login, make_transaction, seed_data):
        tx = make_transaction()
        login(seed_data["admin_email"])

        resp = client.post(f"/admin/transactions/{tx.id}/simulate-success")

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["result"] == "processed"
        assert data["transaction"]["status"] == "succeeded"
        assert entitlement_service.has_reveal(seed_data["buyer_id"], seed_data["listing_id"])

        again = client.post(f"/admin/transactions/{tx.id}/simulate-success").get_json()
        assert again["result"] == "noop"

    def test_simulate_disabled_is_404(self, app, client, login, make_transaction,
                                      seed_data, monkeypatch):
        monkeypatch.setitem(app.config, "ALLOW_TEST_TRIGGER", False)
        tx = make_transaction()
        login(seed_data["admin_email"])

        resp = client.post(f"/admin/transactions/{tx.id}/simulate-success")

        assert resp.status_code == 404
        assert ledger_service.get_transaction(tx.id).status == "pending"

    def test_simulate_unknown_transaction(self, client, login, seed_data):
        login(seed_data["admin_email"])
        resp = client.post("/admin/transactions/missing/simulate-success")
        assert resp.status_code == 404

    def test_confirm_paypal_payment(self, client, login, make_transaction, seed_data):
        tx = make_transaction(provider="paypal")
        login(seed_data["admin_email"])

        resp = client.post(f"/admin/transactions/{tx.id}/confirm")

        assert resp.status_code == 200
        assert resp.get_json()["transaction"]["status"] == "succeeded"
        assert entitlement_service.has_reveal(seed_data["buyer_id"], seed_data["listing_id"])

    def test_confirm_rejects_stripe_transaction(self, client, login, make_transaction, seed_data):
        tx = make_transaction(provider_ref="pi_test_123")
        login(seed_data["admin_email"])

        resp = client.post(f"/admin/transactions/{tx.id}/confirm")

        assert resp.status_code == 400
        assert ledger_service.get_transaction(tx.id).status == "pending"


class TestReconciliationErrors:

    def test_list_and_retry_one(self, client, login, make_transaction, seed_data):
        tx = make_transaction(provider_ref="pi_test_123")
        _queue_failed_grant(tx)
        login(seed_data["admin_email"])

        errors = client.get("/admin/reconciliation-errors").get_json()["errors"]
        assert len(errors) == 1
        assert errors[0]["transaction_id"] == tx.id
        assert errors[0]["stage"] == "grant"

        resp = client.post(f"/admin/reconciliation-errors/{errors[0]['id']}/retry")

        assert resp.get_json() == {"resolved": True}
        assert entitlement_service.has_reveal(seed_data["buyer_id"], seed_data["listing_id"])
        assert client.get("/admin/reconciliation-errors").get_json()["errors"] == []
        resolved = client.get("/admin/reconciliation-errors?status=all").get_json()["errors"]
        assert [e["status"] for e in resolved] == ["resolved"]

    def test_retry_all(self, client, login, make_transaction, seed_data):
        _queue_failed_grant(make_transaction(provider_ref="pi_test_123"))
        login(seed_data["admin_email"])

        resp = client.post("/admin/reconciliation-errors/retry")

        assert resp.get_json() == {"resolved": 1, "failed": 0}

    def test_retry_unknown_error(self, client, login, seed_data):
        login(seed_data["admin_email"])
        assert client.post("/admin/reconciliation-errors/nope/retry").status_code == 400

    def _late_success(self, send_webhook, make_transaction, intent_object):
        tx = make_transaction(provider_ref="pi_test_123")
        send_webhook("payment_intent.payment_failed", {
            "id": "pi_test_123", "object": "payment_intent", "metadata": {},
        })
        send_webhook("payment_intent.succeeded", intent_object(tx))
        return tx

    def test_late_success_cannot_be_retried(self, client, login, send_webhook,
                                            make_transaction, intent_object, seed_data):
        self._late_success(send_webhook, make_transaction, intent_object)
        login(seed_data["admin_email"])
        error = client.get("/admin/reconciliation-errors").get_json()["errors"][0]

        resp = client.post(f"/admin/reconciliation-errors/{error['id']}/retry")

        assert resp.status_code == 400
        assert not entitlement_service.has_reveal(seed_data["buyer_id"], seed_data["listing_id"])

    def test_resolve_late_success_by_hand(self, client, login, send_webhook,
                                          make_transaction, intent_object, seed_data):
        tx = self._late_success(send_webhook, make_transaction, intent_object)
        login(seed_data["admin_email"])
        error = client.get("/admin/reconciliation-errors").get_json()["errors"][0]
        assert error["stage"] == "late_success"

        resp = client.post(
            f"/admin/reconciliation-errors/{error['id']}/resolve",
            json={"note": "refunded in the Stripe dashboard"},
        )

        assert resp.status_code == 200
        assert resp.get_json()["error"]["status"] == "resolved"
        assert client.get("/admin/reconciliation-errors").get_json()["errors"] == []
        detail = client.get(f"/admin/transactions/{tx.id}").get_json()
        assert detail["status"] == "failed"
        assert detail["entitlement_pending"] is False


class TestSettings:

    def test_get_settings(self, client, login, seed_data):
        login(seed_data["admin_email"])

        data = client.get("/admin/settings").get_json()

        assert data["overrides"]["PRICE_REVEAL_CONTACT"] is None
        assert data["prices"]["reveal_contact"] == {"amount": "19.00", "currency": "USD"}

    def test_update_price_changes_next_purchase(self, client, login, seed_data):
        login(seed_data["admin_email"])

        resp = client.post("/admin/settings", json={"PRICE_REVEAL_CONTACT": "24.50"})

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["updated"] == {"PRICE_REVEAL_CONTACT": "24.50"}
        assert data["prices"]["reveal_contact"]["amount"] == "24.50"
        assert db.session.get(Setting, "PRICE_REVEAL_CONTACT").value == "24.50"

    def test_invalid_price_rejected(self, client, login, seed_data):
        login(seed_data["admin_email"])

        resp = client.post("/admin/settings", json={"PRICE_FEATURE": "-1"})

        assert resp.status_code == 400
        assert Setting.query.count() == 0

    def test_empty_body_rejected(self, client, login, seed_data):
        login(seed_data["admin_email"])
        assert client.post("/admin/settings", json={}).status_code == 400


def test_revenue_summary(client, login, make_transaction, seed_data):
    tx = make_transaction()
    ledger_service.transition(tx.id, "succeeded")
    make_transaction(listing_id=seed_data["other_listing_id"])
    login(seed_data["admin_email"])

    revenue = client.get("/admin/revenue").get_json()["revenue"]

    assert revenue == [
        {"purpose": "reveal_contact", "currency": "USD", "count": 1, "total": "19.00"},
    ]
