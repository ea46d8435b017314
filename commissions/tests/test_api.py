"""
HTTP tests for the commission API
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from commissions import api
from commissions.models import PaymentStatus, RecipientKind

PARTNER_CODE = "ABC12345"


@pytest.fixture(autouse=True)
def fresh_store():
    api.storage.reset()
    yield
    api.storage.reset()


@pytest.fixture
def client():
    return TestClient(api.app)


@pytest.fixture
def referred_customer():
    partner = api.referral_service.register_referrer(
        RecipientKind.PARTNER, "partner@example.com", name="Paws Studio", personal_code=PARTNER_CODE,
    )
    c1 = api.referral_service.register_referrer(RecipientKind.CUSTOMER, "c1@example.com")
    api.referral_service.accept(PARTNER_CODE, c1.id)
    return partner, c1


def _paid_order(email, subtotal_minor, discount_minor=0):
    return api.order_service.record_order(
        email, subtotal_minor, discount_minor=discount_minor, payment_status=PaymentStatus.PAID,
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestOrderPaid:
    def test_webhook_posts_once(self, client, referred_customer):
        _, c1 = referred_customer
        order = _paid_order(c1.email, 10000, discount_minor=2000)

        first = client.post(f"/orders/{order.id}/paid")
        second = client.post(f"/orders/{order.id}/paid")

        assert first.status_code == 200
        assert first.json()["processed"] is True
        assert first.json()["commission_type"] == "initial"
        assert first.json()["posting"]["created"] is True
        assert first.json()["posting"]["entry"]["commission_amount_minor"] == 2000
        assert second.status_code == 200
        assert second.json()["posting"]["created"] is False

    def test_organic_order_is_not_processed(self, client):
        order = _paid_order("guest@example.com", 10000)

        response = client.post(f"/orders/{order.id}/paid")

        assert response.status_code == 200
        assert response.json()["processed"] is False

    def test_unknown_order(self, client):
        assert client.post(f"/orders/{uuid4()}/paid").status_code == 404


class TestCredits:
    def test_balance_and_redeem(self, client, referred_customer):
        _, c1 = referred_customer
        api.credit_accountant.issue(c1.id, 1000, "goodwill")
        order = api.order_service.record_order(c1.email, 5000)

        assert client.get(f"/customers/{c1.id}/balance").json()["available_balance_minor"] == 1000

        response = client.post(
            f"/customers/{c1.id}/redeem",
            json={"order_id": str(order.id), "requested_minor": 1500},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["applied_minor"] == 1000
        assert body["clamped"] is True
        assert client.get(f"/customers/{c1.id}/balance").json()["available_balance_minor"] == 0
        assert [c["status"] for c in client.get(f"/customers/{c1.id}/credits").json()] == ["used"]

    def test_negative_request_rejected(self, client, referred_customer):
        _, c1 = referred_customer
        response = client.post(
            f"/customers/{c1.id}/redeem",
            json={"order_id": str(uuid4()), "requested_minor": -5},
        )
        assert response.status_code == 422

    def test_redeem_unknown_order(self, client, referred_customer):
        _, c1 = referred_customer
        response = client.post(
            f"/customers/{c1.id}/redeem",
            json={"order_id": str(uuid4()), "requested_minor": 100},
        )
        assert response.status_code == 404

    def test_redeem_on_foreign_order_conflicts(self, client, referred_customer):
        _, c1 = referred_customer
        api.credit_accountant.issue(c1.id, 1000, "goodwill")
        order = api.order_service.record_order("stranger@example.com", 5000)

        response = client.post(
            f"/customers/{c1.id}/redeem",
            json={"order_id": str(order.id), "requested_minor": 500},
        )

        assert response.status_code == 409

    def test_balance_for_partner_is_not_found(self, client, referred_customer):
        partner, _ = referred_customer
        assert client.get(f"/customers/{partner.id}/balance").status_code == 404


class TestReferrers:
    def test_attribution_report(self, client, referred_customer):
        partner, c1 = referred_customer
        _paid_order(c1.email, 10000)

        body = client.get(f"/referrers/{partner.id}/attribution").json()

        assert body["total_attributed_customers"] == 1
        assert body["total_attributed_revenue_minor"] == 10000
        assert body["by_level"][0]["level"] == 1

    def test_unknown_referrer(self, client):
        assert client.get(f"/referrers/{uuid4()}/attribution").status_code == 404

    def test_approve_and_pay(self, client, referred_customer):
        partner, c1 = referred_customer
        order = _paid_order(c1.email, 10000)
        entry_id = client.post(f"/orders/{order.id}/paid").json()["posting"]["entry"]["id"]

        assert client.post(f"/commissions/{entry_id}/pay").status_code == 400
        assert client.post(f"/commissions/{entry_id}/approve").json()["status"] == "approved"
        assert client.post(f"/commissions/{entry_id}/pay").json()["status"] == "paid"

        payable = client.get(f"/referrers/{partner.id}/payable").json()
        assert payable["paid_minor"] == 2000
        history = client.get(f"/referrers/{partner.id}/commissions").json()
        assert history["total_count"] == 1

    def test_unknown_commission(self, client):
        assert client.post(f"/commissions/{uuid4()}/approve").status_code == 404


class TestReferralCodes:
    def test_verify_personal_code(self, client, referred_customer):
        response = client.get("/referrals/abc12345")

        assert response.status_code == 200
        assert response.json()["referrer_kind"] == "partner"
        assert response.json()["referrer_name"] == "Paws Studio"

    def test_unknown_code(self, client):
        assert client.get("/referrals/NOPE0000").status_code == 404

    def test_track_access(self, client, referred_customer):
        partner, _ = referred_customer
        record = api.referral_service.issue_code(partner.id)

        response = client.post(f"/referrals/{record.code}/access")

        assert response.status_code == 200
        assert response.json()["status"] == "accessed"

    def test_expired_code_is_gone(self, client, referred_customer):
        partner, _ = referred_customer
        past = datetime.now(timezone.utc) - timedelta(days=5)
        record = api.referral_service.issue_code(partner.id, expires_in_days=1, now=past)

        assert client.get(f"/referrals/{record.code}").status_code == 410


def test_reconciliation_dry_run(client, referred_customer):
    _, c1 = referred_customer
    _paid_order(c1.email, 10000)

    body = client.post("/reconciliation/run").json()

    assert body["dry_run"] is True
    assert body["orders_missing_commission"] == 1
    assert api.storage.select("ledger_entries") == []
