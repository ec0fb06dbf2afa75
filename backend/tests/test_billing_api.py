"""
Billing API tests with a mocked provider.
"""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from fastapi.testclient import TestClient

from backend.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    ProviderSubscription,
)
from backend.features.subscriptions import service as store
from backend.features.usage.service import register_usage_counter
from backend.main import app
from backend.models.subscription import SubscriptionStatus


HEADERS = {"x-organization-id": "org_a"}


def snapshot(status="active", **kwargs):
    now = datetime.now(timezone.utc)
    values = {
        "subscription_id": "sub_crm",
        "customer_id": "cus_test123",
        "price_id": "price_crm_monthly",
        "status": status,
        "org_id": "org_a",
        "module_id": "crm",
        "billing_cycle": "monthly",
        "current_period_start": now - timedelta(days=1),
        "current_period_end": now + timedelta(days=29),
    }
    values.update(kwargs)
    return ProviderSubscription(**values)


@pytest.fixture
def provider(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_CRM_MONTHLY_PRICE_ID", "price_crm_monthly")
    instance = Mock()
    instance.ensure_customer.return_value = "cus_test123"
    instance.create_checkout_session.return_value = "https://checkout.stripe.com/c/pay/cs_test"
    instance.create_portal_session.return_value = "https://billing.stripe.com/p/session/test"
    instance.retrieve_checkout_subscription.return_value = snapshot()
    with patch("backend.features.billing.service.StripeProvider", return_value=instance):
        yield instance


@pytest.fixture
def client():
    return TestClient(app)


def test_checkout_returns_url(reset_db, provider, client):
    resp = client.post(
        "/api/billing/checkout",
        json={"module_id": "crm", "success_url": "http://s", "cancel_url": "http://c"},
        headers=HEADERS,
    )

    assert resp.status_code == 200
    assert resp.json() == {"url": "https://checkout.stripe.com/c/pay/cs_test"}


def test_checkout_without_price_is_400(reset_db, provider, client, monkeypatch):
    monkeypatch.delenv("STRIPE_CRM_YEARLY_PRICE_ID", raising=False)
    resp = client.post(
        "/api/billing/checkout",
        json={"module_id": "crm", "billing_cycle": "yearly", "success_url": "http://s", "cancel_url": "http://c"},
        headers=HEADERS,
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_checkout_provider_failure_is_502(reset_db, provider, client):
    provider.create_checkout_session.side_effect = BillingProviderError("stripe down")
    resp = client.post(
        "/api/billing/checkout",
        json={"module_id": "crm", "success_url": "http://s", "cancel_url": "http://c"},
        headers=HEADERS,
    )
    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "provider_unavailable"


def test_checkout_requires_organization(reset_db, provider, client):
    resp = client.post(
        "/api/billing/checkout",
        json={"module_id": "crm", "success_url": "http://s", "cancel_url": "http://c"},
    )
    assert resp.status_code == 401


def test_confirm_then_list_modules(reset_db, provider, client):
    resp = client.post("/api/billing/checkout/confirm", json={"session_id": "cs_test"}, headers=HEADERS)

    assert resp.status_code == 200
    assert resp.json()["status"] == "active"
    assert resp.json()["pending_confirmation"] is True

    modules = client.get("/api/billing/modules", headers=HEADERS).json()
    crm = next(m for m in modules if m["module_id"] == "crm")
    assert crm["is_paid"] is True
    assert crm["pending_confirmation"] is True


def test_portal_requires_customer(reset_db, provider, client):
    resp = client.post("/api/billing/portal", json={"return_url": "http://r"}, headers=HEADERS)
    assert resp.status_code == 404


def test_cancel_and_resume(reset_db, provider, client):
    client.post("/api/billing/checkout/confirm", json={"session_id": "cs_test"}, headers=HEADERS)

    canceled = client.post("/api/billing/modules/crm/cancel", json={"at_period_end": True}, headers=HEADERS)
    assert canceled.status_code == 200
    assert canceled.json()["cancel_at_period_end"] is True

    resumed = client.post("/api/billing/modules/crm/resume", headers=HEADERS)
    assert resumed.status_code == 200
    assert resumed.json()["cancel_at_period_end"] is False


def test_resume_without_scheduled_cancel_is_409(reset_db, provider, client):
    client.post("/api/billing/checkout/confirm", json={"session_id": "cs_test"}, headers=HEADERS)
    resp = client.post("/api/billing/modules/crm/resume", headers=HEADERS)
    assert resp.status_code == 409


def test_cancel_without_subscription_is_404(reset_db, provider, client):
    resp = client.post("/api/billing/modules/invoice/cancel", json={}, headers=HEADERS)
    assert resp.status_code == 404


def test_downgrade_impact(reset_db, client):
    register_usage_counter("crm", "contacts", lambda org_id: 150)
    register_usage_counter("crm", "companies", lambda org_id: 1)
    register_usage_counter("crm", "deals", lambda org_id: 1)
    register_usage_counter("crm", "pipelines", lambda org_id: 1)
    register_usage_counter("crm", "custom_fields", lambda org_id: 1)

    resp = client.get("/api/billing/modules/crm/downgrade-impact", headers=HEADERS)

    assert resp.status_code == 200
    body = resp.json()
    assert body["can_downgrade"] is False
    assert body["exceeding"][0]["feature"] == "contacts"
    assert "No data will be deleted" in body["warning"]


def test_webhook_applies_event(reset_db, provider, client):
    provider.handle_webhook.return_value = BillingWebhookResult(
        event_id="evt_api",
        event_type="customer.subscription.updated",
        created=1000,
        subscription=snapshot(status="past_due"),
    )

    resp = client.post(
        "/api/billing/webhook",
        content=json.dumps({"id": "evt_api"}).encode(),
        headers={"stripe-signature": "sig"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "event_id": "evt_api", "applied": True, "duplicate": False}
    assert store.get_subscription("org_a", "crm").status == SubscriptionStatus.PAST_DUE


def test_webhook_bad_signature_is_400(reset_db, provider, client):
    provider.handle_webhook.side_effect = BillingWebhookError("Invalid signature")

    resp = client.post("/api/billing/webhook", content=b"{}", headers={"stripe-signature": "bad"})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_webhook"


def test_webhook_unmapped_event_is_500(reset_db, provider, client):
    provider.handle_webhook.return_value = BillingWebhookResult(
        event_id="evt_new",
        event_type="customer.subscription.reticulated",
        created=1000,
        subscription=snapshot(),
    )

    resp = client.post("/api/billing/webhook", content=b"{}", headers={"stripe-signature": "sig"})

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "configuration_error"
