"""
Test entitlement schema tables.

Verifies organizations, billing_customers, module_subscriptions,
billing_events and billing_job_runs exist with the columns, indexes and
constraints the store relies on.
"""
import pytest
from sqlalchemy import inspect, insert
from sqlalchemy.exc import IntegrityError

from backend.core.database import get_engine, get_db_session, billing_events, billing_customers


@pytest.fixture
def inspector(reset_db):
    return inspect(get_engine())


def test_all_tables_exist(inspector):
    tables = set(inspector.get_table_names())
    assert {
        "organizations",
        "billing_customers",
        "module_subscriptions",
        "billing_events",
        "billing_job_runs",
    } <= tables


def test_module_subscriptions_columns(inspector):
    columns = {col["name"]: col for col in inspector.get_columns("module_subscriptions")}

    for name in (
        "org_id",
        "module_id",
        "external_subscription_id",
        "status",
        "billing_cycle",
        "current_period_end",
        "cancel_at_period_end",
        "past_due_since",
        "last_event_sequence",
        "pending_confirmation_since",
        "deleted_at",
    ):
        assert name in columns

    assert columns["org_id"]["nullable"] is False
    assert columns["deleted_at"]["nullable"] is True


def test_module_subscriptions_indexes(inspector):
    indexes = {idx["name"]: idx for idx in inspector.get_indexes("module_subscriptions")}
    assert indexes["idx_module_subscriptions_org_module"]["column_names"] == ["org_id", "module_id"]


def test_billing_events_indexes(inspector):
    indexes = {idx["name"] for idx in inspector.get_indexes("billing_events")}
    assert "idx_billing_events_module_org_sequence" in indexes
    assert "idx_billing_events_processed" in indexes


def test_billing_events_event_id_unique(reset_db):
    row = dict(stripe_event_id="evt_1", event_type="invoice.paid", payload_hash="0" * 64)
    with get_db_session() as session:
        session.execute(insert(billing_events).values(**row))

    with pytest.raises(IntegrityError):
        with get_db_session() as session:
            session.execute(insert(billing_events).values(**row))


def test_billing_customers_one_per_org(reset_db):
    with get_db_session() as session:
        session.execute(insert(billing_customers).values(org_id="org_a", stripe_customer_id="cus_1"))

    with pytest.raises(IntegrityError):
        with get_db_session() as session:
            session.execute(insert(billing_customers).values(org_id="org_a", stripe_customer_id="cus_2"))
