"""Tests for server billing rows, the daily charge schedule and deploy orders."""

from datetime import timedelta

import pytest

from conftest import T0
from db import get_engine
from errors import WalletFrozen, WalletNotFound
from ledger import ensure_wallet, soft_delete_wallet
from servers import (
    BILLING_STEP,
    PERIOD_DAYS,
    BillingStatus,
    advance_in,
    backfill_server_billing,
    cancel_pending_orders,
    create_deploy_order,
    create_server_billing,
    daily_charge,
    get_server_billing,
    list_deploy_orders,
    list_due,
    list_server_billing,
    mark_cancelled,
    mark_overdue,
    record_failure,
)


# ── Charge Schedule ──────────────────────────────────────────────────


class TestDailyCharge:
    @pytest.mark.parametrize("monthly", [0, 1, 29, 30, 999, 3000, 4599, 123457])
    def test_period_sums_to_monthly_price(self, monthly):
        assert sum(daily_charge(monthly, d) for d in range(PERIOD_DAYS)) == monthly

    def test_even_split(self):
        assert daily_charge(3000, 0) == 100
        assert daily_charge(3000, 29) == 100

    def test_remainder_on_last_day(self):
        assert daily_charge(1000, 0) == 33
        assert daily_charge(1000, 29) == 1000 - 33 * 29

    def test_period_day_out_of_range(self):
        with pytest.raises(ValueError):
            daily_charge(3000, 30)
        with pytest.raises(ValueError):
            daily_charge(3000, -1)


# ── Billing Rows ─────────────────────────────────────────────────────


class TestServerBilling:
    def test_create_defaults_first_charge_to_deploy_time(self):
        b = create_server_billing("s1", "alice", 1, 3000, deployed_at=T0)
        assert b.status == BillingStatus.ACTIVE
        assert b.next_bill_at == T0
        assert b.period_day == 0
        assert b.next_charge_cents == 100

    def test_create_is_idempotent(self):
        create_server_billing("s1", "alice", 1, 3000, deployed_at=T0)
        again = create_server_billing("s1", "alice", 2, 9999, deployed_at=T0 + timedelta(days=3))
        assert again.monthly_price_cents == 3000
        assert len(list_server_billing()) == 1

    def test_negative_price_rejected(self):
        with pytest.raises(ValueError):
            create_server_billing("s1", "alice", 1, -1)

    def test_list_due_only_active_rows_in_time_order(self):
        create_server_billing("late", "alice", 1, 3000, next_bill_at=T0 + timedelta(hours=2))
        create_server_billing("early", "alice", 1, 3000, next_bill_at=T0)
        create_server_billing("future", "alice", 1, 3000, next_bill_at=T0 + timedelta(days=2))
        create_server_billing("gone", "alice", 1, 3000, next_bill_at=T0)
        mark_cancelled("gone", now=T0)

        due = list_due(T0 + timedelta(hours=3))
        assert [b.server_id for b in due] == ["early", "late"]

    def test_list_due_skips_rows_without_auto_renew(self):
        create_server_billing("renews", "alice", 1, 3000, next_bill_at=T0)
        create_server_billing("lapses", "alice", 1, 3000, next_bill_at=T0, auto_renew=False)
        assert [b.server_id for b in list_due(T0)] == ["renews"]
        assert get_server_billing("lapses").auto_renew is False

    def test_list_by_owner(self):
        create_server_billing("s1", "alice", 1, 3000)
        create_server_billing("s2", "bob", 1, 3000)
        assert [b.server_id for b in list_server_billing("bob")] == ["s2"]

    def test_advance_is_guarded_on_next_bill_at(self):
        b = create_server_billing("s1", "alice", 1, 3000, deployed_at=T0)
        with get_engine().transaction() as (conn, backend):
            assert advance_in(conn, backend, b, T0) is True
        with get_engine().transaction() as (conn, backend):
            assert advance_in(conn, backend, b, T0) is False

        row = get_server_billing("s1")
        assert row.next_bill_at == T0 + BILLING_STEP
        assert row.period_day == 1
        assert row.last_billed_at == T0

    def test_period_day_wraps(self):
        b = create_server_billing("s1", "alice", 1, 3000, deployed_at=T0)
        for _ in range(PERIOD_DAYS):
            b = get_server_billing("s1")
            with get_engine().transaction() as (conn, backend):
                advance_in(conn, backend, b, T0)
        assert get_server_billing("s1").period_day == 0

    def test_failure_streak_sets_deadline_from_first_failure(self):
        create_server_billing("s1", "alice", 1, 3000, deployed_at=T0)
        record_failure("s1", now=T0)
        b = record_failure("s1", now=T0 + timedelta(hours=5))
        assert b.failed_attempts == 2
        assert b.first_failed_at == T0
        assert b.suspend_at == T0 + timedelta(days=7)

    def test_successful_advance_clears_failure_streak(self):
        create_server_billing("s1", "alice", 1, 3000, deployed_at=T0)
        b = record_failure("s1", now=T0)
        with get_engine().transaction() as (conn, backend):
            advance_in(conn, backend, b, T0 + timedelta(hours=1))
        b = get_server_billing("s1")
        assert b.failed_attempts == 0
        assert b.first_failed_at is None
        assert b.suspend_at is None

    def test_status_transitions(self):
        create_server_billing("s1", "alice", 1, 3000)
        assert mark_overdue("s1") is True
        assert mark_overdue("s1") is False
        assert get_server_billing("s1").status == BillingStatus.OVERDUE
        assert mark_cancelled("s1") is True
        assert mark_cancelled("unknown") is False

    def test_to_dict_is_json_friendly(self):
        b = create_server_billing("s1", "alice", 1, 3000, deployed_at=T0)
        d = b.to_dict()
        assert d["status"] == "active"
        assert d["next_bill_at"] == T0.isoformat()
        assert d["next_charge_cents"] == 100


# ── Backfill ─────────────────────────────────────────────────────────


class TestBackfill:
    def test_backfill_creates_missing_rows(self, fake_provisioning):
        ensure_wallet("alice", "cus_a", provisioning_user_id="77")
        fake_provisioning.plans = {1: 3000, 2: 6000}
        fake_provisioning.add_server("s1", "77", plan_id=1, created_at=T0)
        fake_provisioning.add_server("s2", "77", plan_id=2)
        fake_provisioning.add_server("other", "88", plan_id=1)
        create_server_billing("s1", "alice", 1, 3000, deployed_at=T0)

        now = T0 + timedelta(days=10)
        created = backfill_server_billing("alice", now=now)
        assert [b.server_id for b in created] == ["s2"]
        assert created[0].monthly_price_cents == 6000
        assert created[0].next_bill_at == now + BILLING_STEP

    def test_backfill_requires_wallet(self, fake_provisioning):
        with pytest.raises(WalletNotFound):
            backfill_server_billing("ghost")


# ── Deploy Orders ────────────────────────────────────────────────────


class TestDeployOrders:
    def test_create_and_cancel_pending(self):
        ensure_wallet("alice")
        create_deploy_order("alice", 1, 3000)
        create_deploy_order("alice", 2, 6000)
        assert cancel_pending_orders("alice") == 2
        assert {o["status"] for o in list_deploy_orders("alice")} == {"cancelled"}
        assert cancel_pending_orders("alice") == 0

    def test_frozen_wallet_cannot_order(self):
        ensure_wallet("alice")
        soft_delete_wallet("alice")
        with pytest.raises(WalletFrozen):
            create_deploy_order("alice", 1, 3000)
