"""Tests for the auto top-up engine."""

from datetime import timedelta

import pytest

from conftest import T0, FakeGateway
from errors import ExternalServiceUnavailable, WalletFrozen
from ledger import TxType, adjust, ensure_wallet, get_transactions, get_wallet, soft_delete_wallet
from payments import ChargeResult
from topup import (
    TopUpOutcome,
    configure_auto_topup,
    maybe_top_up,
    run_auto_topups,
    topup_idempotency_key,
)


def _auto_wallet(owner_id="alice", balance=0, threshold=1000, amount=500, method="pm_card"):
    ensure_wallet(owner_id, f"cus_{owner_id}")
    if balance:
        adjust(owner_id, balance, "ops", "seed")
    configure_auto_topup(owner_id, True, threshold, amount, method)


class TestConfigure:
    def test_enable_and_disable(self):
        ensure_wallet("alice")
        w = configure_auto_topup("alice", True, 1000, 2000, "pm_1")
        assert w.auto_topup_enabled
        assert w.auto_topup_threshold_cents == 1000
        assert w.auto_topup_payment_method_id == "pm_1"

        w = configure_auto_topup("alice", False)
        assert not w.auto_topup_enabled
        # Stored method is kept when none is passed
        assert w.auto_topup_payment_method_id == "pm_1"

    @pytest.mark.parametrize("amount", [0, 499, 50001])
    def test_amount_out_of_range(self, amount):
        ensure_wallet("alice")
        with pytest.raises(ValueError):
            configure_auto_topup("alice", True, 1000, amount, "pm_1")

    def test_frozen_wallet_refused(self):
        ensure_wallet("alice")
        soft_delete_wallet("alice")
        with pytest.raises(WalletFrozen):
            configure_auto_topup("alice", True, 1000, 500, "pm_1")


class TestMaybeTopUp:
    def test_below_threshold_tops_up(self):
        _auto_wallet(balance=200)
        gw = FakeGateway()
        result = maybe_top_up("alice", gateway=gw)
        assert result.success
        assert result.amount_cents == 500
        assert result.balance_cents == 700
        assert gw.charges == [("cus_alice", "pm_card", 500)]
        tx = get_transactions("alice", limit=1)[0]
        assert tx.type == TxType.AUTO_TOPUP
        assert tx.gateway_event_id == result.gateway_ref

    def test_gateway_exception_is_a_failed_top_up(self):
        _auto_wallet(balance=200)
        gw = FakeGateway()
        gw.raise_for["cus_alice"] = ExternalServiceUnavailable("payment_gateway", "timeout")
        result = maybe_top_up("alice", gateway=gw)
        assert result.outcome == TopUpOutcome.GATEWAY_FAILED
        assert "timeout" in result.error
        assert get_wallet("alice").balance_cents == 200

    def test_idempotency_key_per_owner_and_hour(self):
        _auto_wallet(balance=200)
        gw = FakeGateway()
        maybe_top_up("alice", gateway=gw, now=T0)
        assert gw.idempotency_keys == ["autotopup:alice:2026030100"]
        assert topup_idempotency_key("alice", T0 + timedelta(minutes=59)) == gw.idempotency_keys[0]
        assert topup_idempotency_key("alice", T0 + timedelta(hours=1)) != gw.idempotency_keys[0]

    def test_replayed_gateway_charge_is_credited_once(self):
        _auto_wallet(balance=200)

        class ReplayingGateway(FakeGateway):
            def charge_stored_method(self, *args, **kwargs):
                super().charge_stored_method(*args, **kwargs)
                return ChargeResult(True, gateway_ref="pi_same")

        gw = ReplayingGateway()
        assert maybe_top_up("alice", gateway=gw, now=T0).success
        again = maybe_top_up("alice", gateway=gw, now=T0)
        assert again.outcome == TopUpOutcome.ALREADY_CREDITED
        assert get_wallet("alice").balance_cents == 700
        assert len(get_transactions("alice")) == 2

    def test_above_threshold_does_nothing(self):
        _auto_wallet(balance=5000)
        gw = FakeGateway()
        result = maybe_top_up("alice", gateway=gw)
        assert result.outcome == TopUpOutcome.ABOVE_THRESHOLD
        assert gw.charges == []

    def test_shortfall_larger_than_configured_amount(self):
        _auto_wallet(balance=5000, amount=500)
        gw = FakeGateway()
        result = maybe_top_up("alice", shortfall_cents=1200, gateway=gw)
        assert result.success
        assert result.amount_cents == 1200
        assert get_wallet("alice").balance_cents == 6200

    def test_gateway_failure_leaves_wallet_untouched(self):
        _auto_wallet(balance=200)
        result = maybe_top_up("alice", gateway=FakeGateway(succeed=False))
        assert result.outcome == TopUpOutcome.GATEWAY_FAILED
        assert result.error == "card_declined"
        assert get_wallet("alice").balance_cents == 200
        assert len(get_transactions("alice")) == 1

    def test_not_enabled(self):
        ensure_wallet("alice", "cus_alice")
        assert maybe_top_up("alice", gateway=FakeGateway()).outcome == TopUpOutcome.NOT_ENABLED

    def test_no_payment_method(self):
        _auto_wallet(method=None)
        result = maybe_top_up("alice", gateway=FakeGateway())
        assert result.outcome == TopUpOutcome.NO_PAYMENT_METHOD

    def test_frozen_and_missing_wallets(self):
        _auto_wallet()
        soft_delete_wallet("alice")
        gw = FakeGateway()
        assert maybe_top_up("alice", gateway=gw).outcome == TopUpOutcome.WALLET_FROZEN
        assert maybe_top_up("ghost", gateway=gw).outcome == TopUpOutcome.NO_WALLET
        assert gw.charges == []


class TestRunAutoTopUps:
    def test_only_wallets_below_threshold(self):
        _auto_wallet("low", balance=100)
        _auto_wallet("high", balance=5000)
        ensure_wallet("off")
        gw = FakeGateway()
        results = run_auto_topups(gateway=gw)
        assert [r.owner_id for r in results] == ["low"]
        assert results[0].success
        assert get_wallet("low").balance_cents == 600

    def test_failing_wallet_does_not_stop_the_pass(self, monkeypatch):
        import topup

        _auto_wallet("a", balance=100)
        _auto_wallet("b", balance=100)
        real = topup.maybe_top_up

        def flaky(owner_id, **kwargs):
            if owner_id == "a":
                raise RuntimeError("db hiccup")
            return real(owner_id, **kwargs)

        monkeypatch.setattr(topup, "maybe_top_up", flaky)
        results = {r.owner_id: r for r in run_auto_topups(gateway=FakeGateway())}
        assert results["a"].outcome == TopUpOutcome.ERROR
        assert results["a"].error_class == "error"
        assert results["b"].success
        assert get_wallet("b").balance_cents == 600

    def test_attempted_owners_are_skipped(self):
        _auto_wallet("low", balance=100)
        gw = FakeGateway(succeed=False)
        attempted = set()
        first = run_auto_topups(gateway=gw, attempted=attempted)
        second = run_auto_topups(gateway=gw, attempted=attempted)
        assert first[0].outcome == TopUpOutcome.GATEWAY_FAILED
        assert second[0].outcome == TopUpOutcome.ALREADY_ATTEMPTED
        assert len(gw.charges) == 1
