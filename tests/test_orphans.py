"""Tests for orphan cleanup and the identity provider's user-deleted webhook."""

import pytest

from conftest import T0, FakeGateway, FakeIdentity, FakeProvisioning
from errors import ExternalServiceUnavailable, InvalidWebhook, WalletFrozen
from ledger import adjust, ensure_wallet, get_transactions, get_wallet, list_wallets
from orphans import (
    handle_identity_deletion,
    run_orphan_cleanup,
    sign_identity_payload,
    unwind_owner,
    verify_identity_webhook,
)
from servers import (
    BillingStatus,
    create_deploy_order,
    create_server_billing,
    get_server_billing,
    list_deploy_orders,
)
from topup import configure_auto_topup


def _owner_with_servers(owner_id="alice", account_id="77", panel=None, balance=2500):
    ensure_wallet(owner_id, f"cus_{owner_id}", provisioning_user_id=account_id)
    if balance:
        adjust(owner_id, balance, "ops", "seed")
    for sid in ("s1", "s2"):
        panel.add_server(f"{owner_id}-{sid}", account_id)
        create_server_billing(f"{owner_id}-{sid}", owner_id, 1, 3000, deployed_at=T0)


class TestUnwind:
    def test_deleted_owner_is_fully_unwound(self):
        panel, gw = FakeProvisioning(), FakeGateway()
        _owner_with_servers(panel=panel)
        create_deploy_order("alice", 1, 3000)

        result = unwind_owner("alice", provisioning=panel, gateway=gw, now=T0)

        assert result.servers_deleted == 2
        assert result.account_deleted is True
        assert panel.deleted_users == ["77"]
        assert result.customer_deleted is True
        assert result.wallet_frozen is True
        assert result.orders_cancelled == 1
        assert panel.servers == {}
        assert gw.deleted_customers == ["cus_alice"]
        w = get_wallet("alice")
        assert w.frozen
        assert w.balance_cents == 2500
        assert len(get_transactions("alice")) == 1
        assert get_server_billing("alice-s1").status == BillingStatus.CANCELLED
        assert list_deploy_orders("alice")[0]["status"] == "cancelled"

    def test_frozen_wallet_refuses_new_money(self):
        panel = FakeProvisioning()
        _owner_with_servers(panel=panel)
        unwind_owner("alice", provisioning=panel, gateway=FakeGateway(), now=T0)
        with pytest.raises(WalletFrozen):
            adjust("alice", 100, "ops", "late")
        with pytest.raises(WalletFrozen):
            configure_auto_topup("alice", True, 100, 500, "pm_1")

    def test_external_failure_aborts_before_freeze(self):
        panel, gw = FakeProvisioning(), FakeGateway()
        _owner_with_servers(panel=panel)
        gw.fail_delete_with = ExternalServiceUnavailable("payment_gateway", "timeout")

        with pytest.raises(ExternalServiceUnavailable):
            unwind_owner("alice", provisioning=panel, gateway=gw, now=T0)
        assert not get_wallet("alice").frozen

        # Second attempt finishes; servers already gone upstream
        gw.fail_delete_with = None
        result = unwind_owner("alice", provisioning=panel, gateway=gw, now=T0)
        assert result.servers_deleted == 0
        assert result.wallet_frozen is True

    def test_account_falls_back_to_owner_id(self):
        panel = FakeProvisioning()
        ensure_wallet("alice", "cus_alice")
        panel.add_server("s1", "alice")
        result = unwind_owner("alice", provisioning=panel, gateway=FakeGateway(), now=T0)
        assert result.servers_deleted == 1
        # No linked panel account, so no account deletion is attempted
        assert result.account_deleted is False
        assert panel.deleted_users == []

    def test_owner_without_wallet(self):
        panel = FakeProvisioning()
        panel.add_server("s1", "ghost")
        result = unwind_owner("ghost", provisioning=panel, gateway=FakeGateway(), now=T0)
        assert result.servers_deleted == 1
        assert result.wallet_frozen is False


class TestSweep:
    def test_sweep_unwinds_only_deleted_owners(self):
        panel, gw = FakeProvisioning(), FakeGateway()
        _owner_with_servers("alice", "77", panel)
        _owner_with_servers("bob", "88", panel)
        identity = FakeIdentity(deleted={"alice"})

        summary = run_orphan_cleanup(now=T0, identity=identity, provisioning=panel,
                                     gateway=gw, check_delay=0)

        assert summary.checked == 2
        assert summary.cleaned == 1
        assert get_wallet("alice").frozen
        assert not get_wallet("bob").frozen
        assert sorted(panel.servers) == ["bob-s1", "bob-s2"]

    def test_identity_outage_is_not_a_deletion(self):
        panel = FakeProvisioning()
        _owner_with_servers("alice", "77", panel)
        identity = FakeIdentity(fail_for={"alice"})

        summary = run_orphan_cleanup(now=T0, identity=identity, provisioning=panel,
                                     gateway=FakeGateway(), check_delay=0)

        assert summary.cleaned == 0
        assert summary.count("external_unavailable") == 1
        assert not get_wallet("alice").frozen
        assert len(panel.servers) == 2

    def test_frozen_wallets_are_not_rechecked(self):
        panel = FakeProvisioning()
        _owner_with_servers("alice", "77", panel)
        identity = FakeIdentity(deleted={"alice"})
        run_orphan_cleanup(now=T0, identity=identity, provisioning=panel,
                           gateway=FakeGateway(), check_delay=0)
        identity.checked.clear()
        summary = run_orphan_cleanup(now=T0, identity=identity, provisioning=panel,
                                     gateway=FakeGateway(), check_delay=0)
        assert summary.checked == 0
        assert identity.checked == []
        assert [w.owner_id for w in list_wallets(include_frozen=False)] == []

    def test_delay_between_checks(self):
        for owner in ("a", "b"):
            ensure_wallet(owner)
        sleeps = []
        run_orphan_cleanup(now=T0, identity=FakeIdentity(), provisioning=FakeProvisioning(),
                           gateway=FakeGateway(), check_delay=0.1, sleep=sleeps.append)
        assert sleeps == [0.1, 0.1]


# ── Identity Webhook ─────────────────────────────────────────────────


class TestIdentityWebhook:
    def test_bearer_secret(self):
        assert verify_identity_webhook(b"{}", authorization="Bearer s3cret", secret="s3cret")
        assert not verify_identity_webhook(b"{}", authorization="Bearer nope", secret="s3cret")

    def test_hmac_signature(self):
        body = b'{"type":"user.deleted"}'
        sig = sign_identity_payload(body, "s3cret")
        assert verify_identity_webhook(body, signature=f"sha256={sig}", secret="s3cret")
        assert verify_identity_webhook(body, signature=sig, secret="s3cret")
        assert not verify_identity_webhook(body + b" ", signature=sig, secret="s3cret")

    def test_no_credentials(self):
        assert not verify_identity_webhook(b"{}", secret="s3cret")

    def test_unconfigured_secret(self):
        with pytest.raises(InvalidWebhook):
            verify_identity_webhook(b"{}", authorization="Bearer x", secret="")

    def test_user_deleted_event_unwinds(self):
        panel, gw, identity = FakeProvisioning(), FakeGateway(), FakeIdentity()
        _owner_with_servers("alice", "77", panel)
        payload = {
            "type": "user.deleted",
            "data": {"object": {"user_id": "alice", "app_metadata": {"provisioning_user_id": 77}}},
        }
        result = handle_identity_deletion(payload, provisioning=panel, gateway=gw,
                                          identity=identity)
        assert result["handled"] is True
        assert result["servers_deleted"] == 2
        assert identity.invalidated == ["alice"]
        assert get_wallet("alice").frozen

    def test_other_events_ignored(self):
        result = handle_identity_deletion({"type": "user.created"}, identity=FakeIdentity())
        assert result == {"handled": False, "type": "user.created"}

    def test_missing_user_rejected(self):
        with pytest.raises(InvalidWebhook):
            handle_identity_deletion({"type": "user.deleted", "data": {}},
                                     identity=FakeIdentity())
