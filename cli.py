#!/usr/bin/env python3
# OzWallet CLI v1.0.0
# argparse. Operator ledger tooling and one-shot processor runs.
#
# Every credit/debit/set-balance writes exactly one `adjustment`
# transaction through the applier, with the operator and reason recorded.

import argparse
import getpass
import os
import sys
import time
from decimal import Decimal, InvalidOperation

from errors import BillingError, InvariantViolation
from ledger import (
    adjust,
    clear_audit_hold,
    ensure_wallet,
    get_transactions,
    get_wallet,
    link_payment_customer,
    list_wallets,
    reconcile_all,
    reconcile_wallet,
    set_balance,
    settle,
)
from processors import setup_logging


def parse_amount(text: str) -> int:
    """Dollars ("10.50") to cents (1050). At most two decimal places."""
    try:
        value = Decimal(text.strip().lstrip("$"))
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid amount: {text!r}")
    if value < 0:
        raise argparse.ArgumentTypeError(f"amount must not be negative: {text!r}")
    cents = value * 100
    if cents != cents.to_integral_value():
        raise argparse.ArgumentTypeError(f"amount has more than two decimals: {text!r}")
    return int(cents)


def fmt_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(cents) // 100}.{abs(cents) % 100:02d}"


def _actor(args) -> str:
    return args.actor or os.environ.get("OZWALLET_ACTOR") or getpass.getuser()


# ── Wallet Commands ───────────────────────────────────────────────────


def cmd_wallets(args):
    """List wallets, highest balance first."""
    wallets = list_wallets(include_frozen=not args.active)
    if not wallets:
        print("No wallets.")
        return
    for i, w in enumerate(wallets, 1):
        flags = []
        if w.frozen:
            flags.append("FROZEN")
        if w.on_hold:
            flags.append("AUDIT HOLD")
        flag_str = f"  [{', '.join(flags)}]" if flags else ""
        print(f"  {i:>3}  {fmt_cents(w.balance_cents):>12}  {w.owner_id}{flag_str}")


def cmd_wallet(args):
    """Show one wallet and its last N transactions."""
    w = get_wallet(args.owner_id)
    if w is None:
        print(f"Wallet {args.owner_id} not found.", file=sys.stderr)
        sys.exit(1)
    print(f"Owner:            {w.owner_id}")
    print(f"  Payment customer: {w.payment_customer_id or 'Not linked'}")
    print(f"  Balance:          {fmt_cents(w.balance_cents)}")
    print(f"  Auto top-up:      "
          + (f"{fmt_cents(w.auto_topup_amount_cents)} below {fmt_cents(w.auto_topup_threshold_cents)}"
             if w.auto_topup_enabled else "off"))
    print(f"  Created:          {w.created_at.isoformat() if w.created_at else '-'}")
    if w.frozen:
        print(f"  FROZEN since      {w.deleted_at.isoformat()}")
    if w.on_hold:
        print(f"  AUDIT HOLD since  {w.audit_hold_at.isoformat()}: {w.audit_hold_reason}")

    txs = get_transactions(args.owner_id, limit=args.limit)
    if not txs:
        print("  No transactions.")
        return
    print(f"  Last {len(txs)} transactions:")
    for t in txs:
        note = getattr(t.metadata, "reason", "") or getattr(t.metadata, "server_id", "")
        print(f"    {t.created_at:%Y-%m-%d %H:%M}  {t.type.value:<11} "
              f"{fmt_cents(t.amount_cents):>10}  {note}")


def cmd_create(args):
    """Create a wallet (idempotent) and link its payment customer."""
    w = ensure_wallet(args.owner_id, args.customer, args.provisioning_user)
    if args.customer and w.payment_customer_id != args.customer:
        w = link_payment_customer(args.owner_id, args.customer, args.provisioning_user)
    print(f"Wallet {w.owner_id} | balance {fmt_cents(w.balance_cents)} | "
          f"customer {w.payment_customer_id or '-'}")


def cmd_credit(args):
    applied = adjust(args.owner_id, args.amount, _actor(args), args.reason)
    print(f"Credited {fmt_cents(args.amount)} to {args.owner_id} (tx {applied.transaction_id})")
    print(f"  New balance: {fmt_cents(applied.balance_cents)}")


def cmd_debit(args):
    applied = adjust(args.owner_id, -args.amount, _actor(args), args.reason)
    print(f"Debited {fmt_cents(args.amount)} from {args.owner_id} (tx {applied.transaction_id})")
    print(f"  New balance: {fmt_cents(applied.balance_cents)}")


def cmd_set_balance(args):
    applied = set_balance(args.owner_id, args.amount, _actor(args), args.reason)
    print(f"Balance of {args.owner_id} set to {fmt_cents(applied.balance_cents)} "
          f"(tx {applied.transaction_id})")


def cmd_settle(args):
    amount = -args.amount if args.debit else args.amount
    applied = settle(args.owner_id, amount, _actor(args), args.reason)
    print(f"Settled {fmt_cents(amount)} on {args.owner_id} (tx {applied.transaction_id})")
    print(f"  Final balance: {fmt_cents(applied.balance_cents)}")


def cmd_reconcile(args):
    """Replay the ledger against stored balances."""
    if args.owner_id:
        try:
            balance = reconcile_wallet(args.owner_id)
        except InvariantViolation as e:
            print(f"MISMATCH: {e}", file=sys.stderr)
            print("  Wallet placed on audit hold.", file=sys.stderr)
            sys.exit(2)
        print(f"{args.owner_id}: OK ({fmt_cents(balance)})")
        return
    summary = reconcile_all()
    print(f"Checked {summary.checked} wallets, {len(summary.mismatched)} mismatched.")
    for owner_id in summary.mismatched:
        print(f"  MISMATCH {owner_id} (audit hold)")
    if summary.mismatched:
        sys.exit(2)


def cmd_clear_hold(args):
    if not clear_audit_hold(args.owner_id, _actor(args), args.reason):
        print(f"Wallet {args.owner_id} is not on audit hold.", file=sys.stderr)
        sys.exit(1)
    print(f"Audit hold cleared on {args.owner_id}.")


def cmd_auto_topup(args):
    from topup import configure_auto_topup

    w = configure_auto_topup(
        args.owner_id, not args.disable, args.threshold, args.amount, args.payment_method
    )
    state = "on" if w.auto_topup_enabled else "off"
    print(f"Auto top-up {state} for {w.owner_id}: "
          f"{fmt_cents(w.auto_topup_amount_cents)} below {fmt_cents(w.auto_topup_threshold_cents)}")


# ── Processor Commands ────────────────────────────────────────────────


def cmd_bill(args):
    """Run one billing cycle now."""
    from billing import run_billing_cycle

    s = run_billing_cycle()
    print(f"Billing: due={s.due} charged={s.charged} ({fmt_cents(s.charged_cents)}) "
          f"topups={s.topups} escalated={s.escalated}")
    for outcome, n in sorted(s.counts.items()):
        print(f"  {outcome}: {n}")


def cmd_process_cancellations(args):
    from cancellations import run_cancellation_cycle

    s = run_cancellation_cycle()
    print(f"Cancellations: due={s.due} completed={s.completed} failed={s.failed}")


def cmd_cleanup_orphans(args):
    from orphans import run_orphan_cleanup

    s = run_orphan_cleanup()
    print(f"Orphan cleanup: checked={s.checked} cleaned={s.cleaned} errors={s.errors}")


def cmd_processors(args):
    """Run all background processors in the foreground."""
    from processors import start_processors, stop_processors

    tasks = start_processors()
    print(f"Running {', '.join(t.name for t in tasks)}. Ctrl-C to stop.")
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        stop_processors()
        print("\nProcessors stopped.")


# ── Server Commands ───────────────────────────────────────────────────


def cmd_servers(args):
    from servers import list_server_billing

    rows = list_server_billing(args.owner)
    if not rows:
        print("No servers.")
        return
    for b in rows:
        print(f"  [{b.status.value:>9}] {b.server_id} | owner {b.owner_id} | "
              f"{fmt_cents(b.monthly_price_cents)}/mo | next {b.next_bill_at:%Y-%m-%d %H:%M} "
              f"| day {b.period_day} | fails {b.failed_attempts}")


def cmd_backfill(args):
    from servers import backfill_server_billing

    created = backfill_server_billing(args.owner_id)
    print(f"Backfilled {len(created)} server(s) for {args.owner_id}.")
    for b in created:
        print(f"  {b.server_id} | {fmt_cents(b.monthly_price_cents)}/mo | "
              f"first charge {b.next_bill_at:%Y-%m-%d %H:%M}")


def cmd_cancel_server(args):
    from cancellations import request_cancellation

    c = request_cancellation(args.server_id, args.owner, args.mode, reason=args.reason)
    print(f"Cancellation queued for {c.server_id} ({c.mode.value}), "
          f"deletes at {c.scheduled_deletion_at:%Y-%m-%d %H:%M} UTC")


def cmd_revoke_cancellation(args):
    from cancellations import revoke_cancellation

    if not revoke_cancellation(args.server_id):
        print(f"No cancellation for server {args.server_id}.", file=sys.stderr)
        sys.exit(1)
    print(f"Cancellation for {args.server_id} revoked.")


def cmd_retry_cancellation(args):
    from cancellations import retry_cancellation

    if not retry_cancellation(args.server_id):
        print(f"No failed cancellation for server {args.server_id}.", file=sys.stderr)
        sys.exit(1)
    print(f"Cancellation for {args.server_id} requeued.")


def cmd_cancellations(args):
    from cancellations import list_cancellations

    rows = list_cancellations(status=args.status)
    if not rows:
        print("No cancellations.")
        return
    for c in rows:
        err = f" | {c.error_message}" if c.error_message else ""
        print(f"  [{c.status.value:>10}] {c.server_id} | {c.mode.value} | owner {c.owner_id} | "
              f"at {c.scheduled_deletion_at:%Y-%m-%d %H:%M}{err}")


def cmd_serve(args):
    """Start the API server (and the background processors)."""
    import uvicorn
    from api import app
    print(f"Starting OzWallet API on port {args.port}...")
    uvicorn.run(app, host=args.bind, port=args.port)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="ozwallet",
        description="OzWallet: prepaid wallet ledger and server billing",
    )
    parser.add_argument("--actor", default=None, help="Operator name recorded on adjustments")
    sub = parser.add_subparsers(dest="command")

    # ozwallet wallets
    p_wallets = sub.add_parser("wallets", help="List wallets by balance")
    p_wallets.add_argument("--active", action="store_true", help="Hide frozen wallets")
    p_wallets.set_defaults(func=cmd_wallets)

    # ozwallet wallet <owner>
    p_wallet = sub.add_parser("wallet", help="Show a wallet and recent transactions")
    p_wallet.add_argument("owner_id")
    p_wallet.add_argument("--limit", type=int, default=20, help="Transactions to show (default 20)")
    p_wallet.set_defaults(func=cmd_wallet)

    # ozwallet create <owner>
    p_create = sub.add_parser("create", help="Create a wallet")
    p_create.add_argument("owner_id")
    p_create.add_argument("--customer", default=None, help="Payment gateway customer id")
    p_create.add_argument("--provisioning-user", default=None, help="Provisioning account id")
    p_create.set_defaults(func=cmd_create)

    # ozwallet credit / debit / set-balance / settle
    for name, func, help_text in (
        ("credit", cmd_credit, "Add credits (dollars)"),
        ("debit", cmd_debit, "Remove credits (dollars); fails if balance would go negative"),
        ("set-balance", cmd_set_balance, "Set the balance to an exact amount (dollars)"),
        ("settle", cmd_settle, "Final settlement on a frozen wallet (dollars)"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("owner_id")
        p.add_argument("amount", type=parse_amount, help="Amount in dollars, e.g. 10.50")
        p.add_argument("--reason", required=(name == "settle"), default="",
                       help="Reason recorded on the transaction")
        if name == "settle":
            p.add_argument("--debit", action="store_true", help="Settle by removing the amount")
        p.set_defaults(func=func)

    # ozwallet reconcile [owner]
    p_rec = sub.add_parser("reconcile", help="Check stored balances against the ledger")
    p_rec.add_argument("owner_id", nargs="?")
    p_rec.set_defaults(func=cmd_reconcile)

    # ozwallet clear-hold <owner>
    p_hold = sub.add_parser("clear-hold", help="Clear an audit hold after review")
    p_hold.add_argument("owner_id")
    p_hold.add_argument("--reason", required=True)
    p_hold.set_defaults(func=cmd_clear_hold)

    # ozwallet auto-topup <owner>
    p_auto = sub.add_parser("auto-topup", help="Configure auto top-up")
    p_auto.add_argument("owner_id")
    p_auto.add_argument("--threshold", type=parse_amount, default=0, help="Top up below (dollars)")
    p_auto.add_argument("--amount", type=parse_amount, default=0, help="Top-up amount (dollars)")
    p_auto.add_argument("--payment-method", default=None, help="Stored payment method id")
    p_auto.add_argument("--disable", action="store_true")
    p_auto.set_defaults(func=cmd_auto_topup)

    # ozwallet bill / process-cancellations / cleanup-orphans / processors
    sub.add_parser("bill", help="Run one billing cycle").set_defaults(func=cmd_bill)
    sub.add_parser("process-cancellations", help="Run one cancellation cycle").set_defaults(
        func=cmd_process_cancellations)
    sub.add_parser("cleanup-orphans", help="Run one orphan cleanup sweep").set_defaults(
        func=cmd_cleanup_orphans)
    sub.add_parser("processors", help="Run all processors in the foreground").set_defaults(
        func=cmd_processors)

    # ozwallet servers
    p_servers = sub.add_parser("servers", help="List server billing rows")
    p_servers.add_argument("--owner", default=None)
    p_servers.set_defaults(func=cmd_servers)

    # ozwallet backfill <owner>
    p_back = sub.add_parser("backfill", help="Create billing rows for unbilled servers")
    p_back.add_argument("owner_id")
    p_back.set_defaults(func=cmd_backfill)

    # ozwallet cancel-server <server>
    p_cs = sub.add_parser("cancel-server", help="Queue a server for deletion")
    p_cs.add_argument("server_id")
    p_cs.add_argument("--owner", required=True)
    p_cs.add_argument("--mode", choices=["grace", "immediate"], default="grace")
    p_cs.add_argument("--reason", default="Admin cancellation")
    p_cs.set_defaults(func=cmd_cancel_server)

    p_rv = sub.add_parser("revoke-cancellation", help="Revoke a queued grace cancellation")
    p_rv.add_argument("server_id")
    p_rv.set_defaults(func=cmd_revoke_cancellation)

    p_rt = sub.add_parser("retry-cancellation", help="Requeue a failed cancellation")
    p_rt.add_argument("server_id")
    p_rt.set_defaults(func=cmd_retry_cancellation)

    p_cl = sub.add_parser("cancellations", help="List cancellations")
    p_cl.add_argument("--status", choices=["queued", "processing", "failed"], default=None)
    p_cl.set_defaults(func=cmd_cancellations)

    # ozwallet serve
    p_serve = sub.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--bind", default="0.0.0.0")
    p_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging()
    try:
        args.func(args)
    except BillingError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
