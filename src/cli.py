"""
Stager Ledger CLI

Commands:
  serve      - Run the API server
  balance    - Show an account's balance and live plan
  history    - Show an account's ledger entries, newest first
  reconcile  - Recompute cached balances from the ledger
  grant      - Grant credits to an account
  grant-plan - Give an account a plan without a subscription
  transfer   - Move credits between accounts
  refund     - Offset a ledger entry
  generate-codes - Issue special referral codes
"""

import argparse
import json
import os
import sys


def _admin():
    from billing.admin import AdminService
    return AdminService()


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Stager Ledger on {host}:{port}")

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_balance(args):
    """Show balance and live plan."""
    from core.plans import PlanRegistry

    admin = _admin()
    account = admin.resolve_account(args.account)
    live = PlanRegistry(admin.db).get_live(account.id)

    print(f"Account: {account.id} ({account.email})")
    print(f"  Credits: {admin.ledger.balance_of(account.id)}")
    if live:
        print(f"  Plan: {live.name} [{live.status}]")
        if live.pending_plan:
            print(f"  Pending plan: {live.pending_plan}")
        if live.cancel_at_period_end:
            print("  Cancels at period end")
    else:
        print("  Plan: none")


def cmd_history(args):
    """Show ledger history."""
    admin = _admin()
    account = admin.resolve_account(args.account)
    page = admin.ledger.history(account.id, limit=args.limit, cursor=args.cursor)

    for entry in page.entries:
        print(
            f"{entry.seq:>8}  {entry.created_at[:19]}  {entry.delta:+6d}  "
            f"{entry.reason:<22} balance={entry.balance_after}"
        )
        if args.meta and entry.meta:
            print(f"          {json.dumps(entry.meta, sort_keys=True)}")
    if page.next_cursor is not None:
        print(f"-- more: --cursor {page.next_cursor}")


def cmd_reconcile(args):
    """Recompute balances and record drift."""
    report = _admin().reconcile(args.account, dry_run=args.dry_run)

    print(f"Accounts checked: {report.accounts_checked}")
    for drift in report.drifts:
        print(f"  DRIFT {drift.account_id}: cached={drift.cached} ledger={drift.computed} ({drift.drift:+d})")
    if report.dry_run and report.drifts:
        print("Dry run: no correcting entries written")
    elif report.corrections:
        print(f"Correcting entries written: {len(report.corrections)}")
    if report.drifts:
        sys.exit(1)


def cmd_grant(args):
    """Grant credits."""
    entry = _admin().grant_credits(args.account, args.amount, granted_by=args.by, note=args.note)
    print(f"Granted {entry.delta} credits to {entry.account_id} (balance {entry.balance_after})")


def cmd_grant_plan(args):
    """Grant a plan."""
    transition, entry = _admin().grant_plan(args.account, args.plan, granted_by=args.by, duration_months=args.months)
    print(f"Granted {transition.plan.name} to {transition.plan.account_id} for {args.months} months")
    print(f"  Credits added: {entry.delta} (balance {entry.balance_after})")


def cmd_transfer(args):
    """Transfer credits."""
    outgoing, incoming = _admin().transfer(args.source, args.destination, args.amount, granted_by=args.by, note=args.note)
    print(f"Moved {args.amount} credits {outgoing.account_id} -> {incoming.account_id}")
    print(f"  Source balance: {outgoing.balance_after}")
    print(f"  Destination balance: {incoming.balance_after}")


def cmd_refund(args):
    """Refund a ledger entry."""
    entry = _admin().refund(args.entry_id, note=args.note)
    print(f"Refund entry {entry.entry_id}: {entry.delta:+d} (balance {entry.balance_after})")


def cmd_generate_codes(args):
    """Issue special referral codes."""
    codes = _admin().generate_special_codes(
        args.count, credits=args.credits, description=args.description, created_by=args.by
    )
    for record in codes:
        print(f"{record.code}  {record.credits} credits  {record.description or ''}")
    print(f"Generated {len(codes)} code(s)")


COMMANDS = {
    "serve": cmd_serve,
    "balance": cmd_balance,
    "history": cmd_history,
    "reconcile": cmd_reconcile,
    "grant": cmd_grant,
    "grant-plan": cmd_grant_plan,
    "transfer": cmd_transfer,
    "refund": cmd_refund,
    "generate-codes": cmd_generate_codes,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Stager Ledger - Credit ledger and subscription reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # balance
    balance_parser = subparsers.add_parser("balance", help="Show balance")
    balance_parser.add_argument("account", help="Account id or email")

    # history
    history_parser = subparsers.add_parser("history", help="Show ledger history")
    history_parser.add_argument("account", help="Account id or email")
    history_parser.add_argument("--limit", type=int, default=50)
    history_parser.add_argument("--cursor", type=int, default=None)
    history_parser.add_argument("--meta", action="store_true", help="Print entry metadata")

    # reconcile
    reconcile_parser = subparsers.add_parser("reconcile", help="Reconcile balances")
    reconcile_parser.add_argument("--account", help="Only this account (id or email)")
    reconcile_parser.add_argument("--dry-run", action="store_true")

    # grant
    grant_parser = subparsers.add_parser("grant", help="Grant credits")
    grant_parser.add_argument("account", help="Account id or email")
    grant_parser.add_argument("amount", type=int)
    grant_parser.add_argument("--by", default=os.environ.get("USER", "admin"))
    grant_parser.add_argument("--note")

    # grant-plan
    grant_plan_parser = subparsers.add_parser("grant-plan", help="Grant a plan")
    grant_plan_parser.add_argument("account", help="Account id or email")
    grant_plan_parser.add_argument("plan")
    grant_plan_parser.add_argument("--months", type=int, default=12)
    grant_plan_parser.add_argument("--by", default=os.environ.get("USER", "admin"))

    # transfer
    transfer_parser = subparsers.add_parser("transfer", help="Transfer credits")
    transfer_parser.add_argument("source", help="Source account id or email")
    transfer_parser.add_argument("destination", help="Destination account id or email")
    transfer_parser.add_argument("amount", type=int)
    transfer_parser.add_argument("--by", default=os.environ.get("USER", "admin"))
    transfer_parser.add_argument("--note")

    # refund
    refund_parser = subparsers.add_parser("refund", help="Refund a ledger entry")
    refund_parser.add_argument("entry_id")
    refund_parser.add_argument("--note")

    # generate-codes
    codes_parser = subparsers.add_parser("generate-codes", help="Issue special referral codes")
    codes_parser.add_argument("--count", type=int, default=1)
    codes_parser.add_argument("--credits", type=int, default=100)
    codes_parser.add_argument("--description", default="VIP Realtor Program")
    codes_parser.add_argument("--by", default=os.environ.get("USER", "admin"))

    return parser


def main(argv=None):
    from core.errors import BillingError

    parser = build_parser()
    args = parser.parse_args(argv)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return

    try:
        command(args)
    except BillingError as e:
        print(f"Error ({e.kind.value}): {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
