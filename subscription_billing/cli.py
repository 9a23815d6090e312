"""
Command-line front-end for the billing core.

CLI:
    python -m subscription_billing generate-invoices
    python -m subscription_billing check-reminders
    python -m subscription_billing remind --member MEMBER_ID
    python -m subscription_billing remind --all
    python -m subscription_billing approve PAYMENT_ID --actor admin@example.com
    python -m subscription_billing reject PAYMENT_ID --reason "blurry screenshot"
    python -m subscription_billing delete-payment PAYMENT_ID
    python -m subscription_billing add-invoice MEMBER_ID "$250" --period "Oct 2026 Lifetime Subscription"
    python -m subscription_billing update-invoice INVOICE_ID --status Overdue
    python -m subscription_billing delete-invoice INVOICE_ID
    python -m subscription_billing balance MEMBER_ID
    python -m subscription_billing settings --schedule-time 08:30 --interval 3 --enable
    python -m subscription_billing logs --member MEMBER_ID --limit 20
    python -m subscription_billing status
    python -m subscription_billing start
"""

from __future__ import annotations

import argparse
import asyncio
import inspect
import json
import logging
import signal
import sys
from pathlib import Path

from subscription_billing import config
from subscription_billing.errors import BillingError, MemberNotFoundError
from subscription_billing.service import BillingService, get_billing

logger = logging.getLogger("cli")


def _format_table(headers: list[str], rows: list[list[str]], max_col_width: int = 40) -> str:
    """Format a simple ASCII table for CLI output."""
    if not rows:
        return "(no results)"
    rows = [
        [val[:max_col_width - 3] + "..." if len(val) > max_col_width else val for val in row]
        for row in rows
    ]
    widths = [len(h) for h in headers]
    for row in rows:
        for i, val in enumerate(row):
            widths[i] = max(widths[i], len(val))
    fmt = "  ".join(f"{{:<{w}}}" for w in widths)
    lines = [fmt.format(*headers), "  ".join("-" * w for w in widths)]
    lines += [fmt.format(*row) for row in rows]
    return "\n".join(lines)


def _print_errors(errors) -> None:
    for err in errors:
        print(f"  ! {err.member_id}: {err.cause}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _cmd_generate_invoices(billing: BillingService, args: argparse.Namespace) -> None:
    result = await billing.generate_due_invoices()
    print(f"Invoices created: {result.created}  skipped: {result.skipped}  errors: {len(result.errors)}")
    for invoice_id in result.invoice_ids:
        print(f"  + {invoice_id}")
    _print_errors(result.errors)


def _print_reminder_result(label: str, result) -> None:
    if result.disabled_reason:
        print(f"{label}: not run ({result.disabled_reason})")
        return
    print(
        f"{label}: sent {result.sent}  failed {result.failed}  "
        f"skipped {result.skipped}  errors {len(result.errors)}"
    )
    _print_errors(result.errors)


async def _cmd_check_reminders(billing: BillingService, args: argparse.Namespace) -> None:
    _print_reminder_result("Reminder check", await billing.check_and_send_reminders())


async def _cmd_remind(billing: BillingService, args: argparse.Namespace) -> None:
    if args.all:
        _print_reminder_result("Reminders", await billing.send_reminder_to_all_outstanding())
        return
    sent = await billing.send_reminder_to(args.member)
    print(f"Reminder to {args.member}: {'sent' if sent else 'not sent'}")


async def _cmd_approve(billing: BillingService, args: argparse.Namespace) -> None:
    payment = await billing.approve(args.payment_id, args.actor)
    print(f"Payment {payment.id} approved; invoice {payment.invoice_id} marked Paid.")


async def _cmd_reject(billing: BillingService, args: argparse.Namespace) -> None:
    payment = await billing.reject(args.payment_id, args.actor, args.reason)
    print(f"Payment {payment.id} rejected; invoice {payment.invoice_id} reopened.")


async def _cmd_delete_payment(billing: BillingService, args: argparse.Namespace) -> None:
    payment = await billing.delete_payment(args.payment_id)
    print(f"Payment {payment.id} ({payment.status.value}) deleted.")


async def _print_member_balance(billing: BillingService, member_id: str) -> None:
    member = await billing.store.get_member(member_id)
    if member is not None:
        print(f"  {member_id} balance: {member.balance}")


async def _cmd_add_invoice(billing: BillingService, args: argparse.Namespace) -> None:
    invoice = await billing.add_invoice(
        args.member_id, args.amount, period=args.period, due=args.due, status=args.status,
    )
    print(f"Invoice {invoice.id} created ({invoice.status.value}).")
    await _print_member_balance(billing, invoice.member_id)


async def _cmd_update_invoice(billing: BillingService, args: argparse.Namespace) -> None:
    changes = {
        name: value for name, value in (
            ("status", args.status), ("amount", args.amount),
            ("period", args.period), ("due", args.due),
        ) if value is not None
    }
    if not changes:
        raise ValueError("Nothing to update")
    invoice = await billing.update_invoice(args.invoice_id, **changes)
    print(f"Invoice {invoice.id} updated ({invoice.status.value} {invoice.amount}).")
    await _print_member_balance(billing, invoice.member_id)


async def _cmd_delete_invoice(billing: BillingService, args: argparse.Namespace) -> None:
    invoice = await billing.delete_invoice(args.invoice_id)
    print(f"Invoice {invoice.id} deleted.")
    await _print_member_balance(billing, invoice.member_id)


async def _cmd_balance(billing: BillingService, args: argparse.Namespace) -> None:
    balance = await billing.recompute_balance(args.member_id)
    if balance is None:
        raise MemberNotFoundError(args.member_id)
    print(f"{args.member_id}: {balance}")


async def _cmd_settings(billing: BillingService, args: argparse.Namespace) -> None:
    changes = {}
    if args.schedule_time is not None:
        changes["schedule_time"] = args.schedule_time
    if args.interval is not None:
        changes["reminder_interval"] = args.interval
    if args.automation is not None:
        changes["automation_enabled"] = args.automation
    settings = await billing.update_settings(**changes) if changes else await billing.get_settings()
    print(json.dumps(settings.to_public_dict(), indent=2))


async def _cmd_logs(billing: BillingService, args: argparse.Namespace) -> None:
    entries = await billing.reminder_log(member_id=args.member, limit=args.limit)
    rows = [
        [e.sent_at[:19], e.member_id, e.member_email, e.reminder_type.value,
         e.amount, str(e.invoice_count), e.status.value, e.trigger.value]
        for e in entries
    ]
    print(_format_table(
        ["Sent (UTC)", "Member", "Email", "Type", "Amount", "Invoices", "Status", "Trigger"], rows,
    ))


async def _cmd_status(billing: BillingService, args: argparse.Namespace) -> None:
    print(json.dumps(await billing.status(), indent=2, default=str))


def _cmd_start(billing: BillingService, args: argparse.Namespace) -> None:
    """Run the scheduler until SIGINT/SIGTERM."""
    print(f"Starting billing scheduler ({config.BILLING_TIMEZONE})...")
    print("Press Ctrl+C to stop.\n")

    async def _run_daemon() -> None:
        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def _signal_handler() -> None:
            logger.info("Received shutdown signal.")
            shutdown_event.set()

        try:
            loop.add_signal_handler(signal.SIGINT, _signal_handler)
            loop.add_signal_handler(signal.SIGTERM, _signal_handler)
        except NotImplementedError:
            pass

        await billing.start()
        try:
            await shutdown_event.wait()
        finally:
            await billing.stop(wait=True)

    try:
        asyncio.run(_run_daemon())
    except KeyboardInterrupt:
        print("\nShutting down...")
    print("Scheduler stopped.")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="subscription_billing",
        description="Membership subscription billing: invoices, reminders, payments",
    )
    parser.add_argument("--data-dir", type=Path, default=None,
                        help=f"Data directory (default: {config.BILLING_DATA_DIR})")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    sp = sub.add_parser("generate-invoices", help="Create renewal invoices that are due")
    sp.set_defaults(func=_cmd_generate_invoices)

    sp = sub.add_parser("check-reminders", help="Run the interval-gated reminder check")
    sp.set_defaults(func=_cmd_check_reminders)

    sp = sub.add_parser("remind", help="Send reminders now, ignoring the interval")
    target = sp.add_mutually_exclusive_group(required=True)
    target.add_argument("--member", type=str, help="Member ID")
    target.add_argument("--all", action="store_true", help="Every Active member who owes")
    sp.set_defaults(func=_cmd_remind)

    sp = sub.add_parser("approve", help="Approve a pending payment")
    sp.add_argument("payment_id")
    sp.add_argument("--actor", default="admin", help="Approving admin")
    sp.set_defaults(func=_cmd_approve)

    sp = sub.add_parser("reject", help="Reject a pending payment")
    sp.add_argument("payment_id")
    sp.add_argument("--reason", default="", help="Reason shown to the member")
    sp.add_argument("--actor", default="admin", help="Rejecting admin")
    sp.set_defaults(func=_cmd_reject)

    sp = sub.add_parser("delete-payment", help="Delete a payment and reopen its invoice")
    sp.add_argument("payment_id")
    sp.set_defaults(func=_cmd_delete_payment)

    sp = sub.add_parser("add-invoice", help="Enter an invoice by hand")
    sp.add_argument("member_id")
    sp.add_argument("amount", help='Amount, e.g. "$250"')
    sp.add_argument("--period", default="", help="Period label")
    sp.add_argument("--due", default="", help='Due date label, e.g. "19 Oct 2027"')
    sp.add_argument("--status", default="Unpaid", help="Invoice status (default: Unpaid)")
    sp.set_defaults(func=_cmd_add_invoice)

    sp = sub.add_parser("update-invoice", help="Change an invoice's status, amount or labels")
    sp.add_argument("invoice_id")
    sp.add_argument("--status", default=None)
    sp.add_argument("--amount", default=None)
    sp.add_argument("--period", default=None)
    sp.add_argument("--due", default=None)
    sp.set_defaults(func=_cmd_update_invoice)

    sp = sub.add_parser("delete-invoice", help="Delete an invoice")
    sp.add_argument("invoice_id")
    sp.set_defaults(func=_cmd_delete_invoice)

    sp = sub.add_parser("balance", help="Recompute and show a member balance")
    sp.add_argument("member_id")
    sp.set_defaults(func=_cmd_balance)

    sp = sub.add_parser("settings", help="Show or change reminder settings")
    sp.add_argument("--schedule-time", type=str, default=None, help="HH:MM reminder time")
    sp.add_argument("--interval", type=int, default=None, help="Days between reminders")
    toggle = sp.add_mutually_exclusive_group()
    toggle.add_argument("--enable", dest="automation", action="store_const", const=True)
    toggle.add_argument("--disable", dest="automation", action="store_const", const=False)
    sp.set_defaults(func=_cmd_settings, automation=None)

    sp = sub.add_parser("logs", help="Show the reminder log")
    sp.add_argument("--member", type=str, default=None, help="Filter by member ID")
    sp.add_argument("--limit", type=int, default=20, help="Max entries (default: 20)")
    sp.set_defaults(func=_cmd_logs)

    sp = sub.add_parser("status", help="Show settings, mailer and scheduler state")
    sp.set_defaults(func=_cmd_status)

    sp = sub.add_parser("start", help="Run the scheduler daemon")
    sp.set_defaults(func=_cmd_start)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config.setup_logging("DEBUG" if args.verbose else None)

    if args.command is None:
        parser.print_help()
        return 0

    billing = get_billing(args.data_dir)
    try:
        if inspect.iscoroutinefunction(args.func):
            asyncio.run(args.func(billing, args))
        else:
            args.func(billing, args)
    except (BillingError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0
