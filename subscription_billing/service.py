"""
BillingService -- one object wiring the store, the billing components and
the scheduler, exposing the trigger surface the application calls.

Usage:
    from subscription_billing.service import get_billing

    billing = get_billing()
    await billing.start()                       # timers from saved settings
    result = await billing.generate_due_invoices()
    await billing.update_settings(schedule_time="08:30")
    await billing.stop()
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from subscription_billing import config
from subscription_billing.balance import BalanceCalculator
from subscription_billing.errors import InvoiceNotFoundError, MemberNotFoundError
from subscription_billing.invoice_generator import GenerationResult, InvoiceGenerator
from subscription_billing.mailer import Mailer, build_mailer
from subscription_billing.models import (
    EmailSettings,
    EmailTemplate,
    Invoice,
    InvoiceStatus,
    Payment,
    ReminderLogEntry,
    _now_utc,
    parse_amount,
)
from subscription_billing.payments import PaymentLifecycle
from subscription_billing.reminders import ReminderDispatcher, ReminderRunResult
from subscription_billing.scheduler import INVOICE_JOB, REMINDER_JOB, Scheduler
from subscription_billing.store import BillingStore

logger = logging.getLogger("service")

_SETTINGS_FIELDS = {f.name for f in dataclasses.fields(EmailSettings)} - {"updated_at"}
_INVOICE_EDITABLE = {
    "period", "amount", "status", "due", "method", "reference", "screenshot",
    "paid_to_admin", "paid_to_admin_name",
}


def _invoice_status(value: InvoiceStatus | str) -> InvoiceStatus:
    if isinstance(value, InvoiceStatus):
        return value
    return InvoiceStatus.from_string(value)


class BillingService:

    def __init__(
        self,
        store: Optional[BillingStore] = None,
        mailer_factory: Callable[[EmailSettings], Optional[Mailer]] = build_mailer,
        clock: Callable[[], datetime] = _now_utc,
        tz: str = config.BILLING_TIMEZONE,
    ) -> None:
        self.store = store if store is not None else BillingStore(config.BILLING_DATA_DIR)
        self.balance = BalanceCalculator(self.store)
        self.invoices = InvoiceGenerator(self.store, self.balance, clock=clock, tz=tz)
        self.reminders = ReminderDispatcher(self.store, mailer_factory=mailer_factory, clock=clock)
        self.payments = PaymentLifecycle(
            self.store, self.balance, mailer_factory=mailer_factory, clock=clock,
        )
        self.scheduler = Scheduler(
            {
                INVOICE_JOB: self.generate_due_invoices,
                REMINDER_JOB: self.check_and_send_reminders,
            },
            tz=tz,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Trigger surface
    # ------------------------------------------------------------------

    async def generate_due_invoices(self) -> GenerationResult:
        return await self.invoices.generate_due_invoices()

    async def check_and_send_reminders(self) -> ReminderRunResult:
        return await self.reminders.check_and_send_reminders()

    async def send_reminder_to(self, member_id: str) -> bool:
        return await self.reminders.send_reminder_to(member_id)

    async def send_reminder_to_all_outstanding(self) -> ReminderRunResult:
        return await self.reminders.send_reminder_to_all_outstanding()

    async def submit_payment(self, invoice_id: str, method: str, **details: str) -> Payment:
        return await self.payments.submit(invoice_id, method, **details)

    async def approve(self, payment_id: str, actor: str) -> Payment:
        return await self.payments.approve(payment_id, actor)

    async def reject(self, payment_id: str, actor: str, reason: str = "") -> Payment:
        return await self.payments.reject(payment_id, actor, reason)

    async def delete_payment(self, payment_id: str) -> Payment:
        return await self.payments.delete(payment_id)

    async def recompute_balance(self, member_id: str) -> Optional[str]:
        return await self.balance.recompute_balance(member_id)

    async def reminder_log(self, member_id: Optional[str] = None, limit: int = 50) -> list[ReminderLogEntry]:
        return await self.store.list_reminders(member_id=member_id, limit=limit)

    # ------------------------------------------------------------------
    # Invoice maintenance
    # ------------------------------------------------------------------

    async def add_invoice(
        self,
        member_id: str,
        amount: str,
        period: str = "",
        due: str = "",
        status: InvoiceStatus | str = InvoiceStatus.UNPAID,
    ) -> Invoice:
        """Enter an invoice by hand.

        Admin entries may sit beside another open invoice (arrears carried
        over from before the portal, for example).  The member balance is
        recomputed afterwards.
        """
        member = await self.store.get_member(member_id)
        if member is None:
            raise MemberNotFoundError(member_id)
        parse_amount(amount)
        invoice = await self.store.create_invoice(
            Invoice(
                member_id=member.id,
                member_name=member.name,
                member_email=member.email,
                period=period,
                amount=amount,
                status=_invoice_status(status),
                due=due,
            ),
            allow_duplicate_open=True,
        )
        logger.info("Invoice %s entered for %s: %s %s", invoice.id, member_id, amount, period)
        await self.balance.recompute_balance(member_id)
        return invoice

    async def update_invoice(self, invoice_id: str, **changes: Any) -> Invoice:
        unknown = set(changes) - _INVOICE_EDITABLE
        if unknown:
            raise ValueError(f"Unknown invoice field(s): {', '.join(sorted(unknown))}")
        if "status" in changes:
            changes["status"] = _invoice_status(changes["status"])
        if "amount" in changes:
            parse_amount(changes["amount"])
        invoice = await self.store.update_invoice(invoice_id, **changes)
        logger.info("Invoice %s updated: %s", invoice_id, ", ".join(sorted(changes)))
        await self.balance.recompute_balance(invoice.member_id)
        return invoice

    async def delete_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self.store.get_invoice(invoice_id)
        if invoice is None or not await self.store.delete_invoice(invoice_id):
            raise InvoiceNotFoundError(invoice_id)
        logger.info("Invoice %s deleted (%s, %s)", invoice_id, invoice.member_id, invoice.status.value)
        await self.balance.recompute_balance(invoice.member_id)
        return invoice

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_settings(self) -> EmailSettings:
        return await self.store.get_settings()

    async def update_settings(self, **changes: Any) -> EmailSettings:
        """Persist settings changes, then bring the reminder timer in line."""
        unknown = set(changes) - _SETTINGS_FIELDS
        if unknown:
            raise ValueError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        current = await self.store.get_settings()
        saved = await self.store.save_settings(dataclasses.replace(current, **changes))
        logger.info(
            "Settings saved: schedule %s, automation %s, interval %d day(s)",
            saved.schedule_time,
            "on" if saved.automation_enabled else "off",
            saved.reminder_interval,
        )
        await self.scheduler.reschedule(saved)
        return saved

    async def save_template(self, subject: str, html_template: str) -> EmailTemplate:
        return await self.store.save_template(
            EmailTemplate(subject=subject, html_template=html_template),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.scheduler.start(await self.store.get_settings())

    async def stop(self, wait: bool = True) -> None:
        await self.scheduler.stop(wait=wait)

    async def status(self) -> dict:
        settings = await self.store.get_settings()
        return {
            "settings": settings.to_public_dict(),
            "mailer": getattr(self.reminders.mailer_factory(settings), "name", None),
            "scheduler": self.scheduler.status(),
        }


# ===================================================================
# SINGLETON
# ===================================================================

_billing_instance: Optional[BillingService] = None


def get_billing(data_dir: Optional[Path] = None) -> BillingService:
    """Get the process-wide BillingService, creating it on first call."""
    global _billing_instance
    if _billing_instance is None:
        store = BillingStore(data_dir if data_dir is not None else config.BILLING_DATA_DIR)
        _billing_instance = BillingService(store=store)
    return _billing_instance
