"""
InvoiceGenerator -- creates the yearly renewal invoice for every Active
member whose last billing event is at least a billing period old.

The anchor ("last billed") is, in order of preference:

    1. created_at of the member's most recent Completed payment
    2. created_at of the member's most recent invoice
    3. the member's own created_at

A member with an open invoice (Unpaid, Overdue, Pending Verification) is
never billed again until that invoice is resolved.  The open-invoice read
is a fast path; the store refuses a second open invoice under its lock, so
overlapping runs cannot double-bill.

Usage:
    generator = InvoiceGenerator(store, BalanceCalculator(store))
    result = await generator.generate_due_invoices()
    print(result.created, result.skipped, result.errors)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from subscription_billing import config
from subscription_billing.balance import BalanceCalculator
from subscription_billing.batch import MemberError, for_each_member
from subscription_billing.errors import DuplicateOpenInvoiceError
from subscription_billing.models import (
    Invoice,
    InvoiceStatus,
    Member,
    MemberStatus,
    PaymentStatus,
    _now_utc,
    _parse_iso,
    generate_invoice_id,
)
from subscription_billing.store import BillingStore

logger = logging.getLogger("invoice_generator")

DUE_DATE_FORMAT = "%d %b %Y"
PERIOD_PREFIX_FORMAT = "%b %Y"


@dataclass
class GenerationResult:
    created: int = 0
    skipped: int = 0
    errors: list[MemberError] = field(default_factory=list)
    invoice_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "skipped": self.skipped,
            "errors": [e.to_dict() for e in self.errors],
            "invoice_ids": list(self.invoice_ids),
        }


class InvoiceGenerator:

    def __init__(
        self,
        store: BillingStore,
        balance: BalanceCalculator,
        clock: Callable[[], datetime] = _now_utc,
        tz: str = config.BILLING_TIMEZONE,
        concurrency: int = config.MEMBER_CONCURRENCY,
    ) -> None:
        self.store = store
        self.balance = balance
        self.clock = clock
        self.tz = ZoneInfo(tz)
        self.concurrency = concurrency

    async def anchor_date(self, member: Member) -> datetime:
        """Timestamp the member was last billed from."""
        payment = await self.store.most_recent_payment(
            member.id, statuses={PaymentStatus.COMPLETED},
        )
        if payment is not None and payment.created_at:
            return _parse_iso(payment.created_at)

        invoice = await self.store.most_recent_invoice(member.id)
        if invoice is not None and invoice.created_at:
            return _parse_iso(invoice.created_at)

        return _parse_iso(member.created_at) or self.clock()

    def build_invoice(self, member: Member, now: datetime) -> Invoice:
        """The renewal invoice for *member* as of *now* (not yet stored)."""
        local_now = now.astimezone(self.tz)
        plan = member.subscription_type
        due = local_now + timedelta(days=config.BILLING_PERIOD_DAYS)
        return Invoice(
            id=generate_invoice_id(local_now),
            member_id=member.id,
            member_name=member.name,
            member_email=member.email,
            period=f"{local_now.strftime(PERIOD_PREFIX_FORMAT)} {plan.period_label}",
            amount=plan.amount,
            status=InvoiceStatus.UNPAID,
            due=due.strftime(DUE_DATE_FORMAT),
            created_at=now.isoformat(),
            updated_at=now.isoformat(),
        )

    async def _process_member(
        self, member: Member, now: datetime, result: GenerationResult,
    ) -> None:
        anchor = await self.anchor_date(member)
        if now - anchor < timedelta(days=config.BILLING_PERIOD_DAYS):
            logger.debug("Member %s not due (anchor %s)", member.id, anchor.isoformat())
            result.skipped += 1
            return

        existing = await self.store.open_invoice_for(member.id)
        if existing is not None:
            logger.debug("Member %s already has open invoice %s", member.id, existing.id)
            result.skipped += 1
            return

        try:
            invoice = await self.store.create_invoice(self.build_invoice(member, now))
        except DuplicateOpenInvoiceError as exc:
            logger.info("Concurrent invoice for %s (%s); skipping", member.id, exc.existing_invoice_id)
            result.skipped += 1
            return

        result.created += 1
        result.invoice_ids.append(invoice.id)
        logger.info(
            "Created invoice %s for %s: %s %s due %s",
            invoice.id, member.id, invoice.amount, invoice.period, invoice.due,
        )
        await self.balance.recompute_balance(member.id)

    async def generate_due_invoices(self) -> GenerationResult:
        """Create renewal invoices for every due Active member."""
        now = self.clock()
        result = GenerationResult()
        members = await self.store.list_members(status=MemberStatus.ACTIVE)

        async def _unit(member: Member) -> None:
            await self._process_member(member, now, result)

        result.errors = await for_each_member(
            members, _unit, "Invoice generation", concurrency=self.concurrency,
        )
        logger.info(
            "Invoice generation: %d created, %d skipped, %d errors (%d active members)",
            result.created, result.skipped, len(result.errors), len(members),
        )
        return result
