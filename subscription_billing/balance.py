"""
Member balance derived from invoice state.

The balance string is a pure function of the member's Unpaid and Overdue
invoices.  It is recomputed from scratch after every change that can
affect it; nothing adjusts it incrementally.

    "$0"                     nothing outstanding
    "$250.00 Outstanding"    only Unpaid invoices
    "$150.00 Overdue"        at least one Overdue invoice
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Optional

from subscription_billing.errors import MemberNotFoundError
from subscription_billing.models import (
    OUTSTANDING_INVOICE_STATUSES,
    Invoice,
    InvoiceStatus,
    format_amount,
    sum_amounts,
)
from subscription_billing.store import BillingStore

logger = logging.getLogger("balance")

ZERO_BALANCE = "$0"


def outstanding_total(invoices: Iterable[Invoice]) -> tuple[Decimal, bool]:
    """Return ``(total, any_overdue)`` over the Unpaid/Overdue invoices given."""
    outstanding = [inv for inv in invoices if inv.status in OUTSTANDING_INVOICE_STATUSES]
    total = sum_amounts(inv.amount for inv in outstanding)
    any_overdue = any(inv.status is InvoiceStatus.OVERDUE for inv in outstanding)
    return total, any_overdue


def compute_balance(invoices: Iterable[Invoice]) -> str:
    total, any_overdue = outstanding_total(invoices)
    if total == 0:
        return ZERO_BALANCE
    label = "Overdue" if any_overdue else "Outstanding"
    return f"{format_amount(total)} {label}"


class BalanceCalculator:
    """Writes the derived balance onto the member record."""

    def __init__(self, store: BillingStore) -> None:
        self.store = store

    async def recompute_balance(self, member_id: str) -> Optional[str]:
        """Recompute and store the balance for *member_id*.

        Returns the new balance, or None when the member no longer exists.
        Store write failures propagate.
        """
        member = await self.store.get_member(member_id)
        if member is None:
            logger.warning("Balance recompute skipped: member %s not found", member_id)
            return None

        invoices = await self.store.list_invoices(
            member_id=member_id, statuses=OUTSTANDING_INVOICE_STATUSES,
        )
        balance = compute_balance(invoices)

        try:
            await self.store.update_member(member_id, balance=balance)
        except MemberNotFoundError:
            logger.warning("Member %s deleted during balance recompute", member_id)
            return None

        if balance != member.balance:
            logger.debug("Balance for %s: %s -> %s", member_id, member.balance, balance)
        return balance
