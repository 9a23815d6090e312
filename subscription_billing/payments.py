"""
PaymentLifecycle -- submission, approval, rejection and deletion of
member payments, with the invoice and balance cascades each one implies.

    Pending --approve--> Completed   (invoice -> Paid)
    Pending --reject---> Rejected    (invoice -> Unpaid, attribution cleared)

Completed and Rejected are terminal.  Deleting a Completed payment reverts
its invoice to Unpaid so a Paid invoice never outlives its payment.

Cascades after the payment write are best-effort: a failed balance
recompute or outcome email is logged and does not undo the status change.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from subscription_billing.balance import BalanceCalculator
from subscription_billing.emails import payment_approved_message, payment_rejected_message
from subscription_billing.errors import (
    IllegalTransitionError,
    InvoiceNotFoundError,
    PaymentNotFoundError,
)
from subscription_billing.mailer import MailMessage, Mailer, build_mailer
from subscription_billing.models import (
    OUTSTANDING_INVOICE_STATUSES,
    EmailSettings,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    _now_utc,
)
from subscription_billing.store import BillingStore

logger = logging.getLogger("payments")

# Cleared whenever an invoice is reopened
_ATTRIBUTION_CLEARED = {"method": "", "reference": "", "screenshot": ""}


class PaymentLifecycle:

    def __init__(
        self,
        store: BillingStore,
        balance: BalanceCalculator,
        mailer_factory: Callable[[EmailSettings], Optional[Mailer]] = build_mailer,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self.store = store
        self.balance = balance
        self.mailer_factory = mailer_factory
        self.clock = clock
        # Serializes check-then-write on payment status
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_pending(self, payment_id: str, target: PaymentStatus) -> Payment:
        payment = await self.store.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        if payment.status is not PaymentStatus.PENDING:
            raise IllegalTransitionError(payment_id, payment.status.value, target.value)
        return payment

    async def _recompute(self, member_id: str) -> None:
        try:
            await self.balance.recompute_balance(member_id)
        except Exception:
            logger.exception("Balance recompute failed for member %s", member_id)

    async def _notify(self, message: MailMessage) -> None:
        if not message.to:
            return
        try:
            mailer = self.mailer_factory(await self.store.get_settings())
            if mailer is None:
                logger.info("Email not configured; skipping %r to %s", message.subject, message.to)
                return
            await mailer.send(message)
            logger.info("Sent %r to %s", message.subject, message.to)
        except Exception as exc:
            logger.error("Failed to send %r to %s: %s", message.subject, message.to, exc)

    async def _revert_invoice(self, invoice_id: str) -> Optional[Invoice]:
        """Put an invoice back to Unpaid and clear its payment attribution."""
        invoice = await self.store.get_invoice(invoice_id)
        if invoice is None:
            logger.warning("Invoice %s not found; nothing to revert", invoice_id)
            return None
        return await self.store.update_invoice(
            invoice_id, status=InvoiceStatus.UNPAID, **_ATTRIBUTION_CLEARED,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def submit(
        self,
        invoice_id: str,
        method: str,
        reference: str = "",
        screenshot: str = "",
        paid_to_admin: str = "",
        paid_to_admin_name: str = "",
    ) -> Payment:
        """Record proof of payment and hold the invoice for verification."""
        async with self._lock:
            invoice = await self.store.get_invoice(invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(invoice_id)
            if invoice.status not in OUTSTANDING_INVOICE_STATUSES:
                raise IllegalTransitionError(
                    invoice_id, invoice.status.value, InvoiceStatus.PENDING_VERIFICATION.value,
                )

            payment = await self.store.add_payment(Payment(
                invoice_id=invoice.id,
                member_id=invoice.member_id,
                member_email=invoice.member_email,
                member_name=invoice.member_name,
                amount=invoice.amount,
                method=method,
                reference=reference,
                period=invoice.period,
                screenshot=screenshot,
                paid_to_admin=paid_to_admin,
                paid_to_admin_name=paid_to_admin_name,
                status=PaymentStatus.PENDING,
                created_at=self.clock().isoformat(),
            ))
            await self.store.update_invoice(
                invoice.id,
                status=InvoiceStatus.PENDING_VERIFICATION,
                method=method,
                reference=reference,
                screenshot=screenshot,
                paid_to_admin=paid_to_admin or invoice.paid_to_admin,
                paid_to_admin_name=paid_to_admin_name or invoice.paid_to_admin_name,
            )

        logger.info("Payment %s submitted for invoice %s (%s)", payment.id, invoice.id, method)
        await self._recompute(invoice.member_id)
        return payment

    async def approve(self, payment_id: str, actor: str) -> Payment:
        """Complete a Pending payment and mark its invoice Paid."""
        async with self._lock:
            payment = await self._load_pending(payment_id, PaymentStatus.COMPLETED)
            invoice = await self.store.get_invoice(payment.invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(payment.invoice_id)

            payment = await self.store.update_payment(
                payment_id,
                status=PaymentStatus.COMPLETED,
                approved_by=actor,
                approved_at=self.clock().isoformat(),
            )
            invoice = await self.store.update_invoice(
                invoice.id,
                status=InvoiceStatus.PAID,
                method=payment.method or invoice.method,
                reference=payment.reference or invoice.reference,
                screenshot=payment.screenshot or invoice.screenshot,
                paid_to_admin=invoice.paid_to_admin or payment.paid_to_admin,
                paid_to_admin_name=invoice.paid_to_admin_name or payment.paid_to_admin_name,
            )

        logger.info("Payment %s approved by %s; invoice %s paid", payment_id, actor, invoice.id)
        await self._recompute(payment.member_id)
        await self._notify(payment_approved_message(payment, invoice))
        return payment

    async def reject(self, payment_id: str, actor: str, reason: str = "") -> Payment:
        """Reject a Pending payment and reopen its invoice."""
        async with self._lock:
            payment = await self._load_pending(payment_id, PaymentStatus.REJECTED)
            payment = await self.store.update_payment(
                payment_id,
                status=PaymentStatus.REJECTED,
                rejected_by=actor,
                rejected_at=self.clock().isoformat(),
                rejection_reason=reason,
            )
            invoice = await self.store.get_invoice(payment.invoice_id)
            if invoice is not None and invoice.status is InvoiceStatus.PAID:
                logger.warning(
                    "Invoice %s already Paid; rejection of %s leaves it untouched",
                    invoice.id, payment_id,
                )
            elif invoice is not None:
                invoice = await self._revert_invoice(invoice.id)
            else:
                logger.warning("Invoice %s for payment %s not found", payment.invoice_id, payment_id)

        logger.info("Payment %s rejected by %s: %s", payment_id, actor, reason or "(no reason)")
        await self._recompute(payment.member_id)
        await self._notify(payment_rejected_message(payment, invoice, reason))
        return payment

    async def delete(self, payment_id: str) -> Payment:
        """Remove a payment, first reopening any invoice it was holding."""
        async with self._lock:
            payment = await self.store.get_payment(payment_id)
            if payment is None:
                raise PaymentNotFoundError(payment_id)

            if payment.status is PaymentStatus.COMPLETED:
                await self._revert_invoice(payment.invoice_id)
            elif payment.status is PaymentStatus.PENDING:
                invoice = await self.store.get_invoice(payment.invoice_id)
                if invoice is not None and invoice.status is InvoiceStatus.PENDING_VERIFICATION:
                    await self._revert_invoice(invoice.id)

            await self.store.delete_payment(payment_id)

        logger.info("Payment %s (%s) deleted", payment_id, payment.status.value)
        await self._recompute(payment.member_id)
        return payment
