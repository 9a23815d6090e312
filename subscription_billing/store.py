"""
BillingStore -- async persistence for members, invoices, payments,
reminder log entries, email settings and the reminder template.

Each collection lives in its own JSON file under the data directory and is
rewritten atomically on every mutation.  A mutation whose write fails is
rolled back in memory, so memory never runs ahead of disk.  With ``data_dir=None`` the store
is memory-only (tests, dry runs).

Records handed out are copies: mutate through the ``update_*`` methods.

Usage:
    store = BillingStore(Path("data/billing"))
    member = await store.add_member(Member(name="Aisha", email="a@example.com"))
    invoice = await store.open_invoice_for(member.id)
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Optional

from subscription_billing.errors import (
    DuplicateOpenInvoiceError,
    InvoiceNotFoundError,
    MemberNotFoundError,
    PaymentNotFoundError,
    TransientStoreError,
)
from subscription_billing.models import (
    EmailSettings,
    EmailTemplate,
    Invoice,
    InvoiceStatus,
    Member,
    MemberStatus,
    OPEN_INVOICE_STATUSES,
    Payment,
    PaymentStatus,
    ReminderLogEntry,
    _now_iso,
    _parse_iso,
)

logger = logging.getLogger("store")

MEMBERS_FILE = "members.json"
INVOICES_FILE = "invoices.json"
PAYMENTS_FILE = "payments.json"
REMINDER_LOG_FILE = "reminder_log.json"
SETTINGS_FILE = "email_settings.json"
TEMPLATE_FILE = "email_template.json"


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------

def _load_json(path: Path, default: Any = None) -> Any:
    """Load JSON from path, returning default when missing or corrupt."""
    if default is None:
        default = {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return default
    except json.JSONDecodeError:
        logger.warning("Corrupt JSON in %s; starting from empty", path)
        return default


def _save_json(path: Path, data: Any) -> None:
    """Atomically write data as pretty-printed JSON to path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, default=str, ensure_ascii=False)
    os.replace(str(tmp), str(path))


def _sort_key(timestamp: str | None) -> float:
    dt = _parse_iso(timestamp)
    return dt.timestamp() if dt else 0.0


def _copy(record):
    return dataclasses.replace(record) if record is not None else None


# ===================================================================
# STORE
# ===================================================================

class BillingStore:
    """In-memory collections backed by one JSON file each."""

    def __init__(self, data_dir: Optional[Path] = None) -> None:
        self.data_dir = Path(data_dir) if data_dir is not None else None
        self._lock = asyncio.Lock()
        self._members: dict[str, Member] = {}
        self._invoices: dict[str, Invoice] = {}
        self._payments: dict[str, Payment] = {}
        self._reminders: list[ReminderLogEntry] = []
        self._settings: Optional[EmailSettings] = None
        self._template: Optional[EmailTemplate] = None
        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        if self.data_dir is None:
            return
        for raw in _load_json(self.data_dir / MEMBERS_FILE, default={}).values():
            member = Member.from_dict(raw)
            self._members[member.id] = member
        for raw in _load_json(self.data_dir / INVOICES_FILE, default={}).values():
            invoice = Invoice.from_dict(raw)
            self._invoices[invoice.id] = invoice
        for raw in _load_json(self.data_dir / PAYMENTS_FILE, default={}).values():
            payment = Payment.from_dict(raw)
            self._payments[payment.id] = payment
        self._reminders = [
            ReminderLogEntry.from_dict(raw)
            for raw in _load_json(self.data_dir / REMINDER_LOG_FILE, default=[])
        ]
        raw_settings = _load_json(self.data_dir / SETTINGS_FILE, default={})
        if raw_settings:
            self._settings = EmailSettings.from_dict(raw_settings)
        raw_template = _load_json(self.data_dir / TEMPLATE_FILE, default={})
        if raw_template:
            self._template = EmailTemplate.from_dict(raw_template)
        logger.debug(
            "Loaded %d members, %d invoices, %d payments, %d reminder entries from %s",
            len(self._members), len(self._invoices), len(self._payments),
            len(self._reminders), self.data_dir,
        )

    def _persist(self, filename: str, data: Any) -> None:
        if self.data_dir is None:
            return
        try:
            _save_json(self.data_dir / filename, data)
        except OSError as exc:
            raise TransientStoreError(f"Failed to write {filename}: {exc}") from exc

    @contextlib.contextmanager
    def _rollback_on_failure(self, *attrs: str):
        """Restore the named collections if the body fails to persist."""
        snapshot = {name: copy.copy(getattr(self, name)) for name in attrs}
        try:
            yield
        except TransientStoreError:
            for name, value in snapshot.items():
                setattr(self, name, value)
            logger.warning("Write failed; rolled back %s", ", ".join(attrs))
            raise

    def _save_members(self) -> None:
        self._persist(MEMBERS_FILE, {k: v.to_dict() for k, v in self._members.items()})

    def _save_invoices(self) -> None:
        self._persist(INVOICES_FILE, {k: v.to_dict() for k, v in self._invoices.items()})

    def _save_payments(self) -> None:
        self._persist(PAYMENTS_FILE, {k: v.to_dict() for k, v in self._payments.items()})

    def _save_reminders(self) -> None:
        self._persist(REMINDER_LOG_FILE, [e.to_dict() for e in self._reminders])

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    async def add_member(self, member: Member) -> Member:
        async with self._lock:
            with self._rollback_on_failure("_members"):
                self._members[member.id] = _copy(member)
                self._save_members()
        return _copy(member)

    async def get_member(self, member_id: str) -> Optional[Member]:
        return _copy(self._members.get(member_id))

    async def list_members(self, status: Optional[MemberStatus] = None) -> list[Member]:
        return [
            _copy(m) for m in self._members.values()
            if status is None or m.status is status
        ]

    async def update_member(self, member_id: str, **changes: Any) -> Member:
        async with self._lock:
            member = self._members.get(member_id)
            if member is None:
                raise MemberNotFoundError(member_id)
            updated = dataclasses.replace(member, **changes, updated_at=_now_iso())
            with self._rollback_on_failure("_members"):
                self._members[member_id] = updated
                self._save_members()
        return _copy(updated)

    async def delete_member(self, member_id: str) -> bool:
        """Delete a member and every invoice that belongs to them."""
        async with self._lock:
            if member_id not in self._members:
                return False
            orphaned = [k for k, v in self._invoices.items() if v.member_id == member_id]
            # invoices before members so a partial write never orphans invoices
            with self._rollback_on_failure("_members", "_invoices"):
                for invoice_id in orphaned:
                    del self._invoices[invoice_id]
                if orphaned:
                    self._save_invoices()
                del self._members[member_id]
                self._save_members()
        logger.info("Deleted member %s and %d invoice(s)", member_id, len(orphaned))
        return True

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def _find_open_invoice(self, member_id: str) -> Optional[Invoice]:
        for invoice in self._invoices.values():
            if invoice.member_id == member_id and invoice.status in OPEN_INVOICE_STATUSES:
                return invoice
        return None

    async def create_invoice(self, invoice: Invoice, allow_duplicate_open: bool = False) -> Invoice:
        """Insert an invoice.

        An open invoice is refused with DuplicateOpenInvoiceError while the
        member already has another open one.  Admin-entered invoices pass
        ``allow_duplicate_open=True`` to bypass the check.
        """
        async with self._lock:
            if invoice.status in OPEN_INVOICE_STATUSES and not allow_duplicate_open:
                existing = self._find_open_invoice(invoice.member_id)
                if existing is not None:
                    raise DuplicateOpenInvoiceError(invoice.member_id, existing.id)
            with self._rollback_on_failure("_invoices"):
                self._invoices[invoice.id] = _copy(invoice)
                self._save_invoices()
        return _copy(invoice)

    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        return _copy(self._invoices.get(invoice_id))

    async def list_invoices(
        self,
        member_id: Optional[str] = None,
        statuses: Optional[Iterable[InvoiceStatus]] = None,
    ) -> list[Invoice]:
        wanted = set(statuses) if statuses is not None else None
        invoices = [
            _copy(inv) for inv in self._invoices.values()
            if (member_id is None or inv.member_id == member_id)
            and (wanted is None or inv.status in wanted)
        ]
        invoices.sort(key=lambda inv: _sort_key(inv.created_at), reverse=True)
        return invoices

    async def open_invoice_for(self, member_id: str) -> Optional[Invoice]:
        return _copy(self._find_open_invoice(member_id))

    async def most_recent_invoice(self, member_id: str) -> Optional[Invoice]:
        invoices = await self.list_invoices(member_id=member_id)
        return invoices[0] if invoices else None

    async def update_invoice(self, invoice_id: str, **changes: Any) -> Invoice:
        async with self._lock:
            invoice = self._invoices.get(invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(invoice_id)
            updated = dataclasses.replace(invoice, **changes, updated_at=_now_iso())
            with self._rollback_on_failure("_invoices"):
                self._invoices[invoice_id] = updated
                self._save_invoices()
        return _copy(updated)

    async def delete_invoice(self, invoice_id: str) -> bool:
        async with self._lock:
            if invoice_id not in self._invoices:
                return False
            with self._rollback_on_failure("_invoices"):
                del self._invoices[invoice_id]
                self._save_invoices()
        return True

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def add_payment(self, payment: Payment) -> Payment:
        async with self._lock:
            with self._rollback_on_failure("_payments"):
                self._payments[payment.id] = _copy(payment)
                self._save_payments()
        return _copy(payment)

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        return _copy(self._payments.get(payment_id))

    async def list_payments(
        self,
        member_id: Optional[str] = None,
        statuses: Optional[Iterable[PaymentStatus]] = None,
    ) -> list[Payment]:
        wanted = set(statuses) if statuses is not None else None
        payments = [
            _copy(p) for p in self._payments.values()
            if (member_id is None or p.member_id == member_id)
            and (wanted is None or p.status in wanted)
        ]
        payments.sort(key=lambda p: _sort_key(p.created_at), reverse=True)
        return payments

    async def most_recent_payment(
        self,
        member_id: str,
        statuses: Optional[Iterable[PaymentStatus]] = None,
    ) -> Optional[Payment]:
        payments = await self.list_payments(member_id=member_id, statuses=statuses)
        return payments[0] if payments else None

    async def update_payment(self, payment_id: str, **changes: Any) -> Payment:
        async with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None:
                raise PaymentNotFoundError(payment_id)
            updated = dataclasses.replace(payment, **changes)
            with self._rollback_on_failure("_payments"):
                self._payments[payment_id] = updated
                self._save_payments()
        return _copy(updated)

    async def delete_payment(self, payment_id: str) -> bool:
        async with self._lock:
            if payment_id not in self._payments:
                return False
            with self._rollback_on_failure("_payments"):
                del self._payments[payment_id]
                self._save_payments()
        return True

    # ------------------------------------------------------------------
    # Reminder log (append-only)
    # ------------------------------------------------------------------

    async def append_reminder(self, entry: ReminderLogEntry) -> ReminderLogEntry:
        async with self._lock:
            with self._rollback_on_failure("_reminders"):
                self._reminders.append(_copy(entry))
                self._save_reminders()
        return _copy(entry)

    async def list_reminders(
        self,
        member_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ReminderLogEntry]:
        entries = [
            _copy(e) for e in self._reminders
            if member_id is None or e.member_id == member_id
        ]
        entries.sort(key=lambda e: _sort_key(e.sent_at), reverse=True)
        return entries[:limit] if limit is not None else entries

    async def most_recent_reminder(self, member_id: str) -> Optional[ReminderLogEntry]:
        entries = await self.list_reminders(member_id=member_id, limit=1)
        return entries[0] if entries else None

    # ------------------------------------------------------------------
    # Settings and template
    # ------------------------------------------------------------------

    async def get_settings(self) -> EmailSettings:
        """Saved settings, or env-derived defaults when nothing is saved yet."""
        if self._settings is None:
            return EmailSettings()
        return _copy(self._settings)

    async def save_settings(self, settings: EmailSettings) -> EmailSettings:
        settings.validate()
        async with self._lock:
            with self._rollback_on_failure("_settings"):
                self._settings = dataclasses.replace(settings, updated_at=_now_iso())
                self._persist(SETTINGS_FILE, self._settings.to_dict())
        return _copy(self._settings)

    async def get_template(self) -> Optional[EmailTemplate]:
        return _copy(self._template)

    async def save_template(self, template: EmailTemplate) -> EmailTemplate:
        async with self._lock:
            with self._rollback_on_failure("_template"):
                self._template = dataclasses.replace(template, updated_at=_now_iso())
                self._persist(TEMPLATE_FILE, self._template.to_dict())
        return _copy(self._template)
