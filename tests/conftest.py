"""
Shared fixtures for the subscription billing test suite.

Everything runs against a memory-only store, a fixed clock and a recording
mailer, so no test touches the network or the real data directory.
"""

from datetime import datetime, timedelta, timezone

import pytest

from subscription_billing.balance import BalanceCalculator
from subscription_billing.errors import MailSendError
from subscription_billing.models import (
    Invoice,
    InvoiceStatus,
    Member,
    MemberStatus,
    Payment,
    PaymentStatus,
    ReminderLogEntry,
    SubscriptionType,
)
from subscription_billing.service import BillingService
from subscription_billing.store import BillingStore

# 12:00 in Asia/Kolkata
NOW = datetime(2026, 10, 19, 6, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------

class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class RecordingMailer:
    """Collects sent messages; addresses in ``fail_for`` raise MailSendError."""

    name = "recording"

    def __init__(self) -> None:
        self.sent = []
        self.fail_for = set()

    async def send(self, message) -> None:
        if message.to in self.fail_for:
            raise MailSendError(message.to, "mailbox unavailable")
        self.sent.append(message)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return BillingStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def mailer_factory(mailer):
    return lambda settings: mailer


@pytest.fixture
def balance(store):
    return BalanceCalculator(store)


@pytest.fixture
def service(store, mailer_factory, clock):
    return BillingService(store=store, mailer_factory=mailer_factory, clock=clock)


# ---------------------------------------------------------------------------
# Record factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_member(store, clock):
    """Factory: add a member created ``days_old`` days before the clock."""
    counter = {"n": 0}

    async def _make(
        name: str = "",
        days_old: float = 366,
        status: MemberStatus = MemberStatus.ACTIVE,
        subscription_type: SubscriptionType = SubscriptionType.LIFETIME,
        **fields,
    ) -> Member:
        counter["n"] += 1
        name = name or f"Member {counter['n']}"
        created = (clock.now - timedelta(days=days_old)).isoformat()
        member = Member(
            id=fields.pop("id", f"HK{counter['n']:04d}"),
            name=name,
            email=fields.pop("email", f"member{counter['n']}@example.com"),
            status=status,
            subscription_type=subscription_type,
            created_at=created,
            updated_at=created,
            **fields,
        )
        return await store.add_member(member)

    return _make


@pytest.fixture
def make_invoice(store, clock):
    """Factory: add an invoice for a member, bypassing the open-invoice check."""

    async def _make(
        member: Member,
        amount: str = "$250",
        status: InvoiceStatus = InvoiceStatus.UNPAID,
        days_old: float = 0,
        period: str = "Oct 2025 Lifetime Subscription",
        **fields,
    ) -> Invoice:
        created = (clock.now - timedelta(days=days_old)).isoformat()
        invoice = Invoice(
            member_id=member.id,
            member_name=member.name,
            member_email=member.email,
            period=period,
            amount=amount,
            status=status,
            due="19 Oct 2026",
            created_at=created,
            updated_at=created,
            **fields,
        )
        return await store.create_invoice(invoice, allow_duplicate_open=True)

    return _make


@pytest.fixture
def make_payment(store, clock):
    async def _make(
        invoice: Invoice,
        status: PaymentStatus = PaymentStatus.PENDING,
        days_old: float = 0,
        **fields,
    ) -> Payment:
        payment = Payment(
            invoice_id=invoice.id,
            member_id=invoice.member_id,
            member_email=invoice.member_email,
            member_name=invoice.member_name,
            amount=invoice.amount,
            period=invoice.period,
            method=fields.pop("method", "FPS"),
            reference=fields.pop("reference", "FPS-REF-001"),
            status=status,
            created_at=(clock.now - timedelta(days=days_old)).isoformat(),
            **fields,
        )
        return await store.add_payment(payment)

    return _make


@pytest.fixture
def log_reminder(store, clock):
    """Factory: append a reminder log entry sent ``days_ago`` days before the clock."""

    async def _log(member: Member, days_ago: float, **fields) -> ReminderLogEntry:
        entry = ReminderLogEntry(
            member_id=member.id,
            member_email=member.email,
            sent_at=(clock.now - timedelta(days=days_ago)).isoformat(),
            amount="$250.00",
            invoice_count=1,
            **fields,
        )
        return await store.append_reminder(entry)

    return _log
