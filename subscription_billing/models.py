"""
Billing records: members, invoices, payments, reminder log, settings.

Every record is a dataclass that round-trips through plain dicts
(``to_dict`` / ``from_dict``) for JSON persistence.  Status fields are
``str`` enums whose values match the labels shown to admins.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, Optional

from subscription_billing import config
from subscription_billing.errors import InvalidAmountError

UTC = timezone.utc


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def _now_utc() -> datetime:
    """Return the current time in UTC, timezone-aware."""
    return datetime.now(UTC)


def _now_iso() -> str:
    """Return current UTC time as an ISO-8601 string."""
    return _now_utc().isoformat()


def _parse_iso(s: str | None) -> datetime | None:
    """Parse an ISO-8601 string back to a timezone-aware datetime."""
    if not s:
        return None
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _gen_id(prefix: str) -> str:
    """Generate a unique ID with prefix."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def generate_invoice_id(now: datetime | None = None) -> str:
    now = now or _now_utc()
    return f"INV-{now.year}-{uuid.uuid4().hex[:6].upper()}"


# ---------------------------------------------------------------------------
# Amount helpers
# ---------------------------------------------------------------------------

_CURRENCY_PREFIX = re.compile(r"^[^\d\-.]+")


def parse_amount(raw: Any) -> Decimal:
    """Parse a currency value such as ``"$1,250.50"`` into a Decimal.

    Raises InvalidAmountError for anything that is not a number once the
    currency symbol and thousands separators are removed.
    """
    if isinstance(raw, Decimal):
        return raw
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return Decimal(str(raw))
    if not isinstance(raw, str):
        raise InvalidAmountError(raw)
    cleaned = _CURRENCY_PREFIX.sub("", raw.strip()).replace(",", "").strip()
    if not cleaned:
        raise InvalidAmountError(raw)
    try:
        value = Decimal(cleaned)
    except InvalidOperation as exc:
        raise InvalidAmountError(raw) from exc
    if not value.is_finite():
        raise InvalidAmountError(raw)
    return value


def format_amount(value: Decimal) -> str:
    """Format a Decimal as ``$123.45``."""
    return f"${value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP):.2f}"


def sum_amounts(amounts: Iterable[Any]) -> Decimal:
    total = Decimal("0")
    for amount in amounts:
        total += parse_amount(amount)
    return total


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

def _lookup(cls: type[Enum], value: str, aliases: dict[str, str] | None = None) -> Any:
    normalized = value.strip().lower().replace("_", " ").replace("-", " ")
    if aliases and normalized in aliases:
        normalized = aliases[normalized]
    for member in cls:
        if member.value.lower() == normalized or member.name.lower().replace("_", " ") == normalized:
            return member
    raise ValueError(
        f"Unknown {cls.__name__}: {value!r}. "
        f"Valid: {', '.join(m.value for m in cls)}"
    )


class MemberStatus(str, Enum):
    """Lifecycle status of a member account."""
    PENDING = "Pending"
    ACTIVE = "Active"
    INACTIVE = "Inactive"

    @classmethod
    def from_string(cls, value: str) -> MemberStatus:
        return _lookup(cls, value)


class SubscriptionType(str, Enum):
    """Subscription plans.  Both are billed annually."""
    LIFETIME = "Lifetime"
    YEARLY_JANAZA = "Yearly + Janaza Fund"

    @classmethod
    def from_string(cls, value: str) -> SubscriptionType:
        return _lookup(cls, value, aliases={"yearly janaza fund": "yearly + janaza fund"})

    @property
    def amount(self) -> str:
        return "$500" if self is SubscriptionType.YEARLY_JANAZA else "$250"

    @property
    def period_label(self) -> str:
        if self is SubscriptionType.YEARLY_JANAZA:
            return "Yearly Subscription + Janaza Fund"
        return "Lifetime Subscription"


class InvoiceStatus(str, Enum):
    """Lifecycle status of an invoice."""
    UNPAID = "Unpaid"
    OVERDUE = "Overdue"
    PENDING_VERIFICATION = "Pending Verification"
    PAID = "Paid"

    @classmethod
    def from_string(cls, value: str) -> InvoiceStatus:
        return _lookup(cls, value)


# Not yet resolved to Paid; at most one per member.
OPEN_INVOICE_STATUSES = frozenset({
    InvoiceStatus.UNPAID,
    InvoiceStatus.OVERDUE,
    InvoiceStatus.PENDING_VERIFICATION,
})

# Counted in the member balance and in reminders.
OUTSTANDING_INVOICE_STATUSES = frozenset({
    InvoiceStatus.UNPAID,
    InvoiceStatus.OVERDUE,
})


class PaymentStatus(str, Enum):
    """Lifecycle status of a submitted payment."""
    PENDING = "Pending"
    COMPLETED = "Completed"
    REJECTED = "Rejected"

    @classmethod
    def from_string(cls, value: str) -> PaymentStatus:
        # Older records mark settled payments as "Paid".
        return _lookup(cls, value, aliases={"paid": "completed"})

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class ReminderType(str, Enum):
    UPCOMING = "upcoming"
    OVERDUE = "overdue"

    @classmethod
    def from_string(cls, value: str) -> ReminderType:
        return _lookup(cls, value)


class DeliveryStatus(str, Enum):
    DELIVERED = "Delivered"
    FAILED = "Failed"

    @classmethod
    def from_string(cls, value: str) -> DeliveryStatus:
        return _lookup(cls, value)


class ReminderTrigger(str, Enum):
    """Whether a reminder came from the scheduled check or an admin action."""
    SCHEDULED = "scheduled"
    MANUAL = "manual"

    @classmethod
    def from_string(cls, value: str) -> ReminderTrigger:
        return _lookup(cls, value)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

def _filter_fields(cls: type, data: dict) -> dict:
    valid = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in valid}


def _enums_to_values(d: dict) -> dict:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in d.items()}


# ===================================================================
# RECORDS
# ===================================================================

@dataclass
class Member:
    """A dues-paying member.  ``balance`` is derived; never set it by hand."""

    id: str = field(default_factory=lambda: _gen_id("mem"))
    name: str = ""
    email: str = ""
    phone: str = ""
    status: MemberStatus = MemberStatus.PENDING
    subscription_type: SubscriptionType = SubscriptionType.LIFETIME
    balance: str = "$0"
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict:
        return _enums_to_values(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> Member:
        data = _filter_fields(cls, dict(data))
        if "status" in data:
            data["status"] = MemberStatus.from_string(data["status"])
        if data.get("subscription_type"):
            data["subscription_type"] = SubscriptionType.from_string(data["subscription_type"])
        else:
            data.pop("subscription_type", None)
        return cls(**data)


@dataclass
class Invoice:
    """A dues invoice.  Amounts are stored as display strings (``"$250"``)."""

    id: str = field(default_factory=generate_invoice_id)
    member_id: str = ""
    member_name: str = ""
    member_email: str = ""
    period: str = ""
    amount: str = "$0"
    status: InvoiceStatus = InvoiceStatus.UNPAID
    due: str = ""
    method: str = ""
    reference: str = ""
    screenshot: str = ""
    paid_to_admin: str = ""
    paid_to_admin_name: str = ""
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_INVOICE_STATUSES

    @property
    def is_outstanding(self) -> bool:
        return self.status in OUTSTANDING_INVOICE_STATUSES

    def to_dict(self) -> dict:
        return _enums_to_values(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> Invoice:
        data = _filter_fields(cls, dict(data))
        if "status" in data:
            data["status"] = InvoiceStatus.from_string(data["status"])
        return cls(**data)


@dataclass
class Payment:
    """Proof of payment submitted against an invoice."""

    id: str = field(default_factory=lambda: _gen_id("pay"))
    invoice_id: str = ""
    member_id: str = ""
    member_email: str = ""
    member_name: str = ""
    amount: str = "$0"
    method: str = ""
    reference: str = ""
    period: str = ""
    screenshot: str = ""
    paid_to_admin: str = ""
    paid_to_admin_name: str = ""
    status: PaymentStatus = PaymentStatus.PENDING
    approved_by: str = ""
    approved_at: Optional[str] = None
    rejected_by: str = ""
    rejected_at: Optional[str] = None
    rejection_reason: str = ""
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict:
        return _enums_to_values(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> Payment:
        data = _filter_fields(cls, dict(data))
        if "status" in data:
            data["status"] = PaymentStatus.from_string(data["status"])
        return cls(**data)


@dataclass
class ReminderLogEntry:
    """One reminder send attempt.  Append-only."""

    id: str = field(default_factory=lambda: _gen_id("rem"))
    member_id: str = ""
    member_email: str = ""
    sent_at: str = field(default_factory=_now_iso)
    reminder_type: ReminderType = ReminderType.UPCOMING
    amount: str = "$0"
    invoice_count: int = 0
    status: DeliveryStatus = DeliveryStatus.DELIVERED
    trigger: ReminderTrigger = ReminderTrigger.SCHEDULED
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return _enums_to_values(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> ReminderLogEntry:
        data = _filter_fields(cls, dict(data))
        if "reminder_type" in data:
            data["reminder_type"] = ReminderType.from_string(data["reminder_type"])
        if "status" in data:
            data["status"] = DeliveryStatus.from_string(data["status"])
        if "trigger" in data:
            data["trigger"] = ReminderTrigger.from_string(data["trigger"])
        return cls(**data)


_TIME_OF_DAY = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def parse_time_of_day(value: str) -> tuple[int, int]:
    """Parse ``"HH:MM"`` (24-hour) into ``(hour, minute)``."""
    match = _TIME_OF_DAY.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise ValueError(f"Invalid time of day {value!r}; expected HH:MM")
    return int(match.group(1)), int(match.group(2))


@dataclass
class EmailSettings:
    """Reminder automation settings plus mailer credentials.

    The core only reads ``schedule_time``, ``automation_enabled`` and
    ``reminder_interval``; the credential fields are handed to
    ``mailer.build_mailer`` unchanged.
    """

    schedule_time: str = config.DEFAULT_SCHEDULE_TIME
    automation_enabled: bool = True
    reminder_interval: int = config.DEFAULT_REMINDER_INTERVAL
    email_service: str = config.EMAIL_SERVICE
    email_user: str = config.EMAIL_USER
    email_password: str = config.EMAIL_PASSWORD
    smtp_host: str = config.SMTP_HOST
    smtp_port: int = config.SMTP_PORT
    webhook_url: str = config.MAIL_WEBHOOK_URL
    from_name: str = config.MAIL_FROM_NAME
    updated_at: str = field(default_factory=_now_iso)

    def validate(self) -> None:
        parse_time_of_day(self.schedule_time)
        if isinstance(self.reminder_interval, bool) or not isinstance(self.reminder_interval, int):
            raise ValueError(f"reminder_interval must be an integer, got {self.reminder_interval!r}")
        if self.reminder_interval < 1:
            raise ValueError("reminder_interval must be at least 1 day")

    def to_dict(self) -> dict:
        return asdict(self)

    def to_public_dict(self) -> dict:
        """Settings safe to display; the password is masked."""
        d = self.to_dict()
        if d.get("email_password"):
            d["email_password"] = "********"
        return d

    @classmethod
    def from_dict(cls, data: dict) -> EmailSettings:
        data = _filter_fields(cls, dict(data))
        if "reminder_interval" in data and data["reminder_interval"] is not None:
            data["reminder_interval"] = int(data["reminder_interval"])
        if "smtp_port" in data and data["smtp_port"] is not None:
            data["smtp_port"] = int(data["smtp_port"])
        return cls(**data)


@dataclass
class EmailTemplate:
    """Admin-editable reminder template with ``{{placeholder}}`` markers."""

    subject: str = "Payment Reminder - Outstanding Balance"
    html_template: str = ""
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> EmailTemplate:
        return cls(**_filter_fields(cls, dict(data)))
