"""Exception taxonomy for the billing core."""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing core errors."""


# ---------------------------------------------------------------------------
# NotFound
# ---------------------------------------------------------------------------

class NotFoundError(BillingError):
    """A referenced record does not exist (or vanished concurrently)."""

    kind = "record"

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"{self.kind.capitalize()} {record_id!r} not found")


class MemberNotFoundError(NotFoundError):
    kind = "member"


class InvoiceNotFoundError(NotFoundError):
    kind = "invoice"


class PaymentNotFoundError(NotFoundError):
    kind = "payment"


# ---------------------------------------------------------------------------
# Misconfiguration
# ---------------------------------------------------------------------------

class MisconfiguredError(BillingError):
    """The core cannot act because configuration is missing or disabled."""


class MailerNotConfiguredError(MisconfiguredError):
    def __init__(self, message: str = "Email not configured. Configure email settings first.") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------------
# Runtime failures
# ---------------------------------------------------------------------------

class TransientStoreError(BillingError):
    """The store failed to read or persist; the current unit of work is lost."""


class MailSendError(BillingError):
    """The mailer could not deliver a message."""

    def __init__(self, recipient: str, reason: str) -> None:
        self.recipient = recipient
        self.reason = reason
        super().__init__(f"Mail to {recipient} failed: {reason}")


class IllegalTransitionError(BillingError):
    """A status change was requested out of a terminal or unexpected state."""

    def __init__(self, record_id: str, current: str, target: str) -> None:
        self.record_id = record_id
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move {record_id!r} from {current!r} to {target!r}"
        )


class DuplicateOpenInvoiceError(BillingError):
    """The member already has an Unpaid, Overdue or Pending Verification invoice."""

    def __init__(self, member_id: str, existing_invoice_id: str) -> None:
        self.member_id = member_id
        self.existing_invoice_id = existing_invoice_id
        super().__init__(
            f"Member {member_id!r} already has open invoice {existing_invoice_id!r}"
        )


class InvalidAmountError(BillingError, ValueError):
    """A currency string could not be parsed."""

    def __init__(self, raw: object) -> None:
        self.raw = raw
        super().__init__(f"Invalid amount: {raw!r}")
