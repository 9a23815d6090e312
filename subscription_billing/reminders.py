"""
ReminderDispatcher -- interval-gated payment reminder emails.

The scheduled check sends to every Active member with Unpaid or Overdue
invoices, unless that member's most recent reminder log entry (of any
type, delivered or failed) is younger than ``reminder_interval`` whole
days.  Every send attempt appends exactly one log entry.

Admin sends (one member, or everyone outstanding) skip the interval gate
and the automation flag but still need a configured mailer, and are
logged the same way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Sequence

from subscription_billing import config
from subscription_billing.balance import outstanding_total
from subscription_billing.batch import MemberError, for_each_member
from subscription_billing.emails import reminder_message
from subscription_billing.errors import MailerNotConfiguredError, MailSendError
from subscription_billing.mailer import Mailer, build_mailer
from subscription_billing.models import (
    OUTSTANDING_INVOICE_STATUSES,
    DeliveryStatus,
    EmailSettings,
    EmailTemplate,
    Invoice,
    Member,
    MemberStatus,
    ReminderLogEntry,
    ReminderTrigger,
    ReminderType,
    _now_utc,
    _parse_iso,
    format_amount,
)
from subscription_billing.store import BillingStore

logger = logging.getLogger("reminders")

SECONDS_PER_DAY = 86400

DISABLED_AUTOMATION = "automation disabled"
DISABLED_MAILER = "mailer not configured"


@dataclass
class ReminderRunResult:
    """Outcome of a reminder run over the Active members.

    ``skipped`` counts Active members that were not mailed: nothing
    outstanding, or held back by the interval gate.  ``failed`` counts
    attempted sends the mailer refused.
    """

    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[MemberError] = field(default_factory=list)
    disabled_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": [e.to_dict() for e in self.errors],
            "disabled_reason": self.disabled_reason,
        }


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """Floor of elapsed days; negative when *earlier* is in the future."""
    return int((later - earlier).total_seconds() // SECONDS_PER_DAY)


def reminder_due(last: Optional[ReminderLogEntry], now: datetime, interval_days: int) -> bool:
    if last is None:
        return True
    sent_at = _parse_iso(last.sent_at)
    if sent_at is None:
        return True
    return whole_days_between(sent_at, now) >= interval_days


class ReminderDispatcher:

    def __init__(
        self,
        store: BillingStore,
        mailer_factory: Callable[[EmailSettings], Optional[Mailer]] = build_mailer,
        clock: Callable[[], datetime] = _now_utc,
        concurrency: int = config.MEMBER_CONCURRENCY,
        portal_url: str = config.MEMBER_PORTAL_URL,
    ) -> None:
        self.store = store
        self.mailer_factory = mailer_factory
        self.clock = clock
        self.concurrency = concurrency
        self.portal_url = portal_url

    async def _outstanding(self, member_id: str) -> list[Invoice]:
        return await self.store.list_invoices(
            member_id=member_id, statuses=OUTSTANDING_INVOICE_STATUSES,
        )

    async def _require_mailer(self) -> Mailer:
        mailer = self.mailer_factory(await self.store.get_settings())
        if mailer is None:
            raise MailerNotConfiguredError()
        return mailer

    async def _deliver(
        self,
        member: Member,
        invoices: Sequence[Invoice],
        mailer: Mailer,
        template: Optional[EmailTemplate],
        now: datetime,
        trigger: ReminderTrigger,
    ) -> bool:
        """Send one reminder and log the attempt.  Returns True when delivered."""
        total, any_overdue = outstanding_total(invoices)
        message = reminder_message(
            member, invoices, total, now, template=template, portal_url=self.portal_url,
        )

        error: Optional[str] = None
        try:
            await mailer.send(message)
        except MailSendError as exc:
            error = exc.reason
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"

        status = DeliveryStatus.FAILED if error else DeliveryStatus.DELIVERED
        await self.store.append_reminder(ReminderLogEntry(
            member_id=member.id,
            member_email=member.email,
            sent_at=now.isoformat(),
            reminder_type=ReminderType.OVERDUE if any_overdue else ReminderType.UPCOMING,
            amount=format_amount(total),
            invoice_count=len(invoices),
            status=status,
            trigger=trigger,
            error=error,
        ))

        if error:
            logger.warning("Reminder to %s (%s) failed: %s", member.id, member.email, error)
            return False
        logger.info(
            "Reminder sent to %s (%s): %s across %d invoice(s)",
            member.id, member.email, format_amount(total), len(invoices),
        )
        return True

    # ------------------------------------------------------------------
    # Scheduled check
    # ------------------------------------------------------------------

    async def check_and_send_reminders(self) -> ReminderRunResult:
        """Send interval-gated reminders to every Active member who owes."""
        settings = await self.store.get_settings()
        if not settings.automation_enabled:
            logger.info("Reminder check skipped: automation is disabled")
            return ReminderRunResult(disabled_reason=DISABLED_AUTOMATION)

        mailer = self.mailer_factory(settings)
        if mailer is None:
            logger.info("Reminder check skipped: email is not configured")
            return ReminderRunResult(disabled_reason=DISABLED_MAILER)

        now = self.clock()
        template = await self.store.get_template()
        result = ReminderRunResult()
        members = await self.store.list_members(status=MemberStatus.ACTIVE)

        async def _unit(member: Member) -> None:
            invoices = await self._outstanding(member.id)
            if not invoices:
                result.skipped += 1
                return
            last = await self.store.most_recent_reminder(member.id)
            if not reminder_due(last, now, settings.reminder_interval):
                logger.debug(
                    "Reminder to %s gated: last sent %s, interval %d day(s)",
                    member.id, last.sent_at, settings.reminder_interval,
                )
                result.skipped += 1
                return
            if await self._deliver(member, invoices, mailer, template, now, ReminderTrigger.SCHEDULED):
                result.sent += 1
            else:
                result.failed += 1

        result.errors = await for_each_member(
            members, _unit, "Reminder check", concurrency=self.concurrency,
        )
        logger.info(
            "Reminder check: %d sent, %d failed, %d skipped, %d errors",
            result.sent, result.failed, result.skipped, len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Admin sends
    # ------------------------------------------------------------------

    async def send_reminder_to(self, member_id: str) -> bool:
        """Send a reminder to one member now, ignoring the interval gate.

        Returns False when the member is unknown or owes nothing.
        Raises MailerNotConfiguredError when no mailer is configured.
        """
        mailer = await self._require_mailer()
        member = await self.store.get_member(member_id)
        if member is None:
            logger.warning("Manual reminder skipped: member %s not found", member_id)
            return False
        invoices = await self._outstanding(member_id)
        if not invoices:
            logger.info("Manual reminder skipped: member %s has nothing outstanding", member_id)
            return False
        template = await self.store.get_template()
        return await self._deliver(
            member, invoices, mailer, template, self.clock(), ReminderTrigger.MANUAL,
        )

    async def send_reminder_to_all_outstanding(self) -> ReminderRunResult:
        """Send a reminder to every Active member who owes, ignoring the gate."""
        mailer = await self._require_mailer()
        now = self.clock()
        template = await self.store.get_template()
        result = ReminderRunResult()
        members = await self.store.list_members(status=MemberStatus.ACTIVE)

        async def _unit(member: Member) -> None:
            invoices = await self._outstanding(member.id)
            if not invoices:
                result.skipped += 1
                return
            if await self._deliver(member, invoices, mailer, template, now, ReminderTrigger.MANUAL):
                result.sent += 1
            else:
                result.failed += 1

        result.errors = await for_each_member(
            members, _unit, "Manual reminders", concurrency=self.concurrency,
        )
        logger.info(
            "Manual reminders: %d sent, %d failed, %d skipped, %d errors",
            result.sent, result.failed, result.skipped, len(result.errors),
        )
        return result
