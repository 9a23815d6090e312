"""Test reminders -- interval-gated reminder dispatch."""
from __future__ import annotations

from datetime import timedelta

import pytest

from subscription_billing.errors import MailerNotConfiguredError
from subscription_billing.models import (
    DeliveryStatus,
    EmailSettings,
    EmailTemplate,
    InvoiceStatus,
    MemberStatus,
    ReminderTrigger,
    ReminderType,
)
from subscription_billing.reminders import (
    DISABLED_AUTOMATION,
    DISABLED_MAILER,
    ReminderDispatcher,
    whole_days_between,
)


@pytest.fixture
def dispatcher(store, mailer_factory, clock):
    return ReminderDispatcher(store, mailer_factory=mailer_factory, clock=clock)


@pytest.fixture
def owing_member(make_member, make_invoice):
    """Factory: an Active member with one Unpaid $250 invoice."""
    async def _make(**kwargs):
        member = await make_member(**kwargs)
        await make_invoice(member, amount="$250")
        return member
    return _make


# ===================================================================
# Preconditions
# ===================================================================

class TestPreconditions:

    @pytest.mark.asyncio
    async def test_automation_disabled_is_noop(self, dispatcher, store, mailer, owing_member):
        await owing_member()
        await store.save_settings(EmailSettings(automation_enabled=False))

        result = await dispatcher.check_and_send_reminders()

        assert result.disabled_reason == DISABLED_AUTOMATION
        assert result.sent == 0
        assert mailer.sent == []
        assert await store.list_reminders() == []

    @pytest.mark.asyncio
    async def test_mailer_not_configured_is_noop(self, store, clock, owing_member):
        await owing_member()
        dispatcher = ReminderDispatcher(store, mailer_factory=lambda s: None, clock=clock)
        result = await dispatcher.check_and_send_reminders()
        assert result.disabled_reason == DISABLED_MAILER
        assert await store.list_reminders() == []


# ===================================================================
# Interval gate
# ===================================================================

class TestIntervalGate:

    @pytest.mark.asyncio
    async def test_first_reminder_sends(self, dispatcher, store, mailer, owing_member, clock):
        member = await owing_member()

        result = await dispatcher.check_and_send_reminders()

        assert result.sent == 1
        assert len(mailer.sent) == 1
        assert mailer.sent[0].to == member.email
        entry = await store.most_recent_reminder(member.id)
        assert entry.status is DeliveryStatus.DELIVERED
        assert entry.reminder_type is ReminderType.UPCOMING
        assert entry.amount == "$250.00"
        assert entry.invoice_count == 1
        assert entry.trigger is ReminderTrigger.SCHEDULED
        assert entry.sent_at == clock.now.isoformat()

    @pytest.mark.asyncio
    async def test_recent_reminder_gates(self, dispatcher, store, mailer, owing_member, log_reminder):
        member = await owing_member()
        await log_reminder(member, days_ago=3)

        result = await dispatcher.check_and_send_reminders()

        assert result.sent == 0
        assert result.skipped == 1
        assert mailer.sent == []
        assert len(await store.list_reminders(member_id=member.id)) == 1

    @pytest.mark.asyncio
    async def test_interval_elapsed_sends(self, dispatcher, mailer, owing_member, log_reminder):
        member = await owing_member()
        await log_reminder(member, days_ago=7)
        assert (await dispatcher.check_and_send_reminders()).sent == 1

    @pytest.mark.asyncio
    async def test_partial_day_rounds_down(self, dispatcher, mailer, owing_member, log_reminder):
        member = await owing_member()
        await log_reminder(member, days_ago=6.99)
        assert (await dispatcher.check_and_send_reminders()).sent == 0

    @pytest.mark.asyncio
    async def test_custom_interval(self, dispatcher, store, owing_member, log_reminder):
        member = await owing_member()
        await store.save_settings(EmailSettings(reminder_interval=1))
        await log_reminder(member, days_ago=1)
        assert (await dispatcher.check_and_send_reminders()).sent == 1

    @pytest.mark.asyncio
    async def test_back_to_back_runs_send_once(self, dispatcher, mailer, owing_member):
        await owing_member()
        await dispatcher.check_and_send_reminders()
        second = await dispatcher.check_and_send_reminders()
        assert second.sent == 0
        assert len(mailer.sent) == 1

    @pytest.mark.asyncio
    async def test_manual_reminder_also_gates(self, dispatcher, mailer, owing_member):
        member = await owing_member()
        await dispatcher.send_reminder_to(member.id)
        assert (await dispatcher.check_and_send_reminders()).sent == 0

    def test_whole_days_between(self, clock):
        later = clock.now
        assert whole_days_between(later - timedelta(days=3, hours=23), later) == 3
        assert whole_days_between(later - timedelta(days=7), later) == 7
        assert whole_days_between(later + timedelta(hours=1), later) == -1


# ===================================================================
# Selection and outcomes
# ===================================================================

class TestSelection:

    @pytest.mark.asyncio
    async def test_overdue_type_and_total(self, dispatcher, store, make_member, make_invoice):
        member = await make_member()
        await make_invoice(member, amount="$100", status=InvoiceStatus.OVERDUE)
        await make_invoice(member, amount="$50", status=InvoiceStatus.UNPAID)
        await make_invoice(member, amount="$250", status=InvoiceStatus.PAID)

        await dispatcher.check_and_send_reminders()

        entry = await store.most_recent_reminder(member.id)
        assert entry.reminder_type is ReminderType.OVERDUE
        assert entry.amount == "$150.00"
        assert entry.invoice_count == 2

    @pytest.mark.asyncio
    async def test_pending_verification_not_reminded(self, dispatcher, mailer, make_member, make_invoice):
        member = await make_member()
        await make_invoice(member, status=InvoiceStatus.PENDING_VERIFICATION)
        result = await dispatcher.check_and_send_reminders()
        assert result.sent == 0
        assert result.skipped == 1
        assert mailer.sent == []

    @pytest.mark.asyncio
    async def test_skipped_counts_match_across_paths(self, dispatcher, make_member, owing_member):
        await make_member()
        await owing_member()
        scheduled = await dispatcher.check_and_send_reminders()
        manual = await dispatcher.send_reminder_to_all_outstanding()
        assert (scheduled.sent, scheduled.skipped) == (1, 1)
        assert (manual.sent, manual.skipped) == (1, 1)

    @pytest.mark.asyncio
    async def test_inactive_members_ignored(self, dispatcher, mailer, owing_member):
        await owing_member(status=MemberStatus.INACTIVE)
        assert (await dispatcher.check_and_send_reminders()).sent == 0

    @pytest.mark.asyncio
    async def test_failed_send_is_logged_and_gates(self, dispatcher, store, mailer, owing_member, clock):
        failing = await owing_member()
        healthy = await owing_member()
        mailer.fail_for.add(failing.email)

        result = await dispatcher.check_and_send_reminders()

        assert result.sent == 1
        assert result.failed == 1
        entry = await store.most_recent_reminder(failing.id)
        assert entry.status is DeliveryStatus.FAILED
        assert entry.error == "mailbox unavailable"
        assert [m.to for m in mailer.sent] == [healthy.email]

        mailer.fail_for.clear()
        clock.advance(days=1)
        assert (await dispatcher.check_and_send_reminders()).sent == 0

    @pytest.mark.asyncio
    async def test_unexpected_mailer_error_is_failed_attempt(self, store, clock, owing_member):
        member = await owing_member()

        class Broken:
            async def send(self, message):
                raise RuntimeError("boom")

        dispatcher = ReminderDispatcher(store, mailer_factory=lambda s: Broken(), clock=clock)
        result = await dispatcher.check_and_send_reminders()
        assert result.failed == 1
        assert (await store.most_recent_reminder(member.id)).error == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_message_content(self, dispatcher, store, mailer, owing_member):
        member = await owing_member(name="Aisha <Khan>")
        await store.save_template(EmailTemplate(
            subject="Dues for {{member_name}}: ${{total_due}}",
            html_template="<p>{{member_name}} owes ${{total_due}} on {{invoice_count}} invoice(s)</p>",
        ))

        await dispatcher.send_reminder_to(member.id)

        message = mailer.sent[0]
        assert message.subject == "Dues for Aisha <Khan>: $250.00 - 19 Oct 2026"
        assert "Aisha &lt;Khan&gt; owes $250.00 on 1 invoice(s)" in message.html
        assert "Total Outstanding: $250.00" in message.text


# ===================================================================
# Admin sends
# ===================================================================

class TestAdminSends:

    @pytest.mark.asyncio
    async def test_send_to_bypasses_gate_and_automation(self, dispatcher, store, mailer, owing_member, log_reminder):
        member = await owing_member()
        await log_reminder(member, days_ago=1)
        await store.save_settings(EmailSettings(automation_enabled=False))

        assert await dispatcher.send_reminder_to(member.id) is True

        entry = await store.most_recent_reminder(member.id)
        assert entry.trigger is ReminderTrigger.MANUAL
        assert len(mailer.sent) == 1

    @pytest.mark.asyncio
    async def test_send_to_unknown_member(self, dispatcher):
        assert await dispatcher.send_reminder_to("ghost") is False

    @pytest.mark.asyncio
    async def test_send_to_member_with_nothing_due(self, dispatcher, store, make_member):
        member = await make_member()
        assert await dispatcher.send_reminder_to(member.id) is False
        assert await store.list_reminders() == []

    @pytest.mark.asyncio
    async def test_send_to_requires_mailer(self, store, clock, owing_member):
        member = await owing_member()
        dispatcher = ReminderDispatcher(store, mailer_factory=lambda s: None, clock=clock)
        with pytest.raises(MailerNotConfiguredError):
            await dispatcher.send_reminder_to(member.id)
        with pytest.raises(MailerNotConfiguredError):
            await dispatcher.send_reminder_to_all_outstanding()

    @pytest.mark.asyncio
    async def test_send_to_all_outstanding(self, dispatcher, store, mailer, owing_member, make_member, log_reminder):
        gated = await owing_member()
        await log_reminder(gated, days_ago=1)
        await owing_member()
        await make_member()

        result = await dispatcher.send_reminder_to_all_outstanding()

        assert result.sent == 2
        assert result.skipped == 1
        assert result.failed == 0
        assert len(await store.list_reminders()) == 3
