"""Test emails -- template rendering and outcome messages."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from subscription_billing.emails import (
    DEFAULT_REMINDER_SUBJECT,
    payment_approved_message,
    payment_rejected_message,
    reminder_message,
    render_template,
)
from subscription_billing.models import (
    EmailTemplate,
    Invoice,
    InvoiceStatus,
    Member,
    Payment,
)

NOW = datetime(2026, 10, 19, 6, 30, tzinfo=timezone.utc)


def _member() -> Member:
    return Member(id="HK0042", name="Omar Farooq", email="omar@example.com")


def _invoices() -> list[Invoice]:
    return [
        Invoice(id="INV-2025-AAA111", member_id="HK0042", period="Oct 2025 Lifetime Subscription",
                amount="$250", status=InvoiceStatus.OVERDUE, due="19 Oct 2026"),
        Invoice(id="INV-2026-BBB222", member_id="HK0042", period="Oct 2026 Lifetime Subscription",
                amount="$250", status=InvoiceStatus.UNPAID, due="19 Oct 2027"),
    ]


@pytest.mark.unit
class TestRenderTemplate:

    def test_replaces_known_markers(self):
        assert render_template("Hi {{ member_name }}!", {"member_name": "Omar"}) == "Hi Omar!"

    def test_unknown_markers_left_alone(self):
        assert render_template("{{mystery}}", {}) == "{{mystery}}"

    def test_repeated_markers(self):
        assert render_template("{{a}}-{{a}}", {"a": "x"}) == "x-x"


@pytest.mark.unit
class TestReminderMessage:

    def test_default_template(self):
        message = reminder_message(_member(), _invoices(), Decimal("500"), NOW)
        assert message.to == "omar@example.com"
        assert message.subject == f"{DEFAULT_REMINDER_SUBJECT} - 19 Oct 2026"
        assert "$500.00" in message.html
        assert "Outstanding Invoices (2)" in message.html
        assert "Oct 2025 Lifetime Subscription" in message.html
        assert "{{" not in message.html
        assert message.headers["X-Entity-Ref-ID"].startswith("HK0042-")

    def test_plain_text_lists_invoices(self):
        message = reminder_message(_member(), _invoices(), Decimal("500"), NOW)
        assert "- Oct 2025 Lifetime Subscription: $250 (Due: 19 Oct 2026) - Overdue" in message.text

    def test_empty_stored_template_falls_back(self):
        message = reminder_message(
            _member(), _invoices(), Decimal("500"), NOW,
            template=EmailTemplate(subject="x", html_template=""),
        )
        assert "Payment Reminder - Outstanding Balance" in message.html

    def test_portal_link(self):
        message = reminder_message(
            _member(), _invoices(), Decimal("500"), NOW, portal_url="https://portal.example.org/member",
        )
        assert 'href="https://portal.example.org/member"' in message.html


@pytest.mark.unit
class TestOutcomeMessages:

    def _payment(self) -> Payment:
        return Payment(invoice_id="INV-2026-BBB222", member_name="Omar Farooq",
                       member_email="omar@example.com", amount="$250", method="PayMe")

    def test_approved(self):
        message = payment_approved_message(self._payment(), _invoices()[1])
        assert message.to == "omar@example.com"
        assert message.subject.startswith("Payment Approved")
        assert "INV-2026-BBB222" in message.html
        assert "PayMe" in message.html

    def test_rejected_with_reason(self):
        message = payment_rejected_message(self._payment(), None, "blurry <screenshot>")
        assert message.subject.startswith("Payment Rejected")
        assert "blurry &lt;screenshot&gt;" in message.html

    def test_rejected_without_reason(self):
        message = payment_rejected_message(self._payment(), None)
        assert "Reason:" not in message.html
