"""
Message rendering for reminder and payment-outcome emails.

Reminder emails come from the admin-editable ``EmailTemplate`` (or the
built-in default) with ``{{placeholder}}`` substitution.  Payment approval
and rejection emails use fixed layouts.
"""

from __future__ import annotations

import html
import re
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from subscription_billing import config
from subscription_billing.mailer import MailMessage
from subscription_billing.models import (
    EmailTemplate,
    Invoice,
    InvoiceStatus,
    Member,
    Payment,
)

DATE_LABEL_FORMAT = "%d %b %Y"

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

_WRAPPER_OPEN = (
    '<div style="font-family: Arial, sans-serif; max-width: 600px; '
    'margin: 0 auto; padding: 20px;">'
)
_SIGNATURE = (
    "<p>Best regards,<br><strong>Finance Team</strong><br>"
    f"{html.escape(config.MAIL_FROM_NAME)}</p>"
)

DEFAULT_REMINDER_SUBJECT = "Payment Reminder - Outstanding Balance"

DEFAULT_REMINDER_HTML = _WRAPPER_OPEN + """
  <h2 style="color: #333; border-bottom: 2px solid #000; padding-bottom: 10px;">
    Payment Reminder - Outstanding Balance
  </h2>
  <p>Dear {{member_name}},</p>
  <p>This is a friendly reminder about your outstanding subscription payments.</p>
  <div style="background: #f5f5f5; padding: 15px; border-radius: 5px; margin: 20px 0;">
    <p><strong>Member ID:</strong> {{member_id}}</p>
    <p><strong>Email:</strong> {{member_email}}</p>
    <p><strong>Total Outstanding:</strong>
      <span style="color: #d32f2f; font-size: 18px; font-weight: bold;">${{total_due}}</span></p>
  </div>
  <h3 style="color: #333;">Outstanding Invoices ({{invoice_count}}):</h3>
  <ul style="list-style: none; padding: 0;">
    {{invoice_list}}
  </ul>
  <div style="background: #e3f2fd; padding: 15px; border-radius: 5px; margin: 20px 0;">
    <p><strong>Payment Methods Available:</strong></p>
    <ul>
      {{payment_methods}}
    </ul>
  </div>
  <p style="text-align: center; margin: 30px 0;">
    <a href="{{portal_link}}" style="background: #000; color: white; padding: 12px 24px;
       text-decoration: none; border-radius: 5px; display: inline-block;">Access Member Portal</a>
  </p>
  <p>Please settle your outstanding balance at your earliest convenience.</p>
""" + _SIGNATURE + "</div>"

PAYMENT_METHODS = (
    "FPS: Available in member portal",
    "PayMe: Available in member portal",
    "Bank Transfer: Available in member portal",
    "Credit Card: Pay instantly online",
)


def default_template() -> EmailTemplate:
    return EmailTemplate(subject=DEFAULT_REMINDER_SUBJECT, html_template=DEFAULT_REMINDER_HTML)


def render_template(template: str, values: dict[str, str]) -> str:
    """Replace ``{{name}}`` markers; unknown markers are left untouched."""
    def _sub(match: re.Match) -> str:
        key = match.group(1)
        return values[key] if key in values else match.group(0)
    return _PLACEHOLDER.sub(_sub, template)


def _invoice_list_html(invoices: Sequence[Invoice]) -> str:
    items = []
    for inv in invoices:
        color = "#d32f2f" if inv.status is InvoiceStatus.OVERDUE else "#f57c00"
        items.append(
            '<li style="margin-bottom: 10px;">'
            f"<strong>{html.escape(inv.period)}</strong>: {html.escape(inv.amount)} "
            f'<span style="color: #666;">(Due: {html.escape(inv.due)})</span> - '
            f'<strong style="color: {color}">{inv.status.value}</strong></li>'
        )
    return "\n".join(items)


def reminder_message(
    member: Member,
    invoices: Sequence[Invoice],
    total_due: Decimal,
    now: datetime,
    template: Optional[EmailTemplate] = None,
    portal_url: str = config.MEMBER_PORTAL_URL,
) -> MailMessage:
    """Build the reminder email for one member's outstanding invoices.

    The send date is appended to the subject so successive reminders never
    collapse into one mail thread.
    """
    template = template if template and template.html_template else default_template()
    total = f"{total_due.quantize(Decimal('0.01')):.2f}"

    values = {
        "member_name": html.escape(member.name),
        "member_id": html.escape(member.id),
        "member_email": html.escape(member.email),
        "total_due": total,
        "invoice_count": str(len(invoices)),
        "invoice_list": _invoice_list_html(invoices),
        "payment_methods": "\n".join(f"<li>{m}</li>" for m in PAYMENT_METHODS),
        "portal_link": html.escape(portal_url),
    }
    body = render_template(template.html_template, values)

    subject = render_template(template.subject or DEFAULT_REMINDER_SUBJECT, {
        "member_name": member.name,
        "total_due": total,
        "invoice_count": str(len(invoices)),
    })
    subject = f"{subject} - {now.strftime(DATE_LABEL_FORMAT)}"

    lines = [
        f"Dear {member.name},",
        "",
        "This is a friendly reminder about your outstanding subscription payments.",
        "",
        f"Member ID: {member.id}",
        f"Total Outstanding: ${total}",
        "",
        f"Outstanding Invoices ({len(invoices)}):",
    ]
    lines += [f"- {inv.period}: {inv.amount} (Due: {inv.due}) - {inv.status.value}" for inv in invoices]
    lines += [
        "",
        f"Access Member Portal: {portal_url}",
        "",
        "Please settle your outstanding balance at your earliest convenience.",
    ]

    return MailMessage(
        to=member.email,
        subject=subject,
        html=body,
        text="\n".join(lines),
        headers={"X-Entity-Ref-ID": f"{member.id}-{int(now.timestamp() * 1000)}"},
    )


# ---------------------------------------------------------------------------
# Payment outcome emails
# ---------------------------------------------------------------------------

def _payment_details(payment: Payment, invoice: Optional[Invoice]) -> str:
    invoice_id = invoice.id if invoice else payment.invoice_id
    period = invoice.period if invoice else payment.period
    amount = payment.amount or (invoice.amount if invoice else "$0")
    return (
        f"<p><strong>Invoice ID:</strong> {html.escape(invoice_id or 'N/A')}</p>"
        f"<p><strong>Period:</strong> {html.escape(period or 'N/A')}</p>"
        f"<p><strong>Amount:</strong> {html.escape(amount)}</p>"
        f"<p><strong>Payment Method:</strong> {html.escape(payment.method or 'N/A')}</p>"
    )


def payment_approved_message(
    payment: Payment,
    invoice: Optional[Invoice],
    portal_url: str = config.MEMBER_PORTAL_URL,
) -> MailMessage:
    name = html.escape(payment.member_name or "Member")
    body = (
        _WRAPPER_OPEN
        + "<h2>Payment Approved</h2>"
        + f"<p>Dear {name},</p>"
        + "<p>Your payment has been approved and processed successfully.</p>"
        + '<div style="background: #f5f5f5; padding: 15px; border-radius: 5px;">'
        + _payment_details(payment, invoice)
        + "</div>"
        + "<p>Your invoice has been marked as paid. Thank you for your payment!</p>"
        + f'<p><a href="{html.escape(portal_url)}">View Invoice</a></p>'
        + _SIGNATURE
        + "</div>"
    )
    return MailMessage(
        to=payment.member_email,
        subject=f"Payment Approved - {config.MAIL_FROM_NAME}",
        html=body,
    )


def payment_rejected_message(
    payment: Payment,
    invoice: Optional[Invoice],
    reason: str = "",
    portal_url: str = config.MEMBER_PORTAL_URL,
) -> MailMessage:
    name = html.escape(payment.member_name or "Member")
    reason_html = f"<p><strong>Reason:</strong> {html.escape(reason)}</p>" if reason else ""
    body = (
        _WRAPPER_OPEN
        + "<h2>Payment Rejected</h2>"
        + f"<p>Dear {name},</p>"
        + "<p>Unfortunately, your payment submission could not be approved at this time.</p>"
        + '<div style="background: #fff3cd; padding: 15px; border-radius: 5px;">'
        + _payment_details(payment, invoice)
        + reason_html
        + "</div>"
        + "<p>Please review your payment details and resubmit if necessary.</p>"
        + f'<p><a href="{html.escape(portal_url)}">Resubmit Payment</a></p>'
        + _SIGNATURE
        + "</div>"
    )
    return MailMessage(
        to=payment.member_email,
        subject=f"Payment Rejected - {config.MAIL_FROM_NAME}",
        html=body,
    )
