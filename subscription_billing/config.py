"""
Runtime configuration for the subscription billing core.

Every value here is an environment-driven default.  Settings an admin can
change at runtime (schedule time, automation flag, reminder interval, mail
credentials) are persisted in the store as ``EmailSettings`` and take
precedence over these defaults once saved.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent.parent
BILLING_DATA_DIR = Path(os.environ.get("BILLING_DATA_DIR", str(BASE_DIR / "data" / "billing")))

# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

# All schedule times are interpreted in this zone, regardless of host zone.
BILLING_TIMEZONE = os.environ.get("BILLING_TIMEZONE", "Asia/Kolkata")

# Invoice generation runs ahead of the reminder check so that invoices
# created today are picked up by today's reminders.
INVOICE_JOB_TIME = os.environ.get("INVOICE_JOB_TIME", "02:00")

DEFAULT_SCHEDULE_TIME = os.environ.get("DEFAULT_SCHEDULE_TIME", "09:00")
DEFAULT_REMINDER_INTERVAL = int(os.environ.get("DEFAULT_REMINDER_INTERVAL", "7"))

# Maximum members processed concurrently inside one batch run
MEMBER_CONCURRENCY = int(os.environ.get("MEMBER_CONCURRENCY", "5"))

# ---------------------------------------------------------------------------
# Billing rules
# ---------------------------------------------------------------------------

BILLING_PERIOD_DAYS = 365

# ---------------------------------------------------------------------------
# Mail
# ---------------------------------------------------------------------------

EMAIL_SERVICE = os.environ.get("EMAIL_SERVICE", "gmail")
EMAIL_USER = os.environ.get("EMAIL_USER", "")
EMAIL_PASSWORD = os.environ.get("EMAIL_PASSWORD", "")
SMTP_HOST = os.environ.get("SMTP_HOST", "")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
MAIL_WEBHOOK_URL = os.environ.get("MAIL_WEBHOOK_URL", "")
MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "Subscription Manager HK")
MEMBER_PORTAL_URL = os.environ.get("MEMBER_PORTAL_URL", "http://localhost:5173/member")

# Well-known SMTP endpoints keyed by service name
SMTP_SERVICES: dict[str, tuple[str, int]] = {
    "gmail": ("smtp.gmail.com", 587),
    "outlook": ("smtp.office365.com", 587),
    "yahoo": ("smtp.mail.yahoo.com", 587),
    "zoho": ("smtp.zoho.com", 587),
}

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

BILLING_LOG_LEVEL = os.environ.get("BILLING_LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def setup_logging(level: str | int | None = None) -> None:
    """Configure root logging for CLI and daemon use."""
    if level is None:
        level = BILLING_LOG_LEVEL
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
