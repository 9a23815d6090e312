"""Subscription billing core: renewal invoices, balances, reminders, payments."""

__version__ = "0.1.0"
