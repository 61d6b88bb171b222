"""Stripe payment reconciliation and patient matching for PayRecon."""

__version__ = "0.4.0"
