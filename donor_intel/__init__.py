"""Donor intelligence engine: hybrid donor search, giving aggregates, lifecycle and PII redaction."""

__version__ = "0.1.0"
