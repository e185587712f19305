"""LedgerLink: provider credential lifecycle and billing event reconciliation."""

__version__ = "0.1.0"
