"""Vault funding and automated repayment engine."""

__version__ = "1.0.0"
