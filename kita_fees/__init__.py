"""Payment reconciliation for childcare fees."""

__version__ = "0.1.0"
