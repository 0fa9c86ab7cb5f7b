"""API routers package."""

from kita_fees.routers import children, reconciliation, warnings

__all__ = ["children", "reconciliation", "warnings"]
