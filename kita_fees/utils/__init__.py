"""Utility functions and helpers."""

from .exceptions import (
    raise_bad_request,
    raise_conflict,
    raise_for_domain_error,
    raise_not_found,
)

__all__ = [
    "raise_bad_request",
    "raise_conflict",
    "raise_for_domain_error",
    "raise_not_found",
]
