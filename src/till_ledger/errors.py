"""Exception hierarchy shared by every Till Ledger layer."""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class InvalidInput(BusinessRuleViolation, ValueError):
    """Raised when a price, margin, quantity or other entry is malformed.

    The operation that raised it leaves any prior state unchanged.
    """


class InvalidRange(InvalidInput):
    """Raised when custom report bounds are missing or inverted."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced category, order, or cart line is unknown."""


class UpstreamFailure(BusinessRuleViolation):
    """Raised when a collaborator fetch fails while assembling a report."""


__all__ = [
    "BusinessRuleViolation",
    "InvalidInput",
    "InvalidRange",
    "MissingReferenceError",
    "UpstreamFailure",
]
