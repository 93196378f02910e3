"""Error taxonomy shared by the calculators and orchestrators."""

from __future__ import annotations

from typing import Any


class MarketError(Exception):
    """Base class for market resolution and sale failures."""


class ValidationError(MarketError):
    """Caller supplied an invalid request; reported back without side effects."""


class ConflictError(MarketError):
    """A transaction kept conflicting with concurrent writers until retries ran out."""


class PartialFailureError(MarketError):
    """Some independent writes of a multi-step operation did not land."""

    def __init__(self, message: str, failures: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.failures = list(failures or [])


class InvariantViolation(MarketError):
    """Internal state is inconsistent; the operation must abort."""


__all__ = [
    "ConflictError",
    "InvariantViolation",
    "MarketError",
    "PartialFailureError",
    "ValidationError",
]
