"""Default fee and loan rates; runtime values come from ``Settings``."""

RESOLUTION_CREATOR_FEE_RATE = 0.0
SALE_CREATOR_FEE_RATE = 0.04
LOAN_WEEKLY_RATE = 0.05

__all__ = [
    "LOAN_WEEKLY_RATE",
    "RESOLUTION_CREATOR_FEE_RATE",
    "SALE_CREATOR_FEE_RATE",
]
