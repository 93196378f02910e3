"""Pure market resolution, sale, and metrics logic."""

from .errors import (
    ConflictError,
    InvariantViolation,
    MarketError,
    PartialFailureError,
    ValidationError,
)
from .models import (
    BetState,
    ContractState,
    CreatorVolume,
    LeaderboardEntry,
    LedgerReason,
    LoanPayout,
    MechanismKind,
    OutcomeType,
    Payout,
    PortfolioMetrics,
    ProbChanges,
    ProfitMetrics,
    SaleRecord,
    SaleResult,
    UserState,
)
from .outcomes import (
    AnswerOutcome,
    CancelOutcome,
    MarketOutcome,
    NoOutcome,
    Outcome,
    WeightedMarketOutcome,
    YesOutcome,
    parse_outcome,
    restore_outcome,
)

__all__ = [
    "AnswerOutcome",
    "BetState",
    "CancelOutcome",
    "ConflictError",
    "ContractState",
    "CreatorVolume",
    "InvariantViolation",
    "LeaderboardEntry",
    "LedgerReason",
    "LoanPayout",
    "MarketError",
    "MarketOutcome",
    "MechanismKind",
    "NoOutcome",
    "Outcome",
    "OutcomeType",
    "PartialFailureError",
    "Payout",
    "PortfolioMetrics",
    "ProbChanges",
    "ProfitMetrics",
    "SaleRecord",
    "SaleResult",
    "UserState",
    "ValidationError",
    "WeightedMarketOutcome",
    "YesOutcome",
    "parse_outcome",
    "restore_outcome",
]
