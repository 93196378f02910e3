"""Typed domain representations shared by calculators, orchestrators, and jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class OutcomeType(str, Enum):
    BINARY = "BINARY"
    FREE_RESPONSE = "FREE_RESPONSE"


class MechanismKind(str, Enum):
    CPMM = "cpmm-1"
    DPM = "dpm-2"


class LedgerReason(str, Enum):
    PAYOUT = "payout"
    CREATOR_FEE = "creator_fee"
    LIQUIDITY = "liquidity"
    SALE = "sale"


@dataclass(slots=True)
class SaleRecord:
    """Link from a synthetic sale bet back to the bet it liquidated."""

    amount: float
    bet_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"amount": self.amount, "bet_id": self.bet_id}


@dataclass(slots=True)
class ContractState:
    """Snapshot of a market as seen by the pure calculators."""

    id: str
    creator_id: str
    outcome_type: str
    mechanism: str
    pool: dict[str, float] = field(default_factory=dict)
    total_shares: dict[str, float] = field(default_factory=dict)
    total_bets: dict[str, float] = field(default_factory=dict)
    total_liquidity: float = 0.0
    question: str = ""
    answers: list[str] | None = None
    created_time: datetime | None = None
    close_time: datetime | None = None
    is_resolved: bool = False
    resolution: str | None = None
    resolution_probability: float | None = None
    resolutions: dict[str, float] | None = None
    resolution_time: datetime | None = None
    payouts_applied: bool = False
    volume: float = 0.0
    volume_24_hours: float = 0.0
    volume_7_days: float = 0.0
    collected_fees: float = 0.0
    prob: float | None = None
    prob_changes: dict[str, float] | None = None


@dataclass(slots=True)
class BetState:
    """A single bet, including synthetic sale bets with negative amounts."""

    id: str
    contract_id: str
    user_id: str
    amount: float
    outcome: str
    shares: float
    created_time: datetime
    prob_before: float | None = None
    prob_after: float | None = None
    is_sold: bool = False
    sale: SaleRecord | None = None
    is_ante: bool = False

    @property
    def is_open(self) -> bool:
        return not self.is_sold and self.sale is None


@dataclass(slots=True)
class UserState:
    id: str
    balance: float
    total_deposits: float = 0.0
    name: str | None = None


@dataclass(slots=True)
class Payout:
    user_id: str
    payout: float


@dataclass(slots=True)
class LoanPayout:
    user_id: str
    payout: float


@dataclass(slots=True)
class PortfolioMetrics:
    """Point-in-time portfolio valuation stored in the sparse history."""

    user_id: str
    balance: float
    investment_value: float
    total_deposits: float
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "balance": self.balance,
            "investment_value": self.investment_value,
            "total_deposits": self.total_deposits,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class ProbChanges:
    day: float = 0.0
    week: float = 0.0
    month: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"day": self.day, "week": self.week, "month": self.month}


@dataclass(slots=True)
class CreatorVolume:
    daily: float = 0.0
    weekly: float = 0.0
    all_time: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"daily": self.daily, "weekly": self.weekly, "all_time": self.all_time}


@dataclass(slots=True)
class ProfitMetrics:
    daily: float = 0.0
    weekly: float = 0.0
    monthly: float = 0.0
    all_time: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "daily": self.daily,
            "weekly": self.weekly,
            "monthly": self.monthly,
            "all_time": self.all_time,
        }


@dataclass(slots=True)
class LeaderboardEntry:
    user_id: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "score": self.score}


@dataclass(slots=True)
class SaleResult:
    """Everything a sale transaction has to persist, computed up front."""

    new_bet: BetState
    new_pool: dict[str, float]
    new_total_shares: dict[str, float] | None
    new_total_bets: dict[str, float] | None
    new_balance: float
    creator_fee: float

    @property
    def proceeds(self) -> float:
        return self.new_bet.sale.amount if self.new_bet.sale else 0.0
