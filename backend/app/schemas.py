from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class OperationResult(BaseModel):
    """Outcome of a resolution or sale request."""

    status: Literal["success", "error"]
    message: str | None = None
    error_type: Literal["validation", "conflict", "partial_failure"] | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    failures: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def success(cls, message: str | None = None, **data: Any) -> "OperationResult":
        return cls(status="success", message=message, data=data)

    @classmethod
    def error(
        cls,
        message: str,
        *,
        error_type: Literal["validation", "conflict", "partial_failure"] = "validation",
        failures: list[dict[str, Any]] | None = None,
        **data: Any,
    ) -> "OperationResult":
        return cls(
            status="error",
            message=message,
            error_type=error_type,
            data=data,
            failures=failures or [],
        )


class ResolveMarketRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    outcome: str = Field(..., min_length=1)
    probability_int: float | None = Field(
        default=None, description="0-100 probability used by binary MKT resolutions"
    )
    resolutions: dict[str, float] | None = Field(
        default=None, description="Answer weights used by free-response MKT resolutions"
    )


class SellBetRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class SaleInfo(BaseModel):
    amount: float
    bet_id: str


class Bet(BaseModel):
    id: str
    contract_id: str
    user_id: str
    amount: float
    outcome: str
    shares: float
    prob_before: float | None = None
    prob_after: float | None = None
    created_time: datetime
    is_sold: bool = False
    sale: SaleInfo | None = None
    is_ante: bool = False

    model_config = {"from_attributes": True}


class Contract(BaseModel):
    id: str
    creator_id: str
    question: str
    outcome_type: str
    mechanism: str
    answers: list[str] | None = None
    pool: dict[str, float] = Field(default_factory=dict)
    total_shares: dict[str, float] = Field(default_factory=dict)
    total_bets: dict[str, float] = Field(default_factory=dict)
    total_liquidity: float = 0.0
    created_time: datetime
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

    model_config = {"from_attributes": True}

    @field_validator("pool", "total_shares", "total_bets", mode="before")
    @classmethod
    def _coerce_mapping(cls, value: Any) -> dict[str, float]:
        if value is None:
            return {}
        return {str(key): float(amount) for key, amount in dict(value).items()}


class ContractWithBets(Contract):
    bets: list[Bet] = Field(default_factory=list)


class User(BaseModel):
    id: str
    name: str | None = None
    balance: float
    total_deposits: float
    creator_volume_cached: dict[str, float] | None = None
    profit_cached: dict[str, float] | None = None
    next_loan_cached: float = 0.0
    created_time: datetime

    model_config = {"from_attributes": True}


class PortfolioPoint(BaseModel):
    balance: float
    investment_value: float
    total_deposits: float
    timestamp: datetime

    model_config = {"from_attributes": True}


class Portfolio(BaseModel):
    user_id: str
    history: list[PortfolioPoint] = Field(default_factory=list)
