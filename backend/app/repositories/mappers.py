"""Conversions between ORM rows and domain states."""

from __future__ import annotations

from datetime import datetime, timezone

from app.domain import BetState, ContractState, PortfolioMetrics, SaleRecord, UserState
from app.models import Bet, Contract, PortfolioSnapshot, User


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def contract_state(record: Contract) -> ContractState:
    return ContractState(
        id=record.id,
        creator_id=record.creator_id,
        outcome_type=record.outcome_type,
        mechanism=record.mechanism,
        pool={key: float(value) for key, value in (record.pool or {}).items()},
        total_shares={key: float(value) for key, value in (record.total_shares or {}).items()},
        total_bets={key: float(value) for key, value in (record.total_bets or {}).items()},
        total_liquidity=record.total_liquidity or 0.0,
        question=record.question,
        answers=list(record.answers) if record.answers is not None else None,
        created_time=as_utc(record.created_time),
        close_time=as_utc(record.close_time),
        is_resolved=bool(record.is_resolved),
        resolution=record.resolution,
        resolution_probability=record.resolution_probability,
        resolutions=dict(record.resolutions) if record.resolutions else None,
        resolution_time=as_utc(record.resolution_time),
        payouts_applied=bool(record.payouts_applied),
        volume=record.volume or 0.0,
        volume_24_hours=record.volume_24_hours or 0.0,
        volume_7_days=record.volume_7_days or 0.0,
        collected_fees=record.collected_fees or 0.0,
        prob=record.prob,
        prob_changes=dict(record.prob_changes) if record.prob_changes else None,
    )


def bet_state(record: Bet) -> BetState:
    sale = None
    if record.sale:
        sale = SaleRecord(amount=float(record.sale["amount"]), bet_id=str(record.sale["bet_id"]))
    return BetState(
        id=record.id,
        contract_id=record.contract_id,
        user_id=record.user_id,
        amount=record.amount,
        outcome=record.outcome,
        shares=record.shares,
        created_time=as_utc(record.created_time),
        prob_before=record.prob_before,
        prob_after=record.prob_after,
        is_sold=bool(record.is_sold),
        sale=sale,
        is_ante=bool(record.is_ante),
    )


def bet_record(state: BetState) -> Bet:
    return Bet(
        id=state.id,
        contract_id=state.contract_id,
        user_id=state.user_id,
        amount=state.amount,
        outcome=state.outcome,
        shares=state.shares,
        prob_before=state.prob_before,
        prob_after=state.prob_after,
        created_time=state.created_time,
        is_sold=state.is_sold,
        sale=state.sale.to_dict() if state.sale else None,
        is_ante=state.is_ante,
    )


def user_state(record: User) -> UserState:
    return UserState(
        id=record.id,
        balance=record.balance,
        total_deposits=record.total_deposits,
        name=record.name,
    )


def portfolio_metrics(record: PortfolioSnapshot) -> PortfolioMetrics:
    return PortfolioMetrics(
        user_id=record.user_id,
        balance=record.balance,
        investment_value=record.investment_value,
        total_deposits=record.total_deposits,
        timestamp=as_utc(record.timestamp),
    )


__all__ = [
    "as_utc",
    "bet_record",
    "bet_state",
    "contract_state",
    "portfolio_metrics",
    "user_state",
]
