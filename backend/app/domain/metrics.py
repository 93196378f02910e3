"""Pure aggregations used by the periodic metrics job."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta

from .mechanisms import mechanism_for
from .models import (
    BetState,
    ContractState,
    CreatorVolume,
    LeaderboardEntry,
    LoanPayout,
    MechanismKind,
    PortfolioMetrics,
    ProbChanges,
    ProfitMetrics,
    UserState,
)

DAY = timedelta(days=1)
WEEK = timedelta(days=7)
MONTH = timedelta(days=30)


def compute_volume(bets: Iterable[BetState], since: datetime) -> float:
    return sum(abs(bet.amount) for bet in bets if bet.created_time > since)


def sort_descending(bets: Iterable[BetState]) -> list[BetState]:
    return sorted(bets, key=lambda bet: bet.created_time, reverse=True)


def current_probability(contract: ContractState, descending_bets: Sequence[BetState]) -> float:
    """Latest traded probability, falling back to the pool price."""

    if descending_bets and descending_bets[0].prob_after is not None:
        return descending_bets[0].prob_after
    return mechanism_for(contract).probability(contract)


def calculate_prob_changes(descending_bets: Sequence[BetState], now: datetime) -> ProbChanges:
    if not descending_bets:
        return ProbChanges()
    current = descending_bets[0].prob_after
    if current is None:
        return ProbChanges()

    def change_since(cutoff: datetime) -> float:
        previous = _probability_at(descending_bets, cutoff)
        if previous is None:
            return 0.0
        return current - previous

    return ProbChanges(
        day=change_since(now - DAY),
        week=change_since(now - WEEK),
        month=change_since(now - MONTH),
    )


def calculate_creator_volume(user_contracts: Iterable[ContractState]) -> CreatorVolume:
    volume = CreatorVolume()
    for contract in user_contracts:
        volume.daily += contract.volume_24_hours
        volume.weekly += contract.volume_7_days
        volume.all_time += contract.volume
    return volume


def bet_market_value(contract: ContractState, bet: BetState) -> float:
    probability = mechanism_for(contract).probability(contract, bet.outcome)
    return probability * bet.shares


def compute_investment_value(
    bets: Iterable[BetState], contracts_by_id: Mapping[str, ContractState]
) -> float:
    """Market value of every open bet held in an unresolved contract."""

    value = 0.0
    for bet in bets:
        if not bet.is_open:
            continue
        contract = contracts_by_id.get(bet.contract_id)
        if contract is None or contract.is_resolved:
            continue
        value += bet_market_value(contract, bet)
    return value


def calculate_new_portfolio_metrics(
    user: UserState,
    contracts_by_id: Mapping[str, ContractState],
    bets: Iterable[BetState],
    now: datetime,
) -> PortfolioMetrics:
    return PortfolioMetrics(
        user_id=user.id,
        balance=user.balance,
        investment_value=compute_investment_value(bets, contracts_by_id),
        total_deposits=user.total_deposits,
        timestamp=now,
    )


def did_portfolio_change(last: PortfolioMetrics | None, new: PortfolioMetrics) -> bool:
    if last is None:
        return True
    return not (
        _same_amount(last.balance, new.balance)
        and _same_amount(last.total_deposits, new.total_deposits)
        and _same_amount(last.investment_value, new.investment_value)
    )


def calculate_total_profit(portfolio: PortfolioMetrics) -> float:
    return portfolio.investment_value + portfolio.balance - portfolio.total_deposits


def calculate_new_profit(
    history: Sequence[PortfolioMetrics], new_portfolio: PortfolioMetrics, now: datetime
) -> ProfitMetrics:
    """Profit over the trailing day, week, and month plus all time.

    A period whose start predates the loaded history is treated as covering
    the user's whole history, so it reports the all-time profit.
    """

    ascending = sorted(history, key=lambda snapshot: snapshot.timestamp)
    all_time = calculate_total_profit(new_portfolio)

    def profit_since(cutoff: datetime) -> float:
        starting = None
        for snapshot in reversed(ascending):
            if snapshot.timestamp < cutoff:
                starting = snapshot
                break
        if starting is None:
            return all_time
        return all_time - calculate_total_profit(starting)

    return ProfitMetrics(
        daily=profit_since(now - DAY),
        weekly=profit_since(now - WEEK),
        monthly=profit_since(now - MONTH),
        all_time=all_time,
    )


def merge_loan_updates(
    user_ids: Iterable[str], loan_payouts: Iterable[LoanPayout]
) -> dict[str, float]:
    by_user = {payout.user_id: payout.payout for payout in loan_payouts}
    return {user_id: by_user.get(user_id, 0.0) for user_id in user_ids}


def top_user_scores(scores: Mapping[str, float], limit: int = 50) -> list[LeaderboardEntry]:
    """Highest scores first; equal scores keep their insertion order."""

    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    return [LeaderboardEntry(user_id=user_id, score=score) for user_id, score in ranked[:limit]]


def is_cpmm(contract: ContractState) -> bool:
    return contract.mechanism == MechanismKind.CPMM.value


def _probability_at(descending_bets: Sequence[BetState], cutoff: datetime) -> float | None:
    for bet in descending_bets:
        if bet.created_time <= cutoff:
            return bet.prob_after
    return descending_bets[-1].prob_before


def _same_amount(left: float, right: float) -> bool:
    return math.isclose(left, right, rel_tol=0.0, abs_tol=1e-9)


__all__ = [
    "DAY",
    "MONTH",
    "WEEK",
    "bet_market_value",
    "calculate_creator_volume",
    "calculate_new_portfolio_metrics",
    "calculate_new_profit",
    "calculate_prob_changes",
    "calculate_total_profit",
    "compute_investment_value",
    "compute_volume",
    "current_probability",
    "did_portfolio_change",
    "is_cpmm",
    "merge_loan_updates",
    "sort_descending",
    "top_user_scores",
]
