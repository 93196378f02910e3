"""Default loan policy: a weekly fraction of each user's open investment."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from .fees import LOAN_WEEKLY_RATE
from .metrics import compute_investment_value
from .models import BetState, ContractState, LoanPayout, PortfolioMetrics, UserState


def compute_loan_updates(
    users: Iterable[UserState],
    contracts_by_id: Mapping[str, ContractState],
    portfolio_by_user: Mapping[str, PortfolioMetrics],
    bets_by_user: Mapping[str, Sequence[BetState]],
    *,
    rate: float = LOAN_WEEKLY_RATE,
) -> list[LoanPayout]:
    payouts: list[LoanPayout] = []
    for user in users:
        portfolio = portfolio_by_user.get(user.id)
        if portfolio is not None:
            basis = portfolio.investment_value
        else:
            basis = compute_investment_value(bets_by_user.get(user.id, ()), contracts_by_id)
        payout = rate * basis
        if payout > 0:
            payouts.append(LoanPayout(user_id=user.id, payout=payout))
    return payouts


__all__ = ["compute_loan_updates"]
