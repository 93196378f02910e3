"""Default leaderboard scorers for group contracts."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from .metrics import bet_market_value
from .models import BetState, ContractState
from .outcomes import restore_outcome
from .payouts import bet_payout


def score_creators(contracts: Iterable[ContractState | None]) -> dict[str, float]:
    scores: dict[str, float] = {}
    for contract in contracts:
        if contract is None:
            continue
        scores[contract.creator_id] = scores.get(contract.creator_id, 0.0) + contract.volume
    return scores


def score_users_by_contract(contract: ContractState, bets: Iterable[BetState]) -> dict[str, float]:
    """Profit per user on one contract: realized for resolved markets, marked to market otherwise."""

    outcome = restore_outcome(contract) if contract.is_resolved and contract.resolution else None
    scores: dict[str, float] = {}
    for bet in bets:
        if not bet.is_open:
            value = 0.0
        elif outcome is not None:
            value = bet_payout(outcome, bet)
        else:
            value = bet_market_value(contract, bet)
        # sale records carry the liquidation value as a negative stake
        scores[bet.user_id] = scores.get(bet.user_id, 0.0) + value - bet.amount
    return scores


def score_traders(
    contracts: Sequence[ContractState | None], bets: Sequence[Sequence[BetState]]
) -> dict[str, float]:
    """Sum per-contract trader profit; ``bets[i]`` holds the bets of ``contracts[i]``."""

    scores: dict[str, float] = {}
    for contract, contract_bets in zip(contracts, bets):
        if contract is None:
            continue
        for user_id, score in score_users_by_contract(contract, contract_bets).items():
            scores[user_id] = scores.get(user_id, 0.0) + score
    return scores


__all__ = ["score_creators", "score_traders", "score_users_by_contract"]
