"""Pure payout calculations for resolved markets."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from .errors import InvariantViolation
from .fees import RESOLUTION_CREATOR_FEE_RATE
from .mechanisms import mechanism_for
from .models import BetState, ContractState, OutcomeType, Payout
from .outcomes import (
    AnswerOutcome,
    CancelOutcome,
    MarketOutcome,
    NoOutcome,
    Outcome,
    WeightedMarketOutcome,
    YesOutcome,
    parse_outcome,
)


def open_bets(bets: Iterable[BetState]) -> list[BetState]:
    """Bets still carrying open interest: neither sold nor a sale record."""

    return [bet for bet in bets if bet.is_open]


def bet_payout(outcome: Outcome, bet: BetState) -> float:
    if isinstance(outcome, CancelOutcome):
        return bet.amount
    if isinstance(outcome, YesOutcome):
        return bet.shares if bet.outcome == "YES" else 0.0
    if isinstance(outcome, NoOutcome):
        return bet.shares if bet.outcome == "NO" else 0.0
    if isinstance(outcome, MarketOutcome):
        if bet.outcome == "YES":
            return outcome.probability * bet.shares
        if bet.outcome == "NO":
            return (1 - outcome.probability) * bet.shares
        return 0.0
    if isinstance(outcome, AnswerOutcome):
        return bet.shares if bet.outcome == outcome.answer_id else 0.0
    if isinstance(outcome, WeightedMarketOutcome):
        return outcome.normalized_weights().get(bet.outcome, 0.0) * bet.shares
    raise InvariantViolation(f"Unsupported outcome {outcome!r}")


def compute_bet_payouts(outcome: Outcome, bets: Sequence[BetState]) -> list[Payout]:
    """One entry per bet, losers included with a zero payout."""

    return [Payout(user_id=bet.user_id, payout=bet_payout(outcome, bet)) for bet in bets]


def compute_creator_fee(
    outcome: Outcome,
    contract: ContractState,
    bettor_payouts: Sequence[Payout],
    rate: float = RESOLUTION_CREATOR_FEE_RATE,
) -> Payout | None:
    if isinstance(outcome, CancelOutcome):
        return None
    fee = rate * sum(payout.payout for payout in bettor_payouts)
    if fee <= 0:
        return None
    return Payout(user_id=contract.creator_id, payout=fee)


def compute_payouts(
    outcome: Outcome | str,
    contract: ContractState,
    bets: Sequence[BetState],
    resolution_probability: float | None = None,
    resolutions: Mapping[str, float] | None = None,
    *,
    creator_fee_rate: float = RESOLUTION_CREATOR_FEE_RATE,
) -> list[Payout]:
    """Compute what every open bet pays out under ``outcome``.

    ``outcome`` may be a parsed ``Outcome`` or the raw resolution string, in
    which case ``resolution_probability`` (in [0, 1]) and ``resolutions``
    supply the ``MKT`` parameters. The creator fee, when positive, is appended
    as an extra entry for the contract creator.
    """

    resolved = _coerce_outcome(outcome, contract, resolution_probability, resolutions)
    if not bets:
        return []
    payouts = compute_bet_payouts(resolved, bets)
    fee = compute_creator_fee(resolved, contract, payouts, creator_fee_rate)
    if fee is not None:
        payouts.append(fee)
    return payouts


def compute_liquidity_payouts(outcome: Outcome, contract: ContractState) -> list[Payout]:
    """Liquidity left in the pool, returned to its provider (the creator)."""

    return mechanism_for(contract).liquidity_payouts(outcome, contract)


def group_payouts_by_user(payouts: Iterable[Payout]) -> dict[str, float]:
    totals: dict[str, float] = {}
    for payout in payouts:
        totals[payout.user_id] = totals.get(payout.user_id, 0.0) + payout.payout
    return totals


def _coerce_outcome(
    outcome: Outcome | str,
    contract: ContractState,
    resolution_probability: float | None,
    resolutions: Mapping[str, float] | None,
) -> Outcome:
    if not isinstance(outcome, str):
        return outcome
    if outcome == "MKT" and contract.outcome_type == OutcomeType.BINARY.value:
        if resolution_probability is None:
            raise InvariantViolation("MKT resolution requires a probability")
        return MarketOutcome(probability=resolution_probability)
    return parse_outcome(
        contract.outcome_type,
        outcome,
        resolutions=resolutions,
        answers=contract.answers,
    )


__all__ = [
    "bet_payout",
    "compute_bet_payouts",
    "compute_creator_fee",
    "compute_liquidity_payouts",
    "compute_payouts",
    "group_payouts_by_user",
    "open_bets",
]
