"""Market-maker mechanisms: pricing, liquidation, and leftover liquidity.

Two mechanisms are supported. ``cpmm-1`` is a constant-product market maker
over a binary YES/NO pool where ``pool.YES * pool.NO`` stays fixed across a
trade. ``dpm-2`` is a dynamic parimutuel market whose cost function is the
Euclidean norm of the outstanding share vector.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Protocol

from .errors import InvariantViolation, ValidationError
from .models import BetState, ContractState, MechanismKind, OutcomeType, Payout, SaleRecord, SaleResult, UserState
from .outcomes import CancelOutcome, MarketOutcome, NoOutcome, Outcome, YesOutcome

_EPSILON = 1e-9


class Mechanism(Protocol):
    kind: str

    def probability(self, contract: ContractState, outcome: str = "YES") -> float:
        ...

    def sell(
        self,
        user: UserState,
        bet: BetState,
        contract: ContractState,
        new_bet_id: str,
        *,
        fee_rate: float,
        now: datetime,
    ) -> SaleResult:
        ...

    def liquidity_payouts(self, outcome: Outcome, contract: ContractState) -> list[Payout]:
        ...


class CpmmMechanism:
    kind = MechanismKind.CPMM.value

    def probability(self, contract: ContractState, outcome: str = "YES") -> float:
        yes, no = _binary_pool(contract)
        return _cpmm_outcome_probability(yes, no, outcome)

    def sell(
        self,
        user: UserState,
        bet: BetState,
        contract: ContractState,
        new_bet_id: str,
        *,
        fee_rate: float,
        now: datetime,
    ) -> SaleResult:
        if bet.outcome not in ("YES", "NO"):
            raise InvariantViolation(f"Bet {bet.id} has non-binary outcome {bet.outcome}")
        shares = abs(bet.shares)
        if shares <= 0:
            raise ValidationError("Cannot sell non-positive shares")

        yes, no = _binary_pool(contract)
        value = cpmm_sale_value(yes, no, shares, bet.outcome)
        if bet.outcome == "YES":
            new_yes, new_no = yes + shares - value, no - value
        else:
            new_yes, new_no = yes - value, no + shares - value
        if new_yes < -_EPSILON or new_no < -_EPSILON:
            raise InvariantViolation(f"Sale of bet {bet.id} would leave negative pool liquidity")
        new_yes, new_no = max(new_yes, 0.0), max(new_no, 0.0)

        creator_fee = fee_rate * max(0.0, value - bet.amount)
        proceeds = value - creator_fee
        new_bet = BetState(
            id=new_bet_id,
            contract_id=contract.id,
            user_id=user.id,
            amount=-value,
            outcome=bet.outcome,
            shares=-shares,
            created_time=now,
            prob_before=_cpmm_outcome_probability(yes, no, "YES"),
            prob_after=_cpmm_outcome_probability(new_yes, new_no, "YES"),
            sale=SaleRecord(amount=proceeds, bet_id=bet.id),
        )
        return SaleResult(
            new_bet=new_bet,
            new_pool={"YES": new_yes, "NO": new_no},
            new_total_shares=None,
            new_total_bets=None,
            new_balance=user.balance + proceeds,
            creator_fee=creator_fee,
        )

    def liquidity_payouts(self, outcome: Outcome, contract: ContractState) -> list[Payout]:
        yes, no = _binary_pool(contract)
        if isinstance(outcome, YesOutcome):
            amount = yes
        elif isinstance(outcome, NoOutcome):
            amount = no
        elif isinstance(outcome, MarketOutcome):
            amount = outcome.probability * yes + (1 - outcome.probability) * no
        elif isinstance(outcome, CancelOutcome):
            amount = contract.total_liquidity
        else:
            raise InvariantViolation(f"Outcome {outcome.resolution} is not valid for a cpmm market")
        if amount <= 0:
            return []
        return [Payout(user_id=contract.creator_id, payout=amount)]


class DpmMechanism:
    kind = MechanismKind.DPM.value

    def probability(self, contract: ContractState, outcome: str = "YES") -> float:
        return _dpm_probability(contract.total_shares, outcome)

    def sell(
        self,
        user: UserState,
        bet: BetState,
        contract: ContractState,
        new_bet_id: str,
        *,
        fee_rate: float,
        now: datetime,
    ) -> SaleResult:
        outcome = bet.outcome
        shares = bet.shares
        if shares <= 0:
            raise ValidationError("Cannot sell non-positive shares")

        total_shares = {key: float(value) for key, value in contract.total_shares.items()}
        pool = {key: float(value) for key, value in contract.pool.items()}
        total_bets = {key: float(value) for key, value in contract.total_bets.items()}

        new_total_shares = dict(total_shares)
        new_total_shares[outcome] = total_shares.get(outcome, 0.0) - shares
        if new_total_shares[outcome] < -_EPSILON:
            raise InvariantViolation(f"Sale of bet {bet.id} would leave negative total shares")
        new_total_shares[outcome] = max(new_total_shares[outcome], 0.0)

        cost_before = _dpm_cost(total_shares)
        cost_after = _dpm_cost(new_total_shares)
        share_value = cost_before - cost_after
        pool_total = sum(pool.values())
        scale = min(1.0, pool_total / cost_before) if cost_before > 0 else 0.0
        adjusted = share_value * scale

        new_pool = dict(pool)
        new_pool[outcome] = pool.get(outcome, 0.0) - adjusted
        if new_pool[outcome] < -_EPSILON:
            raise InvariantViolation(f"Sale of bet {bet.id} would leave negative pool liquidity")
        new_pool[outcome] = max(new_pool[outcome], 0.0)

        new_total_bets = dict(total_bets)
        new_total_bets[outcome] = total_bets.get(outcome, 0.0) - bet.amount

        creator_fee = fee_rate * max(0.0, adjusted - bet.amount)
        proceeds = adjusted - creator_fee
        new_bet = BetState(
            id=new_bet_id,
            contract_id=contract.id,
            user_id=user.id,
            amount=-adjusted,
            outcome=outcome,
            shares=-shares,
            created_time=now,
            prob_before=_dpm_probability(total_shares, outcome),
            prob_after=_dpm_probability(new_total_shares, outcome),
            sale=SaleRecord(amount=proceeds, bet_id=bet.id),
        )
        return SaleResult(
            new_bet=new_bet,
            new_pool=new_pool,
            new_total_shares=new_total_shares,
            new_total_bets=new_total_bets,
            new_balance=user.balance + proceeds,
            creator_fee=creator_fee,
        )

    def liquidity_payouts(self, outcome: Outcome, contract: ContractState) -> list[Payout]:
        return []


_MECHANISMS: dict[str, Mechanism] = {
    MechanismKind.CPMM.value: CpmmMechanism(),
    MechanismKind.DPM.value: DpmMechanism(),
}


def mechanism_for(contract: ContractState) -> Mechanism:
    mechanism = _MECHANISMS.get(contract.mechanism)
    if mechanism is None:
        raise InvariantViolation(f"Unknown mechanism {contract.mechanism!r} on contract {contract.id}")
    if mechanism.kind == MechanismKind.CPMM.value and contract.outcome_type != OutcomeType.BINARY.value:
        raise InvariantViolation(f"cpmm contract {contract.id} must be binary")
    return mechanism


def cpmm_sale_value(yes: float, no: float, shares: float, outcome: str) -> float:
    """Mana returned for ``shares`` of ``outcome`` keeping ``yes * no`` constant.

    Solves ``(y + s - v)(n - v) = y * n`` for YES (symmetrically for NO),
    taking the smaller root in its cancellation-free form.
    """

    opposite = no if outcome == "YES" else yes
    b = yes + no + shares
    discriminant = b * b - 4 * shares * opposite
    if discriminant < 0:
        raise InvariantViolation("cpmm pool has no real sale value")
    denominator = b + math.sqrt(discriminant)
    if denominator <= 0:
        return 0.0
    return 2 * shares * opposite / denominator


def _binary_pool(contract: ContractState) -> tuple[float, float]:
    try:
        yes = float(contract.pool["YES"])
        no = float(contract.pool["NO"])
    except KeyError as exc:
        raise InvariantViolation(f"cpmm contract {contract.id} is missing pool side {exc}") from exc
    if yes < 0 or no < 0:
        raise InvariantViolation(f"cpmm contract {contract.id} has negative pool liquidity")
    return yes, no


def _cpmm_outcome_probability(yes: float, no: float, outcome: str) -> float:
    total = yes + no
    if total <= 0:
        return 0.0
    prob_yes = no / total
    if outcome == "YES":
        return prob_yes
    if outcome == "NO":
        return 1 - prob_yes
    return 0.0


def _dpm_cost(shares: dict[str, float]) -> float:
    return math.sqrt(sum(value * value for value in shares.values()))


def _dpm_probability(shares: dict[str, float], outcome: str) -> float:
    squared_total = sum(float(value) ** 2 for value in shares.values())
    if squared_total <= 0:
        return 0.0
    return float(shares.get(outcome, 0.0)) ** 2 / squared_total


__all__ = [
    "CpmmMechanism",
    "DpmMechanism",
    "Mechanism",
    "cpmm_sale_value",
    "mechanism_for",
]
