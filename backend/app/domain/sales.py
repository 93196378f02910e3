"""Pure sale (liquidation) entry point dispatching on the market mechanism."""

from __future__ import annotations

from datetime import datetime, timezone

from .errors import ValidationError
from .fees import SALE_CREATOR_FEE_RATE
from .mechanisms import mechanism_for
from .models import BetState, ContractState, SaleResult, UserState


def compute_sale(
    user: UserState,
    bet: BetState,
    contract: ContractState,
    new_bet_id: str,
    *,
    fee_rate: float = SALE_CREATOR_FEE_RATE,
    now: datetime | None = None,
) -> SaleResult:
    now = now or datetime.now(timezone.utc)
    if contract.is_resolved or contract.resolution is not None:
        raise ValidationError("Contract already resolved")
    if contract.close_time is not None and now > contract.close_time:
        raise ValidationError("Trading is closed")
    if bet.contract_id != contract.id or bet.sale is not None:
        raise ValidationError("Invalid bet")
    if bet.is_sold:
        raise ValidationError("Bet already sold")
    return mechanism_for(contract).sell(user, bet, contract, new_bet_id, fee_rate=fee_rate, now=now)


__all__ = ["compute_sale"]
