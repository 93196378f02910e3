"""Bet liquidation as one atomic multi-row transaction."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from functools import partial

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.domain import ConflictError, LedgerReason, SaleResult, ValidationError
from app.domain.sales import compute_sale
from app.models import new_id, utcnow
from app.repositories import ContractRepository, Store, UserRepository, ledger_key
from app.repositories.mappers import bet_state, contract_state, user_state
from app.schemas import OperationResult


class SaleService:
    """Sell a user's bet back to the market maker."""

    def __init__(
        self,
        store: Store,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._store = store
        self._clock = clock or utcnow

    def sell_bet(self, *, user_id: str | None, contract_id: str, bet_id: str) -> OperationResult:
        if not user_id:
            return OperationResult.error("Not authorized")

        new_bet_id = new_id()
        try:
            sale = self._store.run_transaction(
                partial(self._sell_in_transaction, user_id, contract_id, bet_id, new_bet_id),
                description=f"sale of bet {bet_id}",
            )
        except ValidationError as exc:
            logger.info("Rejected sale of bet {} by {}: {}", bet_id, user_id, exc)
            return OperationResult.error(str(exc))
        except ConflictError as exc:
            logger.warning("Sale of bet {} kept conflicting: {}", bet_id, exc)
            return OperationResult.error(str(exc), error_type="conflict")

        logger.info(
            "User {} sold bet {} on contract {} for {:.4f} (creator fee {:.4f})",
            user_id,
            bet_id,
            contract_id,
            sale.proceeds,
            sale.creator_fee,
        )
        return OperationResult.success(
            bet_id=new_bet_id,
            sold_bet_id=bet_id,
            sale_value=-sale.new_bet.amount,
            proceeds=sale.proceeds,
            creator_fee=sale.creator_fee,
            new_balance=sale.new_balance,
        )

    def _sell_in_transaction(
        self,
        user_id: str,
        contract_id: str,
        bet_id: str,
        new_bet_id: str,
        session: Session,
    ) -> SaleResult:
        users = UserRepository(session)
        contracts = ContractRepository(session)

        user = users.get_user(user_id)
        if user is None:
            raise ValidationError("User not found")
        contract = contracts.get_contract(contract_id)
        if contract is None:
            raise ValidationError("Invalid contract")
        bet = contracts.get_bet(contract_id, bet_id)
        if bet is None or bet.user_id != user_id:
            raise ValidationError("Invalid bet")

        now = self._clock()
        sale = compute_sale(
            user_state(user),
            bet_state(bet),
            contract_state(contract),
            new_bet_id,
            fee_rate=self.settings.sale_creator_fee_rate,
            now=now,
        )

        users.credit_balance(
            user_id,
            sale.proceeds,
            reason=LedgerReason.SALE,
            idempotency_key=ledger_key(new_bet_id, user_id, LedgerReason.SALE),
            contract_id=contract_id,
            bet_id=new_bet_id,
            now=now,
        )
        if sale.creator_fee > 0 and users.get_user(contract.creator_id) is not None:
            users.credit_balance(
                contract.creator_id,
                sale.creator_fee,
                reason=LedgerReason.CREATOR_FEE,
                idempotency_key=ledger_key(new_bet_id, contract.creator_id, LedgerReason.CREATOR_FEE),
                contract_id=contract_id,
                bet_id=new_bet_id,
                now=now,
            )

        bet.is_sold = True
        contracts.add_bet(sale.new_bet)
        contract.pool = dict(sale.new_pool)
        if sale.new_total_shares is not None:
            contract.total_shares = dict(sale.new_total_shares)
        if sale.new_total_bets is not None:
            contract.total_bets = dict(sale.new_total_bets)
        contract.collected_fees = (contract.collected_fees or 0.0) + sale.creator_fee
        session.flush()
        return replace(sale, new_balance=user.balance)


__all__ = ["SaleService"]
