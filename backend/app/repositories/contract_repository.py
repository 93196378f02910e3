"""Contract, bet, and group persistence helpers."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import asc, select
from sqlalchemy.orm import Session

from app.domain import BetState
from app.domain.outcomes import Outcome, resolution_fields
from app.models import Bet, Contract, Group, GroupContract

from .mappers import bet_record


class ContractRepository:
    """Encapsulate contract, bet, and group persistence concerns."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def apply_resolution(self, contract: Contract, outcome: Outcome, *, resolved_at: datetime) -> None:
        for name, value in resolution_fields(outcome).items():
            setattr(contract, name, value)
        contract.is_resolved = True
        contract.resolution_time = resolved_at
        contract.payouts_applied = False

    def mark_payouts_applied(self, contract_id: str) -> bool:
        contract = self._session.get(Contract, contract_id)
        if contract is None or contract.payouts_applied:
            return False
        contract.payouts_applied = True
        return True

    def add_bet(self, state: BetState) -> Bet:
        record = bet_record(state)
        self._session.add(record)
        return record

    # ------------------------------------------------------------------
    # Queries

    def get_contract(self, contract_id: str) -> Contract | None:
        return self._session.get(Contract, contract_id)

    def get_bet(self, contract_id: str, bet_id: str) -> Bet | None:
        bet = self._session.get(Bet, bet_id)
        if bet is None or bet.contract_id != contract_id:
            return None
        return bet

    def list_contracts(self) -> list[Contract]:
        stmt = select(Contract).order_by(asc(Contract.created_time), asc(Contract.id))
        return list(self._session.scalars(stmt))

    def list_bets(self, contract_id: str) -> list[Bet]:
        stmt = (
            select(Bet)
            .where(Bet.contract_id == contract_id)
            .order_by(asc(Bet.created_time), asc(Bet.id))
        )
        return list(self._session.scalars(stmt))

    def list_all_bets(self) -> list[Bet]:
        stmt = select(Bet).order_by(asc(Bet.created_time), asc(Bet.id))
        return list(self._session.scalars(stmt))

    def list_pending_payouts(
        self,
        *,
        limit: int | None = None,
        contract_ids: Sequence[str] | None = None,
    ) -> list[Contract]:
        stmt = (
            select(Contract)
            .where(Contract.is_resolved.is_(True), Contract.payouts_applied.is_(False))
            .order_by(asc(Contract.resolution_time), asc(Contract.id))
        )
        if contract_ids:
            stmt = stmt.where(Contract.id.in_(list(contract_ids)))
        if limit:
            stmt = stmt.limit(limit)
        return list(self._session.scalars(stmt))

    def list_groups(self) -> list[Group]:
        stmt = select(Group).order_by(asc(Group.id))
        return list(self._session.scalars(stmt))

    def list_group_contract_ids(self) -> dict[str, list[str]]:
        stmt = select(GroupContract).order_by(asc(GroupContract.group_id), asc(GroupContract.created_time))
        memberships: dict[str, list[str]] = {}
        for row in self._session.scalars(stmt):
            memberships.setdefault(row.group_id, []).append(row.contract_id)
        return memberships


__all__ = ["ContractRepository"]
