"""User balance, ledger, and portfolio history persistence helpers."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import asc, select
from sqlalchemy.orm import Session

from app.domain import LedgerReason, ValidationError
from app.domain.money import add_money, quantize
from app.models import BalanceLedgerEntry, PortfolioSnapshot, User, utcnow


def ledger_key(scope_id: str, user_id: str, reason: LedgerReason | str) -> str:
    """Idempotency key of a balance change: one per (scope, user, reason)."""

    value = reason.value if isinstance(reason, LedgerReason) else reason
    return f"{scope_id}:{user_id}:{value}"


class UserRepository:
    """Encapsulate user balances and their ledger trail."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def credit_balance(
        self,
        user_id: str,
        amount: float,
        *,
        reason: LedgerReason | str,
        idempotency_key: str,
        contract_id: str | None = None,
        bet_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Apply ``amount`` to the user's balance and record it in the ledger.

        Returns ``False`` without touching the balance when an entry with the
        same idempotency key already exists.
        """

        if self.has_ledger_entry(idempotency_key):
            return False
        user = self._session.get(User, user_id)
        if user is None:
            raise ValidationError(f"User {user_id} not found")
        user.balance = add_money(user.balance, amount)
        self._session.add(
            BalanceLedgerEntry(
                user_id=user_id,
                contract_id=contract_id,
                bet_id=bet_id,
                reason=reason.value if isinstance(reason, LedgerReason) else reason,
                amount=quantize(amount),
                idempotency_key=idempotency_key,
                created_time=now or utcnow(),
            )
        )
        return True

    # ------------------------------------------------------------------
    # Queries

    def get_user(self, user_id: str) -> User | None:
        return self._session.get(User, user_id)

    def list_users(self) -> list[User]:
        stmt = select(User).order_by(asc(User.created_time), asc(User.id))
        return list(self._session.scalars(stmt))

    def has_ledger_entry(self, idempotency_key: str) -> bool:
        stmt = select(BalanceLedgerEntry.id).where(BalanceLedgerEntry.idempotency_key == idempotency_key)
        return self._session.scalar(stmt) is not None

    def list_ledger_entries(
        self,
        *,
        user_id: str | None = None,
        contract_id: str | None = None,
    ) -> list[BalanceLedgerEntry]:
        stmt = select(BalanceLedgerEntry).order_by(
            asc(BalanceLedgerEntry.created_time), asc(BalanceLedgerEntry.id)
        )
        if user_id is not None:
            stmt = stmt.where(BalanceLedgerEntry.user_id == user_id)
        if contract_id is not None:
            stmt = stmt.where(BalanceLedgerEntry.contract_id == contract_id)
        return list(self._session.scalars(stmt))

    def list_portfolio_history(self, *, since: datetime | None = None) -> dict[str, list[PortfolioSnapshot]]:
        stmt = select(PortfolioSnapshot).order_by(asc(PortfolioSnapshot.timestamp), asc(PortfolioSnapshot.id))
        if since is not None:
            stmt = stmt.where(PortfolioSnapshot.timestamp >= since)
        history: dict[str, list[PortfolioSnapshot]] = {}
        for snapshot in self._session.scalars(stmt):
            history.setdefault(snapshot.user_id, []).append(snapshot)
        return history

    def list_user_portfolio(self, user_id: str, *, since: datetime | None = None) -> list[PortfolioSnapshot]:
        stmt = (
            select(PortfolioSnapshot)
            .where(PortfolioSnapshot.user_id == user_id)
            .order_by(asc(PortfolioSnapshot.timestamp), asc(PortfolioSnapshot.id))
        )
        if since is not None:
            stmt = stmt.where(PortfolioSnapshot.timestamp >= since)
        return list(self._session.scalars(stmt))


__all__ = ["UserRepository", "ledger_key"]
