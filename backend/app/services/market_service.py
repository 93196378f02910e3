"""Read-only conveniences for serving markets, users, and portfolios."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from app.repositories import ContractRepository, UserRepository
from app.schemas import Bet, ContractWithBets, Portfolio, PortfolioPoint, User


class MarketService:
    """Read-only facade over contracts and user accounts used by the API."""

    def __init__(self, session: Session):
        self._session = session
        self._contract_repo = ContractRepository(session)
        self._user_repo = UserRepository(session)

    def get_market(self, contract_id: str) -> ContractWithBets | None:
        contract = self._contract_repo.get_contract(contract_id)
        if contract is None:
            return None
        payload = ContractWithBets.model_validate(contract)
        bets = [Bet.model_validate(bet) for bet in self._contract_repo.list_bets(contract_id)]
        return payload.model_copy(update={"bets": bets})

    def get_user(self, user_id: str) -> User | None:
        user = self._user_repo.get_user(user_id)
        if user is None:
            return None
        return User.model_validate(user)

    def get_portfolio(self, user_id: str, *, since: datetime | None = None) -> Portfolio | None:
        if self._user_repo.get_user(user_id) is None:
            return None
        history = self._user_repo.list_user_portfolio(user_id, since=since)
        return Portfolio(
            user_id=user_id,
            history=[PortfolioPoint.model_validate(snapshot) for snapshot in history],
        )


__all__ = ["MarketService"]
