from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base
from .domain.models import LedgerReason, MechanismKind, OutcomeType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    balance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_deposits: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    creator_volume_cached: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    profit_cached: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    next_loan_cached: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    portfolio_history: Mapped[list["PortfolioSnapshot"]] = relationship(
        "PortfolioSnapshot", back_populates="user", cascade="all, delete-orphan"
    )

    __mapper_args__ = {"version_id_col": version_id}


class Contract(Base):
    __tablename__ = "contracts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    creator_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), nullable=False, index=True)
    question: Mapped[str] = mapped_column(Text, nullable=False, default="")
    outcome_type: Mapped[str] = mapped_column(String, nullable=False, default=OutcomeType.BINARY.value)
    mechanism: Mapped[str] = mapped_column(String, nullable=False, default=MechanismKind.CPMM.value)
    answers: Mapped[list | None] = mapped_column(JSON, nullable=True)
    pool: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    total_shares: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    total_bets: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    total_liquidity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    close_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    resolution: Mapped[str | None] = mapped_column(String, nullable=True)
    resolution_probability: Mapped[float | None] = mapped_column(Float, nullable=True)
    resolutions: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    resolution_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payouts_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    volume: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    volume_24_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    volume_7_days: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    collected_fees: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    prob: Mapped[float | None] = mapped_column(Float, nullable=True)
    prob_changes: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    bets: Mapped[list["Bet"]] = relationship("Bet", back_populates="contract")

    __mapper_args__ = {"version_id_col": version_id}


class Bet(Base):
    __tablename__ = "bets"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    contract_id: Mapped[str] = mapped_column(String, ForeignKey("contracts.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    outcome: Mapped[str] = mapped_column(String, nullable=False)
    shares: Mapped[float] = mapped_column(Float, nullable=False)
    prob_before: Mapped[float | None] = mapped_column(Float, nullable=True)
    prob_after: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    is_sold: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sale: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    is_ante: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    contract: Mapped[Contract] = relationship("Contract", back_populates="bets")

    __mapper_args__ = {"version_id_col": version_id}


class PortfolioSnapshot(Base):
    __tablename__ = "portfolio_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), nullable=False, index=True)
    balance: Mapped[float] = mapped_column(Float, nullable=False)
    investment_value: Mapped[float] = mapped_column(Float, nullable=False)
    total_deposits: Mapped[float] = mapped_column(Float, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    user: Mapped[User] = relationship("User", back_populates="portfolio_history")


class BalanceLedgerEntry(Base):
    __tablename__ = "balance_ledger"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), nullable=False, index=True)
    contract_id: Mapped[str | None] = mapped_column(String, ForeignKey("contracts.id"), nullable=True, index=True)
    bet_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    created_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Group(Base):
    __tablename__ = "groups"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    cached_leaderboard: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    group_contracts: Mapped[list["GroupContract"]] = relationship(
        "GroupContract", back_populates="group", cascade="all, delete-orphan"
    )


class GroupContract(Base):
    __tablename__ = "group_contracts"

    group_id: Mapped[str] = mapped_column(String, ForeignKey("groups.id"), primary_key=True)
    contract_id: Mapped[str] = mapped_column(String, ForeignKey("contracts.id"), primary_key=True)
    created_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    group: Mapped[Group] = relationship("Group", back_populates="group_contracts")


class JobLock(Base):
    __tablename__ = "job_locks"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    owner: Mapped[str] = mapped_column(String, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}


__all__ = [
    "BalanceLedgerEntry",
    "Bet",
    "Contract",
    "Group",
    "GroupContract",
    "JobLock",
    "LedgerReason",
    "MechanismKind",
    "OutcomeType",
    "PortfolioSnapshot",
    "User",
    "new_id",
    "utcnow",
]
