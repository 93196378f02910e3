"""Scheduled job that recomputes contract, user, and group metrics."""

from __future__ import annotations

import argparse
import json
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence
from uuid import uuid4

from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db import init_db
from app.domain import (
    BetState,
    ConflictError,
    ContractState,
    LoanPayout,
    PortfolioMetrics,
    UserState,
)
from app.domain.loans import compute_loan_updates
from app.domain.metrics import (
    DAY,
    WEEK,
    calculate_creator_volume,
    calculate_new_portfolio_metrics,
    calculate_new_profit,
    calculate_prob_changes,
    compute_volume,
    current_probability,
    did_portfolio_change,
    is_cpmm,
    merge_loan_updates,
    sort_descending,
    top_user_scores,
)
from app.domain.scoring import score_creators, score_traders
from app.models import Contract, Group, PortfolioSnapshot, User, utcnow
from app.repositories import (
    BatchWriteResult,
    ContractRepository,
    DocumentWrite,
    JobLockRepository,
    Store,
    UserRepository,
)
from app.repositories.mappers import bet_state, contract_state, portfolio_metrics, user_state

from .context import PipelineContext

LOCK_NAME = "update-metrics"

CreatorScorer = Callable[[Sequence[ContractState | None]], Mapping[str, float]]
TraderScorer = Callable[[Sequence[ContractState | None], Sequence[Sequence[BetState]]], Mapping[str, float]]
LoanPolicy = Callable[..., list[LoanPayout]]


@dataclass(slots=True)
class MetricsSnapshot:
    """Everything the job reads up front, as domain states."""

    users: list[UserState]
    contracts: list[ContractState]
    bets: list[BetState]
    portfolio_history: dict[str, list[PortfolioMetrics]]
    group_ids: list[str]
    group_contract_ids: dict[str, list[str]]


@dataclass(slots=True)
class MetricsSummary:
    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    dry_run: bool = False
    skipped: bool = False
    users: int = 0
    contracts: int = 0
    bets: int = 0
    contract_updates: int = 0
    user_updates: int = 0
    portfolio_snapshots: int = 0
    loans: int = 0
    groups_updated: int = 0
    group_error: str | None = None
    write_failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "dry_run": self.dry_run,
            "skipped": self.skipped,
            "users": self.users,
            "contracts": self.contracts,
            "bets": self.bets,
            "contract_updates": self.contract_updates,
            "user_updates": self.user_updates,
            "portfolio_snapshots": self.portfolio_snapshots,
            "loans": self.loans,
            "groups_updated": self.groups_updated,
            "group_error": self.group_error,
            "write_failures": self.write_failures,
        }


class MetricsPipeline:
    """Load everything, recompute derived metrics, and write them back in chunks."""

    def __init__(
        self,
        store: Store,
        settings: Settings | None = None,
        *,
        creator_scorer: CreatorScorer = score_creators,
        trader_scorer: TraderScorer = score_traders,
        loan_policy: LoanPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._store = store
        self._creator_scorer = creator_scorer
        self._trader_scorer = trader_scorer
        self._loan_policy = loan_policy or partial(compute_loan_updates, rate=self.settings.loan_weekly_rate)
        self._clock = clock or utcnow

    def run(
        self,
        *,
        now: datetime | None = None,
        dry_run: bool = False,
        include_groups: bool = True,
    ) -> MetricsSummary:
        now = now or self._clock()
        context = PipelineContext(
            run_id=uuid4().hex,
            run_time=now,
            settings=self.settings,
            store=self._store,
            dry_run=dry_run,
        )
        summary = MetricsSummary(run_id=context.run_id, started_at=now, dry_run=dry_run)

        if not self._acquire_lock(context):
            logger.warning("Metrics run {} skipped: another run holds the '{}' lock", context.run_id, LOCK_NAME)
            summary.skipped = True
            return summary

        try:
            self._run(context, summary, include_groups=include_groups)
        finally:
            self._release_lock(context)

        summary.finished_at = self._clock()
        logger.info(
            "Metrics run {} finished: contracts={}, users={}, snapshots={}, groups={}, failures={}",
            context.run_id,
            summary.contract_updates,
            summary.user_updates,
            summary.portfolio_snapshots,
            summary.groups_updated,
            len(summary.write_failures),
        )
        return summary

    # ------------------------------------------------------------------
    # Phases

    def _run(self, context: PipelineContext, summary: MetricsSummary, *, include_groups: bool) -> None:
        now = context.run_time
        snapshot = self._store.read(partial(self._load_snapshot, now))
        summary.users = len(snapshot.users)
        summary.contracts = len(snapshot.contracts)
        summary.bets = len(snapshot.bets)
        logger.info(
            "Loaded {} users, {} contracts, {} bets",
            summary.users,
            summary.contracts,
            summary.bets,
        )

        bets_by_contract: dict[str, list[BetState]] = defaultdict(list)
        bets_by_user: dict[str, list[BetState]] = defaultdict(list)
        for bet in snapshot.bets:
            bets_by_contract[bet.contract_id].append(bet)
            bets_by_user[bet.user_id].append(bet)

        contract_writes = self.compute_contract_updates(snapshot.contracts, bets_by_contract, now)
        summary.contract_updates = len(contract_writes)
        self._write(context, summary, contract_writes)

        contracts_by_id = {contract.id: contract for contract in snapshot.contracts}
        user_writes, snapshot_writes, loans = self.compute_user_updates(
            snapshot.users,
            contracts_by_id,
            bets_by_user,
            snapshot.portfolio_history,
            now,
        )
        summary.user_updates = len(user_writes)
        summary.portfolio_snapshots = len(snapshot_writes)
        summary.loans = len(loans)
        self._write(context, summary, user_writes)
        self._write(context, summary, snapshot_writes)

        if not include_groups:
            return
        try:
            group_writes = self.compute_group_updates(
                snapshot.group_ids,
                snapshot.group_contract_ids,
                contracts_by_id,
                bets_by_contract,
            )
            summary.groups_updated = len(group_writes)
            self._write(context, summary, group_writes)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Error while updating group leaderboards")
            summary.group_error = str(exc)

    def compute_contract_updates(
        self,
        contracts: Sequence[ContractState],
        bets_by_contract: Mapping[str, Sequence[BetState]],
        now: datetime,
    ) -> list[DocumentWrite]:
        """Refresh rolling volumes and, for cpmm markets, the cached probability.

        The passed contract states are updated in place so later phases see
        the fresh volumes.
        """

        writes: list[DocumentWrite] = []
        for contract in contracts:
            bets = bets_by_contract.get(contract.id, [])
            contract.volume_24_hours = compute_volume(bets, now - DAY)
            contract.volume_7_days = compute_volume(bets, now - WEEK)
            fields: dict[str, Any] = {
                "volume_24_hours": contract.volume_24_hours,
                "volume_7_days": contract.volume_7_days,
            }
            if is_cpmm(contract):
                descending = sort_descending(bets)
                contract.prob = current_probability(contract, descending)
                contract.prob_changes = calculate_prob_changes(descending, now).to_dict()
                fields["prob"] = contract.prob
                fields["prob_changes"] = contract.prob_changes
            writes.append(DocumentWrite(model=Contract, key=contract.id, fields=fields))
        return writes

    def compute_user_updates(
        self,
        users: Sequence[UserState],
        contracts_by_id: Mapping[str, ContractState],
        bets_by_user: Mapping[str, Sequence[BetState]],
        portfolio_history: Mapping[str, Sequence[PortfolioMetrics]],
        now: datetime,
    ) -> tuple[list[DocumentWrite], list[DocumentWrite], list[LoanPayout]]:
        contracts_by_creator: dict[str, list[ContractState]] = defaultdict(list)
        for contract in contracts_by_id.values():
            contracts_by_creator[contract.creator_id].append(contract)

        portfolio_by_user: dict[str, PortfolioMetrics] = {}
        user_fields: dict[str, dict[str, Any]] = {}
        snapshot_writes: list[DocumentWrite] = []
        for user in users:
            history = sorted(portfolio_history.get(user.id, []), key=lambda item: item.timestamp)
            new_portfolio = calculate_new_portfolio_metrics(
                user, contracts_by_id, bets_by_user.get(user.id, []), now
            )
            portfolio_by_user[user.id] = new_portfolio
            last_portfolio = history[-1] if history else None
            if did_portfolio_change(last_portfolio, new_portfolio):
                snapshot_writes.append(
                    DocumentWrite(model=PortfolioSnapshot, fields=new_portfolio.to_dict(), mode="create")
                )
            user_fields[user.id] = {
                "creator_volume_cached": calculate_creator_volume(contracts_by_creator.get(user.id, [])).to_dict(),
                "profit_cached": calculate_new_profit(history, new_portfolio, now).to_dict(),
            }

        loans = self._loan_policy(users, contracts_by_id, portfolio_by_user, bets_by_user)
        next_loans = merge_loan_updates(user_fields.keys(), loans)
        user_writes = [
            DocumentWrite(model=User, key=user_id, fields={**fields, "next_loan_cached": next_loans[user_id]})
            for user_id, fields in user_fields.items()
        ]
        return user_writes, snapshot_writes, list(loans)

    def compute_group_updates(
        self,
        group_ids: Sequence[str],
        group_contract_ids: Mapping[str, Sequence[str]],
        contracts_by_id: Mapping[str, ContractState],
        bets_by_contract: Mapping[str, Sequence[BetState]],
    ) -> list[DocumentWrite]:
        limit = self.settings.leaderboard_size
        writes: list[DocumentWrite] = []
        for group_id in group_ids:
            contract_ids = list(group_contract_ids.get(group_id, []))
            group_contracts = [contracts_by_id.get(contract_id) for contract_id in contract_ids]
            group_bets = [list(bets_by_contract.get(contract_id, [])) for contract_id in contract_ids]
            creator_scores = self._creator_scorer(group_contracts)
            trader_scores = self._trader_scorer(group_contracts, group_bets)
            leaderboard = {
                "top_traders": [entry.to_dict() for entry in top_user_scores(trader_scores, limit)],
                "top_creators": [entry.to_dict() for entry in top_user_scores(creator_scores, limit)],
            }
            writes.append(DocumentWrite(model=Group, key=group_id, fields={"cached_leaderboard": leaderboard}))
        return writes

    # ------------------------------------------------------------------
    # Persistence helpers

    def _load_snapshot(self, now: datetime, session: Session) -> MetricsSnapshot:
        contracts = ContractRepository(session)
        users = UserRepository(session)
        since = now - timedelta(days=self.settings.portfolio_history_days)
        history = {
            user_id: [portfolio_metrics(snapshot) for snapshot in snapshots]
            for user_id, snapshots in users.list_portfolio_history(since=since).items()
        }
        return MetricsSnapshot(
            users=[user_state(user) for user in users.list_users()],
            contracts=[contract_state(contract) for contract in contracts.list_contracts()],
            bets=[bet_state(bet) for bet in contracts.list_all_bets()],
            portfolio_history=history,
            group_ids=[group.id for group in contracts.list_groups()],
            group_contract_ids=contracts.list_group_contract_ids(),
        )

    def _write(self, context: PipelineContext, summary: MetricsSummary, writes: Sequence[DocumentWrite]) -> None:
        if not writes:
            return
        if context.dry_run:
            logger.info("Dry run: skipping {} writes", len(writes))
            return
        result: BatchWriteResult = self._store.batch_write(writes)
        summary.write_failures.extend(result.failures)

    def _acquire_lock(self, context: PipelineContext) -> bool:
        ttl = timedelta(minutes=self.settings.metrics_lock_ttl_minutes)
        try:
            return self._store.run_transaction(
                lambda session: JobLockRepository(session).acquire(
                    LOCK_NAME, context.run_id, now=context.run_time, ttl=ttl
                ),
                description="metrics lock acquisition",
            )
        except (ConflictError, IntegrityError):
            return False

    def _release_lock(self, context: PipelineContext) -> None:
        try:
            self._store.run_transaction(
                lambda session: JobLockRepository(session).release(LOCK_NAME, context.run_id),
                description="metrics lock release",
            )
        except (ConflictError, SQLAlchemyError):
            logger.exception("Failed to release the '{}' lock for run {}", LOCK_NAME, context.run_id)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Recompute contract volumes, user portfolios, loans, and group leaderboards",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute every update but do not write anything back",
    )
    parser.add_argument(
        "--skip-groups",
        action="store_true",
        help="Skip the group leaderboard phase",
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running on the configured metrics interval",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: MetricsSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Metrics summary written to {}", path)


def main() -> MetricsSummary:
    args = _parse_args()
    settings = get_settings()
    init_db()
    pipeline = MetricsPipeline(Store.from_settings(settings), settings)
    while True:
        summary = pipeline.run(dry_run=args.dry_run, include_groups=not args.skip_groups)
        if args.summary_path:
            _write_summary(summary, args.summary_path)
        if not args.loop:
            return summary
        time.sleep(settings.metrics_interval_minutes * 60)


if __name__ == "__main__":
    main()
