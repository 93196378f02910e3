from __future__ import annotations

import json
from datetime import timedelta

import pytest

from app.domain import LoanPayout
from app.models import Contract, Group, PortfolioSnapshot, User
from app.repositories import JobLockRepository
from factories import NOW
from pipelines.metrics_run import LOCK_NAME, MetricsPipeline, _write_summary


def _fixed_loans(users, contracts_by_id, portfolio_by_user, bets_by_user):
    return [LoanPayout(user_id="A", payout=2.5)]


@pytest.fixture
def world(seed):
    seed.user("creator")
    seed.user("A", balance=990.0, total_deposits=1000.0)
    seed.contract("c1", creator_id="creator", pool={"YES": 50.0, "NO": 50.0}, volume=20.0)
    seed.bet(
        "b1",
        user_id="A",
        outcome="YES",
        amount=10.0,
        shares=16.0,
        created_time=NOW - timedelta(hours=2),
        prob_before=0.5,
        prob_after=0.6,
    )
    seed.bet(
        "b2",
        user_id="A",
        outcome="YES",
        amount=4.0,
        shares=6.0,
        created_time=NOW - timedelta(days=3),
        prob_before=0.45,
        prob_after=0.5,
    )
    seed.group("g1", ["c1"])


@pytest.fixture
def pipeline(store, test_settings):
    return MetricsPipeline(store, test_settings, loan_policy=_fixed_loans, clock=lambda: NOW)


def test_run_updates_contracts_users_and_groups(pipeline, store, world):
    summary = pipeline.run(now=NOW)

    assert summary.skipped is False
    assert summary.write_failures == []
    assert summary.contract_updates == 1
    assert summary.user_updates == 2
    assert summary.portfolio_snapshots == 2
    assert summary.groups_updated == 1

    contract = store.get_document(Contract, "c1")
    assert contract.volume_24_hours == pytest.approx(10.0)
    assert contract.volume_7_days == pytest.approx(14.0)
    assert contract.prob == pytest.approx(0.6)
    assert contract.prob_changes["day"] == pytest.approx(0.1)
    assert contract.prob_changes["week"] == pytest.approx(0.15)

    creator = store.get_document(User, "creator")
    assert creator.creator_volume_cached == {"daily": 10.0, "weekly": 14.0, "all_time": 20.0}
    assert creator.next_loan_cached == 0.0

    trader = store.get_document(User, "A")
    assert trader.next_loan_cached == 2.5
    assert trader.profit_cached["all_time"] == pytest.approx(990.0 + 0.5 * 22.0 - 1000.0)

    leaderboard = store.get_document(Group, "g1").cached_leaderboard
    assert leaderboard["top_creators"] == [{"user_id": "creator", "score": 20.0}]
    assert leaderboard["top_traders"][0]["user_id"] == "A"
    assert leaderboard["top_traders"][0]["score"] == pytest.approx(0.5 * 22.0 - 14.0)


def test_unchanged_portfolios_are_not_snapshotted_twice(pipeline, store, world):
    pipeline.run(now=NOW)

    second = pipeline.run(now=NOW + timedelta(minutes=15))

    assert second.skipped is False
    assert second.portfolio_snapshots == 0
    assert len(store.get_collection(PortfolioSnapshot)) == 2


def test_dry_run_writes_nothing(pipeline, store, world):
    summary = pipeline.run(now=NOW, dry_run=True)

    assert summary.dry_run is True
    assert summary.contract_updates == 1
    assert store.get_document(Contract, "c1").volume_24_hours == 0.0
    assert store.get_collection(PortfolioSnapshot) == []
    assert store.get_document(Group, "g1").cached_leaderboard is None


def test_run_is_skipped_while_another_run_holds_the_lock(pipeline, store, world):
    store.run_transaction(
        lambda session: JobLockRepository(session).acquire(
            LOCK_NAME, "other-run", now=NOW, ttl=timedelta(minutes=30)
        )
    )

    summary = pipeline.run(now=NOW + timedelta(minutes=1))

    assert summary.skipped is True
    assert store.get_document(Contract, "c1").volume_24_hours == 0.0


def test_group_failure_does_not_abort_the_run(store, test_settings, world):
    def broken_scorer(contracts):
        raise RuntimeError("scorer exploded")

    pipeline = MetricsPipeline(
        store,
        test_settings,
        creator_scorer=broken_scorer,
        loan_policy=_fixed_loans,
        clock=lambda: NOW,
    )

    summary = pipeline.run(now=NOW)

    assert summary.group_error == "scorer exploded"
    assert summary.groups_updated == 0
    assert store.get_document(User, "A").next_loan_cached == 2.5
    assert store.get_document(Group, "g1").cached_leaderboard is None


def test_skip_groups_leaves_leaderboards_alone(pipeline, store, world):
    summary = pipeline.run(now=NOW, include_groups=False)

    assert summary.groups_updated == 0
    assert store.get_document(Group, "g1").cached_leaderboard is None


def test_write_summary(pipeline, world, tmp_path):
    summary = pipeline.run(now=NOW)
    path = tmp_path / "reports" / "metrics.json"

    _write_summary(summary, path)

    payload = json.loads(path.read_text())
    assert payload["run_id"] == summary.run_id
    assert payload["started_at"] == NOW.isoformat()
    assert payload["portfolio_snapshots"] == 2
