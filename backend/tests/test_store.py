from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from app.domain import ConflictError, LedgerReason, ValidationError
from app.models import User
from app.repositories import DocumentWrite, JobLockRepository, Store, UserRepository, ledger_key
from factories import NOW


def test_run_transaction_commits(store, seed):
    seed.user("u1", balance=10.0)

    def rename(session):
        session.get(User, "u1").name = "Renamed"
        return "done"

    assert store.run_transaction(rename) == "done"
    assert store.get_document(User, "u1").name == "Renamed"


def test_run_transaction_retries_conflicts(session_factory, seed):
    seed.user("u1")
    sleep = MagicMock()
    store = Store(session_factory, retry_attempts=3, retry_backoff=(0.25,), sleep=sleep)
    calls = []

    def flaky(session):
        calls.append(1)
        if len(calls) == 1:
            raise StaleDataError("row changed underneath us")
        session.get(User, "u1").balance = 42.0

    store.run_transaction(flaky)

    assert len(calls) == 2
    sleep.assert_called_once_with(0.25)
    assert store.get_document(User, "u1").balance == 42.0


def test_run_transaction_gives_up_after_bounded_attempts(session_factory):
    store = Store(session_factory, retry_attempts=3, retry_backoff=(0.0,), sleep=lambda _: None)
    calls = []

    def always_conflicts(session):
        calls.append(1)
        raise StaleDataError("conflict")

    with pytest.raises(ConflictError):
        store.run_transaction(always_conflicts)
    assert len(calls) == 3


class _SerializationFailure(Exception):
    sqlstate = "40001"


@pytest.mark.parametrize(
    "orig",
    [Exception("database is locked"), _SerializationFailure("could not serialize access")],
)
def test_run_transaction_retries_transient_lock_errors(session_factory, orig):
    store = Store(session_factory, retry_attempts=3, retry_backoff=(0.0,), sleep=lambda _: None)
    calls = []

    def locked_once(session):
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("UPDATE users", {}, orig)
        return "ok"

    assert store.run_transaction(locked_once) == "ok"
    assert len(calls) == 2


def test_run_transaction_does_not_retry_outages(session_factory):
    store = Store(session_factory, retry_attempts=3, retry_backoff=(0.0,), sleep=lambda _: None)
    calls = []

    def broken(session):
        calls.append(1)
        raise OperationalError("SELECT 1", {}, Exception("no such table: users"))

    with pytest.raises(OperationalError):
        store.run_transaction(broken)
    assert len(calls) == 1


def test_run_transaction_rolls_back_on_other_errors(store, seed):
    seed.user("u1", balance=10.0)

    def fails(session):
        session.get(User, "u1").balance = 99.0
        session.flush()
        raise ValidationError("nope")

    with pytest.raises(ValidationError):
        store.run_transaction(fails)
    assert store.get_document(User, "u1").balance == 10.0


def test_batch_write_chunks_and_skips_missing_rows(session_factory, seed):
    seed.user("u1")
    store = Store(session_factory, batch_size=2, retry_backoff=(0.0,), sleep=lambda _: None)
    writes = [
        DocumentWrite(model=User, key="u1", fields={"next_loan_cached": 4.0}),
        DocumentWrite(model=User, key="ghost", fields={"next_loan_cached": 1.0}),
        DocumentWrite(model=User, fields={"id": "u2", "balance": 5.0}, mode="create"),
        DocumentWrite(model=User, fields={"id": "u3", "balance": 6.0}, mode="create"),
        DocumentWrite(model=User, fields={"id": "u4", "balance": 7.0}, mode="create"),
    ]

    result = store.batch_write(writes)

    assert result.written == 4
    assert result.skipped == 1
    assert result.failures == []
    assert store.get_document(User, "u1").next_loan_cached == 4.0
    assert len(store.get_collection(User)) == 4


def test_batch_write_reports_failed_chunk_and_continues(session_factory, seed):
    seed.user("u1")
    store = Store(session_factory, batch_size=1, retry_backoff=(0.0,), sleep=lambda _: None)
    writes = [
        DocumentWrite(model=User, fields={"id": "u1", "balance": 1.0}, mode="create"),
        DocumentWrite(model=User, fields={"id": "u2", "balance": 2.0}, mode="create"),
    ]

    result = store.batch_write(writes)

    assert result.written == 1
    assert len(result.failures) == 1
    assert result.failures[0]["documents"] == ["User(new)"]


def test_batch_size_is_capped(session_factory):
    assert Store(session_factory, batch_size=5000).batch_size == 500


def test_credit_balance_is_idempotent_and_quantized(store, seed):
    seed.user("u1", balance=1000.0)
    key = ledger_key("c1", "u1", LedgerReason.PAYOUT)

    def credit(session):
        return UserRepository(session).credit_balance(
            "u1", 0.1234567, reason=LedgerReason.PAYOUT, idempotency_key=key, contract_id="c1"
        )

    assert store.run_transaction(credit) is True
    assert store.run_transaction(credit) is False

    assert store.get_document(User, "u1").balance == pytest.approx(1000.123457, abs=1e-9)
    entries = store.read(lambda session: UserRepository(session).list_ledger_entries(user_id="u1", contract_id="c1"))
    assert len(entries) == 1
    assert entries[0].reason == "payout"
    assert entries[0].idempotency_key == "c1:u1:payout"


def test_credit_balance_for_unknown_user(store):
    def credit(session):
        return UserRepository(session).credit_balance(
            "ghost", 1.0, reason=LedgerReason.PAYOUT, idempotency_key="k"
        )

    with pytest.raises(ValidationError):
        store.run_transaction(credit)


def test_job_lock_blocks_second_owner_until_stale(store):
    ttl = timedelta(minutes=30)

    def acquire(owner, now):
        return store.run_transaction(
            lambda session: JobLockRepository(session).acquire("metrics", owner, now=now, ttl=ttl)
        )

    assert acquire("run-1", NOW) is True
    assert acquire("run-2", NOW + timedelta(minutes=5)) is False
    assert acquire("run-2", NOW + timedelta(minutes=31)) is True
    assert store.run_transaction(lambda session: JobLockRepository(session).release("metrics", "run-1")) is False
    assert store.run_transaction(lambda session: JobLockRepository(session).release("metrics", "run-2")) is True
    assert acquire("run-3", NOW + timedelta(minutes=32)) is True
