from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from sqlalchemy.exc import OperationalError

from app.domain import ConflictError, InvariantViolation
from app.models import BalanceLedgerEntry, Contract, User
from app.services.resolution_service import ResolutionService
from factories import NOW


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def service(store, notifier, test_settings):
    return ResolutionService(store, notifier=notifier, settings=test_settings, clock=lambda: NOW)


@pytest.fixture
def market(seed):
    seed.user("creator")
    seed.user("A")
    seed.user("B")
    seed.contract("c1", creator_id="creator", pool={"YES": 60.0, "NO": 150.0}, total_liquidity=100.0)
    seed.bet("b1", user_id="A", outcome="YES", amount=8.0, shares=10.0)
    seed.bet("b2", user_id="B", outcome="NO", amount=4.0, shares=5.0)
    seed.bet("b3", user_id="A", outcome="YES", amount=5.0, shares=6.0, is_sold=True)
    seed.bet(
        "b4",
        user_id="A",
        outcome="YES",
        amount=-4.0,
        shares=-6.0,
        sale={"amount": 3.9, "bet_id": "b3"},
    )
    return "c1"


def _balance(store, user_id):
    return store.get_document(User, user_id).balance


def _resolve(service, outcome, **kwargs):
    kwargs.setdefault("user_id", "creator")
    kwargs.setdefault("contract_id", "c1")
    return service.resolve_market(outcome=outcome, **kwargs)


def test_resolve_yes_pays_winners_and_returns_liquidity(service, store, market, notifier):
    result = _resolve(service, "YES")

    assert result.status == "success"
    assert result.data["resolution"] == "YES"
    assert _balance(store, "A") == pytest.approx(1010.0)
    assert _balance(store, "B") == pytest.approx(1000.0)
    assert _balance(store, "creator") == pytest.approx(1060.0)

    contract = store.get_document(Contract, "c1")
    assert contract.is_resolved is True
    assert contract.resolution == "YES"
    assert contract.payouts_applied is True

    entries = store.get_collection(BalanceLedgerEntry)
    assert sorted((entry.user_id, entry.reason) for entry in entries) == [
        ("A", "payout"),
        ("creator", "liquidity"),
    ]

    notified = {call.args[0]: call.args[1] for call in notifier.send_resolution_notification.call_args_list}
    assert notified == {"A": pytest.approx(10.0), "B": 0.0, "creator": pytest.approx(60.0)}


def test_resolve_mkt_uses_probability(service, store, market):
    result = _resolve(service, "MKT", probability_int=70)

    assert result.status == "success"
    assert _balance(store, "A") == pytest.approx(1007.0)
    assert _balance(store, "B") == pytest.approx(1001.5)
    assert _balance(store, "creator") == pytest.approx(1000.0 + 0.7 * 60.0 + 0.3 * 150.0)
    assert store.get_document(Contract, "c1").resolution_probability == pytest.approx(0.7)


def test_resolve_cancel_refunds_open_stakes(service, store, market):
    result = _resolve(service, "CANCEL")

    assert result.status == "success"
    assert _balance(store, "A") == pytest.approx(1008.0)
    assert _balance(store, "B") == pytest.approx(1004.0)
    assert _balance(store, "creator") == pytest.approx(1100.0)


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"outcome": "YES", "user_id": "A"}, "User not creator of contract"),
        ({"outcome": "YES", "contract_id": "missing"}, "Invalid contract"),
        ({"outcome": "SOMETIMES"}, "Invalid outcome"),
        ({"outcome": "MKT"}, "Invalid probability"),
        ({"outcome": "MKT", "probability_int": 140}, "Invalid probability"),
        ({"outcome": "YES", "user_id": None}, "Not authorized"),
    ],
)
def test_resolution_validation_errors(service, store, market, notifier, kwargs, message):
    outcome = kwargs.pop("outcome")
    result = _resolve(service, outcome, **kwargs)

    assert result.status == "error"
    assert result.error_type == "validation"
    assert result.message == message
    assert store.get_document(Contract, "c1").resolution is None
    notifier.send_resolution_notification.assert_not_called()


def test_resolution_is_write_once(service, store, market):
    assert _resolve(service, "YES").status == "success"

    second = _resolve(service, "NO")

    assert second.status == "error"
    assert second.message == "Contract already resolved"
    assert store.get_document(Contract, "c1").resolution == "YES"
    assert _balance(store, "A") == pytest.approx(1010.0)
    assert _balance(store, "B") == pytest.approx(1000.0)


def test_missing_creator_is_rejected(service, store, seed):
    seed.contract("orphan", creator_id="nobody")

    result = service.resolve_market(user_id="nobody", contract_id="orphan", outcome="YES")

    assert result.message == "Creator not found"
    assert store.get_document(Contract, "orphan").is_resolved is False


def test_unknown_outcome_type_aborts(service, seed):
    seed.user("creator")
    seed.contract("weird", creator_id="creator", outcome_type="NUMERIC")

    with pytest.raises(InvariantViolation):
        service.resolve_market(user_id="creator", contract_id="weird", outcome="YES")


def test_partial_failure_is_reported_and_recoverable(service, store, market, seed):
    seed.bet("b5", user_id="ghost", outcome="YES", amount=2.0, shares=3.0)

    result = _resolve(service, "YES")

    assert result.status == "error"
    assert result.error_type == "partial_failure"
    assert [failure["user_id"] for failure in result.failures] == ["ghost"]
    assert store.get_document(Contract, "c1").resolution == "YES"
    assert store.get_document(Contract, "c1").payouts_applied is False
    assert _balance(store, "A") == pytest.approx(1010.0)

    seed.user("ghost", balance=0.0)
    report = service.apply_payouts("c1", notify=False)

    assert report.payouts_applied is True
    assert report.skipped == 2
    assert [entry["user_id"] for entry in report.credited] == ["ghost"]
    assert _balance(store, "ghost") == pytest.approx(3.0)
    assert _balance(store, "A") == pytest.approx(1010.0)
    assert _balance(store, "creator") == pytest.approx(1060.0)


def test_apply_payouts_twice_is_a_no_op(service, store, market, notifier):
    _resolve(service, "YES")
    notifier.reset_mock()

    report = service.apply_payouts("c1")

    assert report.already_applied is True
    assert report.credited == []
    assert _balance(store, "A") == pytest.approx(1010.0)
    notifier.send_resolution_notification.assert_not_called()


def test_notification_failures_do_not_block_resolution(service, store, market, notifier):
    def send(user_id, *args, **kwargs):
        if user_id == "B":
            raise RuntimeError("mail server down")

    notifier.send_resolution_notification.side_effect = send

    result = _resolve(service, "YES")

    assert result.status == "success"
    assert result.data["notification_failures"] == [{"user_id": "B", "reason": "mail server down"}]
    assert notifier.send_resolution_notification.call_count == 3


def test_free_response_resolution_to_answer(service, store, seed):
    seed.user("creator")
    seed.user("A")
    seed.user("B")
    seed.contract(
        "fr",
        creator_id="creator",
        outcome_type="FREE_RESPONSE",
        mechanism="dpm-2",
        answers=["1", "2"],
        pool={"1": 10.0, "2": 10.0},
        total_shares={"1": 12.0, "2": 20.0},
        total_bets={"1": 10.0, "2": 10.0},
        total_liquidity=0.0,
    )
    seed.bet("f1", contract_id="fr", user_id="A", outcome="1", amount=10.0, shares=12.0)
    seed.bet("f2", contract_id="fr", user_id="B", outcome="2", amount=10.0, shares=20.0)

    result = service.resolve_market(user_id="creator", contract_id="fr", outcome="2")

    assert result.status == "success"
    assert _balance(store, "A") == pytest.approx(1000.0)
    assert _balance(store, "B") == pytest.approx(1020.0)
    assert _balance(store, "creator") == pytest.approx(1000.0)

    unknown = service.resolve_market(user_id="creator", contract_id="fr", outcome="1")
    assert unknown.message == "Contract already resolved"


@pytest.mark.parametrize(
    "error",
    [
        OperationalError("SELECT 1", {}, Exception("server closed the connection")),
        ConflictError("payout completion of contract c1 failed after 5 attempts"),
    ],
)
def test_storage_failure_after_resolution_returns_a_result(service, store, market, monkeypatch, error):
    def failing_apply_payouts(contract_id, *, notify=True):
        raise error

    monkeypatch.setattr(service, "apply_payouts", failing_apply_payouts)

    result = _resolve(service, "YES")

    assert result.status == "error"
    assert result.error_type == "partial_failure"
    assert result.data["resolution"] == "YES"
    assert result.failures[0]["contract_id"] == "c1"
    assert store.get_document(Contract, "c1").is_resolved is True
    assert store.get_document(Contract, "c1").payouts_applied is False

    monkeypatch.undo()
    report = service.apply_payouts("c1", notify=False)

    assert report.payouts_applied is True
    assert _balance(store, "A") == pytest.approx(1010.0)
