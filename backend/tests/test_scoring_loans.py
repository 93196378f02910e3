from __future__ import annotations

import pytest

from app.domain import SaleRecord
from app.domain.loans import compute_loan_updates
from app.domain.metrics import calculate_new_portfolio_metrics
from app.domain.scoring import score_creators, score_traders
from factories import NOW, make_bet, make_contract, make_user


def test_score_creators_sums_volume_and_skips_missing_contracts():
    contracts = [
        make_contract(id="c1", creator_id="alice", volume=30.0),
        None,
        make_contract(id="c2", creator_id="alice", volume=12.0),
        make_contract(id="c3", creator_id="bob", volume=5.0),
    ]
    assert score_creators(contracts) == {"alice": 42.0, "bob": 5.0}


def test_score_traders_uses_payouts_for_resolved_contracts():
    resolved = make_contract(id="c1", is_resolved=True, resolution="YES")
    bets = [
        make_bet("b1", "u1", "YES", amount=10.0, shares=18.0),
        make_bet("b2", "u2", "NO", amount=10.0, shares=15.0),
    ]
    scores = score_traders([resolved], [bets])
    assert scores["u1"] == pytest.approx(8.0)
    assert scores["u2"] == pytest.approx(-10.0)


def test_score_traders_marks_open_contracts_to_market_and_counts_sales():
    open_contract = make_contract(id="c1", pool={"YES": 50.0, "NO": 50.0})
    bets = [
        make_bet("b1", "u1", "YES", amount=10.0, shares=16.0),
        make_bet("b2", "u2", "YES", amount=10.0, shares=16.0, is_sold=True),
        make_bet("b3", "u2", "YES", amount=-12.0, shares=-16.0, sale=SaleRecord(amount=11.9, bet_id="b2")),
    ]
    scores = score_traders([open_contract, None], [bets, []])
    assert scores["u1"] == pytest.approx(0.5 * 16.0 - 10.0)
    assert scores["u2"] == pytest.approx(2.0)


def test_loans_are_a_fraction_of_open_investment():
    contract = make_contract(id="c1", pool={"YES": 50.0, "NO": 50.0})
    contracts = {"c1": contract}
    bets_by_user = {"u1": [make_bet("b1", "u1", "YES", 10.0, 20.0)], "u2": []}
    users = [make_user("u1"), make_user("u2")]
    portfolios = {
        user.id: calculate_new_portfolio_metrics(user, contracts, bets_by_user[user.id], NOW) for user in users
    }

    loans = compute_loan_updates(users, contracts, portfolios, bets_by_user, rate=0.05)

    assert len(loans) == 1
    assert loans[0].user_id == "u1"
    assert loans[0].payout == pytest.approx(0.05 * 10.0)


def test_loans_fall_back_to_bets_without_portfolio():
    contract = make_contract(id="c1", pool={"YES": 50.0, "NO": 50.0})
    loans = compute_loan_updates(
        [make_user("u1")],
        {"c1": contract},
        {},
        {"u1": [make_bet("b1", "u1", "NO", 10.0, 40.0)]},
        rate=0.1,
    )
    assert loans[0].payout == pytest.approx(2.0)
