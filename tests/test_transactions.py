from __future__ import annotations

from core.types import Transaction
from ledger.transactions import (
    build_transaction_ledger,
    chronological_key,
    ledger_totals,
    sort_transactions,
)


def _t(**kw) -> Transaction:
    return Transaction.from_dict(kw)


def _ledger() -> list[Transaction]:
    return [
        _t(trade_id="T1", type="SELL", status="CLOSED", quantity=10,
           entry_date="2024-01-01", exit_date="2024-01-05", pnl=50.0, brokerage=1.0),
        _t(trade_id="T2", type="BUY", status="OPENED", quantity=3,
           entry_date="2024-01-03", transaction_amount=300.0),
        _t(trade_id="T1", type="BUY", status="OPENED", quantity=10,
           entry_date="2024-01-01", brokerage=1.0, total_amount=1001.0),
        _t(trade_id="T3", type="SELL", quantity=1, date="2024-01-04", pnl_comm=-2.0),
        _t(trade_id="T4", type="SELL", quantity=1, entry_date="2024-01-02"),
    ]


def test_buy_sorted_by_entry_and_sell_by_exit_date():
    ordered = sort_transactions(_ledger())
    keys = [(t.trade_id, t.type.value) for t in ordered]

    assert keys == [
        ("T1", "BUY"),  # 01-01 (entry)
        ("T4", "SELL"),  # sin exit_date → entry_date 01-02
        ("T2", "BUY"),  # 01-03
        ("T3", "SELL"),  # solo date 01-04
        ("T1", "SELL"),  # 01-05 (exit)
    ]


def test_sort_keys_are_non_decreasing():
    keys = [chronological_key(t) for t in sort_transactions(_ledger())]
    assert keys == sorted(keys)


def test_sorting_twice_is_a_no_op():
    once = sort_transactions(_ledger())
    twice = sort_transactions(once)
    assert twice == once


def test_tie_break_on_entry_date():
    a = _t(trade_id="A", type="SELL", exit_date="2024-02-01", entry_date="2024-01-20")
    b = _t(trade_id="B", type="SELL", exit_date="2024-02-01", entry_date="2024-01-10")
    assert [t.trade_id for t in sort_transactions([a, b])] == ["B", "A"]


def test_grand_totals_treat_absent_as_zero():
    totals = ledger_totals(_ledger())

    assert totals.count == 5
    assert totals.pnl == 50.0
    assert totals.pnl_comm == -2.0
    assert totals.brokerage == 2.0
    assert totals.platform_fees == 0.0
    assert totals.transaction_amount == 300.0
    assert totals.total_amount == 1001.0


def test_empty_ledger():
    ledger = build_transaction_ledger([])
    assert ledger.transactions == ()
    assert ledger.totals.count == 0
    assert ledger.totals.pnl == 0.0


def test_ledger_does_not_mutate_input():
    txns = _ledger()
    original = list(txns)
    ledger = build_transaction_ledger(txns)

    assert txns == original
    assert isinstance(ledger.transactions, tuple)
