from __future__ import annotations

from core.types import PositionType, Transaction, TransactionType
from ledger.positions import (
    UNLINKED,
    build_positions,
    find_entry,
    group_transactions,
    summarize_positions,
)


def _t(**kw) -> Transaction:
    return Transaction.from_dict(kw)


def _round_trip(exits: list[tuple[int, float, str]], entry_qty: int = 10) -> list[Transaction]:
    txns = [
        _t(
            trade_id="T1",
            type="BUY",
            status="OPENED",
            quantity=entry_qty,
            entry_date="2024-01-01",
            entry_price=100.0,
        )
    ]
    for qty, pnl, date in exits:
        txns.append(
            _t(trade_id="T1", type="SELL", status="CLOSED", quantity=qty, exit_date=date, pnl=pnl)
        )
    return txns


# ------------------------------------------------------------
# Escenarios A, B, C
# ------------------------------------------------------------


def test_single_round_trip_closes_position():
    positions = build_positions(_round_trip([(10, 500.0, "2024-01-05")]))

    assert len(positions) == 1
    p = positions[0]
    assert p.trade_id == "T1"
    assert p.total_quantity == 10
    assert p.is_closed is True
    assert p.remaining_quantity == 0
    assert p.total_pnl == 500.0
    assert p.entry_date == "2024-01-01"
    assert p.entry_price == 100.0
    assert len(p.transactions) == 2


def test_partial_exits_sum_to_full_close():
    positions = build_positions(
        _round_trip([(4, 120.0, "2024-01-03"), (6, 330.0, "2024-01-07")])
    )

    p = positions[0]
    assert p.total_quantity == 10  # cantidad de la entrada, no suma del grupo
    assert p.is_closed is True
    assert p.remaining_quantity == 0
    assert p.total_pnl == 450.0


def test_partial_exit_leaves_remaining_quantity():
    p = build_positions(_round_trip([(4, 80.0, "2024-01-03")]))[0]

    assert p.is_closed is False
    assert p.remaining_quantity == 6
    assert p.total_pnl == 80.0


# ------------------------------------------------------------
# Reglas de entrada / salida
# ------------------------------------------------------------


def test_entry_detected_by_action_when_status_missing():
    txns = [
        _t(trade_id="S1", type="SELL", entry_action="SELL", exit_action="BUY", quantity=3,
           entry_date="2024-03-01", position_type="SHORT"),
        _t(trade_id="S1", type="BUY", entry_action="SELL", exit_action="BUY", quantity=3,
           exit_date="2024-03-02", pnl=-12.5),
    ]
    p = build_positions(txns)[0]

    assert p.position_type == PositionType.SHORT
    assert p.entry_action == TransactionType.SELL
    assert p.total_quantity == 3
    assert p.is_closed is True
    assert p.total_pnl == -12.5


def test_entry_fallback_uses_first_transaction_metadata():
    """Sin entrada reconocible: metadatos de la primera tras ordenar, cantidad 0."""
    txns = [
        _t(trade_id="X", type="SELL", status="CLOSED", quantity=5, exit_date="2024-02-03",
           entry_date="2024-01-20", entry_price=11.0, pnl=5.0),
        _t(trade_id="X", type="SELL", status="CLOSED", quantity=5, exit_date="2024-02-01",
           entry_date="2024-01-15", entry_price=10.0, pnl=7.0),
    ]
    p = build_positions(txns)[0]

    assert find_entry(group_transactions(txns)["X"]) is None
    assert p.entry_date == "2024-01-15"
    assert p.entry_price == 10.0
    assert p.total_quantity == 0
    assert p.total_pnl == 12.0
    assert p.remaining_quantity == 0
    assert p.is_closed is True


def test_entry_missing_fields_fall_back_per_field():
    """Campos vacíos de la entrada se completan con la primera transacción del grupo."""
    txns = [
        _t(trade_id="F", type="BUY", status="OPENED", quantity=3, entry_date="2024-01-10"),
        _t(trade_id="F", status="PENDING", entry_date="2024-01-02", entry_price=42.0),
        _t(trade_id="F", type="SELL", status="CLOSED", quantity=3, exit_date="2024-01-20"),
    ]
    p = build_positions(txns)[0]

    assert p.entry_date == "2024-01-10"
    assert p.entry_price == 42.0
    assert p.total_quantity == 3
    assert p.is_closed is True


def test_transactions_without_trade_id_go_to_unlinked_bucket():
    txns = [
        _t(type="BUY", status="OPENED", quantity=2, entry_date="2024-01-01"),
        _t(type="SELL", status="CLOSED", quantity=2, exit_date="2024-01-02"),
        _t(trade_id="T9", type="BUY", status="OPENED", quantity=1, entry_date="2024-01-03"),
    ]
    positions = build_positions(txns)

    ids = [p.trade_id for p in positions]
    assert ids == [UNLINKED, "T9"]
    assert positions[0].is_closed is True


def test_missing_fields_degrade_instead_of_failing():
    txns = [
        _t(trade_id="M", type="BUY", status="OPENED", quantity="abc", pnl="n/a"),
        _t(trade_id="M", type=None, status=None, quantity=None),
        Transaction(),
    ]
    positions = build_positions(txns)

    by_id = {p.trade_id: p for p in positions}
    assert by_id["M"].total_quantity == 0
    assert by_id["M"].total_pnl == 0.0
    assert UNLINKED in by_id


def test_financial_totals_sum_every_leg():
    txns = [
        _t(trade_id="F", type="BUY", status="OPENED", quantity=10, entry_date="2024-01-01",
           brokerage=1.0, platform_fees=0.5, transaction_amount=1000.0, total_amount=1001.5),
        _t(trade_id="F", type="SELL", status="CLOSED", quantity=10, exit_date="2024-01-02",
           pnl=100.0, pnl_comm=98.0, brokerage=1.0, platform_fees=0.5,
           transaction_amount=1100.0, total_amount=1098.5),
    ]
    p = build_positions(txns)[0]

    assert p.total_pnl == 100.0
    assert p.total_pnl_comm == 98.0
    assert p.total_brokerage == 2.0
    assert p.total_platform_fees == 1.0
    assert p.total_transaction_amount == 2100.0
    assert p.total_amount == 2100.0


def test_positions_sorted_by_entry_date():
    txns = [
        _t(trade_id="B", type="BUY", status="OPENED", quantity=1, entry_date="2024-05-01"),
        _t(trade_id="A", type="BUY", status="OPENED", quantity=1, entry_date="2024-02-01"),
        _t(trade_id="C", type="BUY", status="OPENED", quantity=1, entry_date="2024-03-01"),
    ]
    assert [p.trade_id for p in build_positions(txns)] == ["A", "C", "B"]


# ------------------------------------------------------------
# Propiedades
# ------------------------------------------------------------


def _mixed_dataset() -> list[Transaction]:
    return [
        _t(trade_id="T2", type="SELL", status="CLOSED", quantity=3, exit_date="2024-01-09"),
        _t(trade_id="T1", type="BUY", status="OPENED", quantity=10, entry_date="2024-01-01"),
        _t(trade_id="T2", type="BUY", status="OPENED", quantity=5, entry_date="2024-01-08"),
        _t(trade_id="T1", type="SELL", status="CLOSED", quantity=4, exit_date="2024-01-03"),
        _t(trade_id="T3", type="BUY", status="OPENED", quantity=7, entry_date="2024-01-04"),
        _t(trade_id="T1", type="SELL", status="CLOSED", quantity=6, exit_date="2024-01-05"),
        _t(trade_id="T3", type="SELL", status="CLOSED", quantity=9, exit_date="2024-01-06"),
        _t(type="SELL", status="CLOSED", quantity=2, date="2024-01-02"),
    ]


def test_entry_quantities_are_conserved():
    txns = _mixed_dataset()
    positions = build_positions(txns)

    expected = sum(t.quantity for t in txns if t.status == "OPENED")
    assert sum(p.total_quantity for p in positions) == expected


def test_reconciling_own_output_is_idempotent():
    positions = build_positions(_mixed_dataset())
    replay = [t for p in positions for t in p.transactions]

    assert build_positions(replay) == positions


def test_is_closed_iff_nothing_remaining():
    for p in build_positions(_mixed_dataset()):
        assert p.is_closed == (p.remaining_quantity == 0), p.trade_id


def test_over_closed_group_counts_as_closed():
    p = {p.trade_id: p for p in build_positions(_mixed_dataset())}["T3"]
    assert p.remaining_quantity == 0
    assert p.is_closed is True


def test_input_is_not_mutated():
    txns = _mixed_dataset()
    snapshot = list(txns)
    build_positions(txns)
    assert txns == snapshot


def test_summary_counts_open_and_closed():
    summary = summarize_positions(build_positions(_mixed_dataset()))

    assert summary.total == 4
    assert summary.closed == 3  # T1, T3, unlinked
    assert summary.open == 1  # T2
