# src/ledger/frames.py
"""
Exportación del ledger a pandas.DataFrame (para CSV / análisis en notebook).

API:
- positions_to_frame(positions) -> DataFrame (una fila por posición)
- transactions_to_frame(transactions) -> DataFrame (una fila por transacción)
- totals_row(totals) -> dict
- write_ledger_csv(view, out_dir) -> dict[str, Path]
"""

from __future__ import annotations

from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterable, Sequence

from loguru import logger
import pandas as pd

from core.types import Position, Transaction

from .transactions import LedgerTotals
from .view import LedgerView

POSITION_COLUMNS = [
    "trade_id",
    "position_type",
    "entry_action",
    "exit_action",
    "entry_date",
    "entry_price",
    "total_quantity",
    "remaining_quantity",
    "is_closed",
    "total_pnl",
    "total_pnl_comm",
    "total_brokerage",
    "total_platform_fees",
    "total_transaction_amount",
    "total_amount",
    "n_transactions",
    "symbol",
    "exchange",
]

TRANSACTION_COLUMNS = [
    "trade_id",
    "type",
    "status",
    "quantity",
    "entry_action",
    "exit_action",
    "entry_date",
    "exit_date",
    "date",
    "entry_price",
    "exit_price",
    "position_type",
    "pnl",
    "pnl_comm",
    "brokerage",
    "platform_fees",
    "transaction_amount",
    "total_amount",
    "symbol",
    "exchange",
]


def _position_row(p: Position) -> Dict[str, Any]:
    return {
        "trade_id": p.trade_id,
        "position_type": p.position_type.value,
        "entry_action": p.entry_action.value,
        "exit_action": p.exit_action.value,
        "entry_date": p.entry_date,
        "entry_price": p.entry_price,
        "total_quantity": p.total_quantity,
        "remaining_quantity": p.remaining_quantity,
        "is_closed": p.is_closed,
        "total_pnl": p.total_pnl,
        "total_pnl_comm": p.total_pnl_comm,
        "total_brokerage": p.total_brokerage,
        "total_platform_fees": p.total_platform_fees,
        "total_transaction_amount": p.total_transaction_amount,
        "total_amount": p.total_amount,
        "n_transactions": len(p.transactions),
        "symbol": p.symbol,
        "exchange": p.exchange,
    }


def positions_to_frame(positions: Iterable[Position]) -> pd.DataFrame:
    rows = [_position_row(p) for p in positions]
    return pd.DataFrame(rows, columns=POSITION_COLUMNS)


def transactions_to_frame(transactions: Sequence[Transaction]) -> pd.DataFrame:
    """Una fila por transacción, en el orden recibido (ordenar antes si hace falta)."""
    rows = [t.as_dict() for t in transactions]
    return pd.DataFrame(rows, columns=TRANSACTION_COLUMNS)


def totals_row(totals: LedgerTotals) -> Dict[str, Any]:
    return asdict(totals)


def write_ledger_csv(view: LedgerView, out_dir: str | Path) -> Dict[str, Path]:
    """Escribe positions.csv y transactions.csv en `out_dir` (se crea si no existe)."""
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)

    paths = {
        "positions": out / "positions.csv",
        "transactions": out / "transactions.csv",
    }
    positions_to_frame(view.positions).to_csv(paths["positions"], index=False)
    transactions_to_frame(view.ledger.transactions).to_csv(paths["transactions"], index=False)

    logger.info(
        f"Ledger exportado en {out} ({len(view.positions)} posiciones, "
        f"{len(view.ledger.transactions)} transacciones)"
    )
    return paths
