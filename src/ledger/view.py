# src/ledger/view.py
"""
Ensamblado de la vista de ledger de un resultado de backtest.

Decide qué posiciones se muestran (las del backend si vienen, si no las calculadas
en cliente), construye la vista cronológica con totales y adjunta el diagnóstico
de discrepancia. Nada de esto muta el resultado recibido.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from core.types import BacktestResult, Position, Transaction

from .discrepancy import Discrepancy, detect_discrepancy
from .positions import PositionSummary, build_positions, summarize_positions
from .transactions import TransactionLedger, build_transaction_ledger

__all__ = ["LedgerView", "build_ledger_view", "build_live_ledger_view"]


@dataclass(frozen=True)
class LedgerView:
    positions: tuple[Position, ...]
    backend_positions: bool
    ledger: TransactionLedger
    summary: PositionSummary
    total_trades: int | None = None
    discrepancy: Discrepancy | None = None

    @property
    def has_discrepancy(self) -> bool:
        return self.discrepancy is not None


def build_ledger_view(result: BacktestResult | Mapping[str, Any]) -> LedgerView:
    """Vista completa de un resultado terminal (payload crudo o ya parseado)."""
    if not isinstance(result, BacktestResult):
        result = BacktestResult.from_dict(result)

    backend = result.positions is not None
    if backend:
        positions = tuple(result.positions or ())
    else:
        positions = tuple(build_positions(result.transactions))

    discrepancy = detect_discrepancy(
        result.total_trades,
        positions,
        backend_positions=backend,
        transactions=result.transactions,
    )
    return LedgerView(
        positions=positions,
        backend_positions=backend,
        ledger=build_transaction_ledger(result.transactions),
        summary=summarize_positions(positions),
        total_trades=result.total_trades,
        discrepancy=discrepancy,
    )


def build_live_ledger_view(transactions: Iterable[Transaction]) -> LedgerView:
    """Vista previa mientras el job corre: sin contador del backend, sin diagnóstico."""
    txns = tuple(transactions)
    positions = tuple(build_positions(txns))
    return LedgerView(
        positions=positions,
        backend_positions=False,
        ledger=build_transaction_ledger(txns),
        summary=summarize_positions(positions),
    )
