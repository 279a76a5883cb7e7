# src/ledger/__init__.py
"""
Ledger de un backtest: reconciliación de posiciones, vista cronológica y
detección de discrepancias.

Uso típico:
    from ledger import build_ledger_view
    view = build_ledger_view(job.result)
"""

from .discrepancy import Discrepancy, detect_discrepancy
from .positions import PositionSummary, build_positions, summarize_positions
from .transactions import (
    LedgerTotals,
    TransactionLedger,
    build_transaction_ledger,
    ledger_totals,
    sort_transactions,
)
from .view import LedgerView, build_ledger_view, build_live_ledger_view

__all__ = [
    "Discrepancy",
    "detect_discrepancy",
    "PositionSummary",
    "build_positions",
    "summarize_positions",
    "LedgerTotals",
    "TransactionLedger",
    "build_transaction_ledger",
    "ledger_totals",
    "sort_transactions",
    "LedgerView",
    "build_ledger_view",
    "build_live_ledger_view",
]
