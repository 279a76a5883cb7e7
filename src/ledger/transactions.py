# src/ledger/transactions.py
"""
Vista cronológica del ledger (sin agrupar por trade) + totales generales.

Orden: clave primaria dependiente del tipo
  - BUY  → entry_date ?? exit_date ?? date ?? ""
  - SELL → exit_date ?? entry_date ?? date ?? ""
  (tipo ausente se trata como SELL, igual que cualquier no-BUY)
desempate por entry_date ascendente. `sorted` es estable, así que ordenar una
lista ya ordenada la deja igual.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from core.types import FINANCIAL_FIELDS, Transaction, TransactionType

__all__ = [
    "chronological_date",
    "chronological_key",
    "sort_transactions",
    "LedgerTotals",
    "ledger_totals",
    "TransactionLedger",
    "build_transaction_ledger",
]


def chronological_date(txn: Transaction) -> str:
    if txn.type == TransactionType.BUY:
        return txn.entry_date or txn.exit_date or txn.date or ""
    return txn.exit_date or txn.entry_date or txn.date or ""


def chronological_key(txn: Transaction) -> tuple[str, str]:
    return (chronological_date(txn), txn.entry_date or "")


def sort_transactions(transactions: Iterable[Transaction]) -> list[Transaction]:
    """Copia ordenada cronológicamente; no toca el input."""
    return sorted(transactions, key=chronological_key)


@dataclass(frozen=True)
class LedgerTotals:
    pnl: float = 0.0
    pnl_comm: float = 0.0
    brokerage: float = 0.0
    platform_fees: float = 0.0
    transaction_amount: float = 0.0
    total_amount: float = 0.0
    count: int = 0


def ledger_totals(transactions: Sequence[Transaction]) -> LedgerTotals:
    """Sumas simples de los seis campos financieros (ausente → 0)."""
    sums = {name: sum((t.amount(name) for t in transactions), 0.0) for name in FINANCIAL_FIELDS}
    return LedgerTotals(count=len(transactions), **sums)


@dataclass(frozen=True)
class TransactionLedger:
    transactions: tuple[Transaction, ...]
    totals: LedgerTotals


def build_transaction_ledger(transactions: Iterable[Transaction]) -> TransactionLedger:
    ordered = sort_transactions(transactions)
    return TransactionLedger(transactions=tuple(ordered), totals=ledger_totals(ordered))
