# src/ledger/positions.py
"""
Reconciliación transacciones → posiciones (round-trips con cierres parciales).

Función pura: mismo input, mismo output. Nunca lanza por datos mal formados; los
campos ausentes degradan a cero/vacío.

Algoritmo
---------
1. Agrupar por `trade_id` (ausente → grupo literal "unlinked").
2. Dentro del grupo, orden estable por `exit_date ?? entry_date ?? ""`.
3. Entrada: la primera con status OPENED, o con type == entry_action y status != CLOSED.
4. Salidas: todas con status CLOSED, o con type == exit_action y status != OPENED.
5. total_quantity = cantidad de la entrada (0 si no hay entrada), no la suma del grupo.
6. Campos financieros: suma sobre TODO el grupo (entrada + salidas).
7. is_closed = Σ salidas ≥ total_quantity; remaining = max(0, total_quantity − Σ salidas).
   Un grupo sobre-cerrado (Σ salidas > entrada) también se marca cerrado.
8. Lista final ordenada (estable) por entry_date.

Los metadatos de la posición (tipo, acciones, fecha y precio de entrada) se toman
campo a campo de la entrada; un campo vacío en ella se completa con la primera
transacción tras ordenar. Sin entrada salen todos de esa primera transacción,
aunque sea una salida, y la cantidad de entrada queda en 0 (el grupo cuenta como
cerrado si tiene salidas).
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from core.types import (
    STATUS_CLOSED,
    STATUS_OPENED,
    Position,
    PositionType,
    Transaction,
    TransactionType,
)

UNLINKED = "unlinked"

__all__ = [
    "UNLINKED",
    "group_key",
    "group_sort_key",
    "is_entry",
    "is_exit",
    "find_entry",
    "find_exits",
    "group_transactions",
    "build_position",
    "build_positions",
    "PositionSummary",
    "summarize_positions",
]


def group_key(txn: Transaction) -> str:
    return txn.trade_id or UNLINKED


def group_sort_key(txn: Transaction) -> str:
    """Clave de orden dentro de un grupo: exit_date ?? entry_date ?? ""."""
    return txn.exit_date or txn.entry_date or ""


def is_entry(txn: Transaction) -> bool:
    if txn.status == STATUS_OPENED:
        return True
    return txn.type is not None and txn.type == txn.entry_action and txn.status != STATUS_CLOSED


def is_exit(txn: Transaction) -> bool:
    if txn.status == STATUS_CLOSED:
        return True
    return txn.type is not None and txn.type == txn.exit_action and txn.status != STATUS_OPENED


def find_entry(group: Sequence[Transaction]) -> Transaction | None:
    return next((t for t in group if is_entry(t)), None)


def find_exits(group: Sequence[Transaction]) -> list[Transaction]:
    return [t for t in group if is_exit(t)]


def group_transactions(transactions: Iterable[Transaction]) -> dict[str, list[Transaction]]:
    """
    Agrupa por trade_id conservando el orden de primera aparición de cada grupo
    y ordena cada grupo de forma estable.
    """
    groups: dict[str, list[Transaction]] = {}
    for txn in transactions:
        groups.setdefault(group_key(txn), []).append(txn)
    for txns in groups.values():
        txns.sort(key=group_sort_key)
    return groups


def _sum(txns: Iterable[Transaction], name: str) -> float:
    return sum((t.amount(name) for t in txns), 0.0)


def _pick(candidates: Sequence[Transaction], name: str):
    """Primer valor no vacío de `name`: la entrada y, si falta, la primera del grupo."""
    return next((v for v in (getattr(t, name) for t in candidates) if v), None)


def build_position(trade_id: str, group: Sequence[Transaction]) -> Position:
    """Construye la Position de un grupo ya ordenado."""
    entry = find_entry(group)
    exits = find_exits(group)
    first = group[0] if group else None
    meta = [t for t in (entry, first) if t is not None]

    entry_qty = entry.quantity if entry is not None else 0
    closed_qty = sum(t.quantity for t in exits)

    return Position(
        trade_id=trade_id,
        position_type=_pick(meta, "position_type") or PositionType.LONG,
        entry_action=_pick(meta, "entry_action") or TransactionType.BUY,
        exit_action=_pick(meta, "exit_action") or TransactionType.SELL,
        entry_date=_pick(meta, "entry_date") or "",
        entry_price=_pick(meta, "entry_price") or 0.0,
        total_quantity=entry_qty,
        total_pnl=_sum(group, "pnl"),
        total_pnl_comm=_sum(group, "pnl_comm"),
        total_brokerage=_sum(group, "brokerage"),
        total_platform_fees=_sum(group, "platform_fees"),
        total_transaction_amount=_sum(group, "transaction_amount"),
        total_amount=_sum(group, "total_amount"),
        # Sobre-cierre (Σ salidas > entrada) cuenta como cerrada: is_closed ⇔ remaining == 0.
        # Sin entrada (entry_qty == 0) el grupo sale cerrado aunque tenga salidas.
        is_closed=closed_qty >= entry_qty,
        remaining_quantity=max(0, entry_qty - closed_qty),
        transactions=tuple(group),
        symbol=first.symbol if first else None,
        exchange=first.exchange if first else None,
    )


def build_positions(transactions: Iterable[Transaction]) -> list[Position]:
    """
    Reconstruye las posiciones a partir de un snapshot de transacciones.

    Se recalcula entera en cada pasada; no muta el input ni reutiliza posiciones previas.
    """
    positions = [build_position(tid, txns) for tid, txns in group_transactions(transactions).items()]
    positions.sort(key=lambda p: p.entry_date or "")
    return positions


@dataclass(frozen=True)
class PositionSummary:
    total: int
    closed: int
    open: int
    unique_trade_ids: int


def summarize_positions(positions: Sequence[Position]) -> PositionSummary:
    closed = sum(1 for p in positions if p.is_closed)
    return PositionSummary(
        total=len(positions),
        closed=closed,
        open=len(positions) - closed,
        unique_trade_ids=len({p.trade_id for p in positions}),
    )
