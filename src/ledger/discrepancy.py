# src/ledger/discrepancy.py
"""
Detector de discrepancias entre contadores del backend y estructuras locales.

- Con lista de posiciones del backend: compara len(positions) con total_trades.
- Sin ella: usa las posiciones calculadas en cliente y compara la cardinalidad de
  trade_id únicos con total_trades.

Nunca corrige ni oculta nada: devuelve un diagnóstico (o None si cuadra) y deja
ambos números intactos. No se intenta adivinar cuál de los dos es el "bueno".
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from loguru import logger

from core.types import Position, Transaction

from .positions import UNLINKED

__all__ = ["Discrepancy", "unique_trade_ids", "detect_discrepancy"]

PositionSource = Literal["backend", "computed"]


@dataclass(frozen=True)
class Discrepancy:
    """Registro de diagnóstico para mostrar junto al ledger."""

    source: PositionSource
    reported_total_trades: int
    compared_count: int
    position_count: int
    closed_positions: int
    open_positions: int
    unique_trade_ids: int

    @property
    def difference(self) -> int:
        return self.compared_count - self.reported_total_trades

    def describe(self) -> str:
        label = "posiciones del backend" if self.source == "backend" else "trade_id únicos"
        return (
            f"Discrepancia: total_trades={self.reported_total_trades} vs {label}={self.compared_count} "
            f"(cerradas={self.closed_positions}, abiertas={self.open_positions}, "
            f"trade_ids={self.unique_trade_ids})"
        )


def unique_trade_ids(transactions: Sequence[Transaction]) -> int:
    """Trade ids distintos presentes (las transacciones sin trade_id no cuentan)."""
    return len({t.trade_id for t in transactions if t.trade_id})


def _position_trade_ids(positions: Sequence[Position]) -> int:
    return len({p.trade_id for p in positions if p.trade_id and p.trade_id != UNLINKED})


def detect_discrepancy(
    total_trades: int,
    positions: Sequence[Position],
    *,
    backend_positions: bool,
    transactions: Sequence[Transaction] = (),
) -> Discrepancy | None:
    """
    Compara el contador del backend con lo reconstruido.

    Parámetros
    ----------
    total_trades : int
        Contador `total_trades` reportado por el backend.
    positions : Sequence[Position]
        Posiciones mostradas (del backend o calculadas en cliente).
    backend_positions : bool
        True si `positions` viene del backend (caso autoritativo).
    transactions : Sequence[Transaction]
        Transacciones crudas; en el caso calculado se usan para contar trade_id únicos.
    """
    closed = sum(1 for p in positions if p.is_closed)
    if transactions:
        trade_ids = unique_trade_ids(transactions)
    else:
        trade_ids = _position_trade_ids(positions)

    compared = len(positions) if backend_positions else trade_ids
    if compared == total_trades:
        return None

    diag = Discrepancy(
        source="backend" if backend_positions else "computed",
        reported_total_trades=total_trades,
        compared_count=compared,
        position_count=len(positions),
        closed_positions=closed,
        open_positions=len(positions) - closed,
        unique_trade_ids=trade_ids,
    )
    logger.warning(diag.describe())
    return diag
