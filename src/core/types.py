# src/core/types.py
"""
Tipos y estructuras comunes del monitor de backtests.

Entidades:
- Transaction: un evento del ledger (BUY/SELL) tal y como llega del motor remoto.
- Position: round-trip reconstruido a partir de un grupo de transacciones (derivado).
- Job: snapshot de un trabajo asíncrono (estado, progreso, resultado).
- HistoricalBar: una muestra OHLC de una serie de intervalo.
- BacktestResult: payload terminal de un job completado.

Todas son dataclasses inmutables (frozen): cada transición produce un objeto nuevo
y los lectores concurrentes nunca ven una estructura a medio actualizar.

Los `from_dict()` son tolerantes: ignoran claves desconocidas, convierten strings
numéricos y degradan a ausente (None) lo que no se puede interpretar.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import math
from typing import Any, Mapping

# ------------------------------ Enums ---------------------------------


class TransactionType(str, Enum):
    """Lado de la transacción."""

    BUY = "BUY"
    SELL = "SELL"


class PositionType(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class JobStatus(str, Enum):
    """Estados del ciclo de vida de un job."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    RESUMING = "resuming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Estado de transacción conocido; cualquier otro valor se conserva tal cual.
STATUS_OPENED = "OPENED"
STATUS_CLOSED = "CLOSED"

FINANCIAL_FIELDS = (
    "pnl",
    "pnl_comm",
    "brokerage",
    "platform_fees",
    "transaction_amount",
    "total_amount",
)

# ------------------------------ Helpers de parseo -------------------------


def _opt_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(out) or math.isinf(out):
        return None
    return out


def _opt_int(value: Any) -> int | None:
    f = _opt_float(value)
    return None if f is None else int(f)


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value)
    return s if s != "" else None


def _upper(value: Any) -> str | None:
    s = _opt_str(value)
    return s.strip().upper() if s else None


def _enum_or_none(enum_cls: type[Enum], value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError:
        try:
            return enum_cls(str(value).strip().lower())
        except ValueError:
            return None


def parse_job_status(value: Any, default: JobStatus = JobStatus.PENDING) -> JobStatus:
    """Normaliza un estado recibido; los desconocidos caen a `default`."""
    status = _enum_or_none(JobStatus, value)
    return status if status is not None else default


# ------------------------------ Dataclasses -------------------------------


@dataclass(frozen=True)
class Transaction:
    """
    Un evento del ledger.

    `trade_id` agrupa eventos en una posición; si falta, el evento cae en el grupo
    implícito "unlinked". Los campos financieros ausentes cuentan como 0 al agregar.
    """

    type: TransactionType | None = None
    quantity: int = 0
    trade_id: str | None = None
    status: str | None = None
    entry_action: TransactionType | None = None
    exit_action: TransactionType | None = None
    entry_date: str | None = None
    exit_date: str | None = None
    date: str | None = None
    entry_price: float | None = None
    exit_price: float | None = None
    position_type: PositionType | None = None
    pnl: float | None = None
    pnl_comm: float | None = None
    brokerage: float | None = None
    platform_fees: float | None = None
    transaction_amount: float | None = None
    total_amount: float | None = None
    symbol: str | None = None
    exchange: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Transaction:
        qty = _opt_int(data.get("quantity"))
        return cls(
            type=_enum_or_none(TransactionType, data.get("type")),
            quantity=qty if qty is not None and qty > 0 else 0,
            trade_id=_opt_str(data.get("trade_id")),
            status=_upper(data.get("status")),
            entry_action=_enum_or_none(TransactionType, data.get("entry_action")),
            exit_action=_enum_or_none(TransactionType, data.get("exit_action")),
            entry_date=_opt_str(data.get("entry_date")),
            exit_date=_opt_str(data.get("exit_date")),
            date=_opt_str(data.get("date")),
            entry_price=_opt_float(data.get("entry_price")),
            exit_price=_opt_float(data.get("exit_price")),
            position_type=_enum_or_none(PositionType, data.get("position_type")),
            pnl=_opt_float(data.get("pnl")),
            pnl_comm=_opt_float(data.get("pnl_comm")),
            brokerage=_opt_float(data.get("brokerage")),
            platform_fees=_opt_float(data.get("platform_fees")),
            transaction_amount=_opt_float(data.get("transaction_amount")),
            total_amount=_opt_float(data.get("total_amount")),
            symbol=_opt_str(data.get("symbol")),
            exchange=_opt_str(data.get("exchange")),
        )

    def amount(self, name: str) -> float:
        """Valor financiero `name` con ausente → 0.0."""
        value = getattr(self, name)
        return float(value) if value is not None else 0.0

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key, value in self.__dict__.items():
            out[key] = value.value if isinstance(value, Enum) else value
        return out


@dataclass(frozen=True)
class Position:
    """Round-trip (o cierre parcial) reconstruido; nunca se persiste por separado."""

    trade_id: str
    position_type: PositionType = PositionType.LONG
    entry_action: TransactionType = TransactionType.BUY
    exit_action: TransactionType = TransactionType.SELL
    entry_date: str = ""
    entry_price: float = 0.0
    total_quantity: int = 0
    total_pnl: float = 0.0
    total_pnl_comm: float = 0.0
    total_brokerage: float = 0.0
    total_platform_fees: float = 0.0
    total_transaction_amount: float = 0.0
    total_amount: float = 0.0
    is_closed: bool = False
    remaining_quantity: int = 0
    transactions: tuple[Transaction, ...] = ()
    symbol: str | None = None
    exchange: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Position:
        """Posición precalculada por el backend (caso "autoritativo")."""
        txns = tuple(
            Transaction.from_dict(t) for t in (data.get("transactions") or []) if isinstance(t, Mapping)
        )
        total_qty = _opt_int(data.get("total_quantity")) or 0
        remaining = _opt_int(data.get("remaining_quantity"))
        is_closed = data.get("is_closed")
        return cls(
            trade_id=_opt_str(data.get("trade_id")) or "unlinked",
            position_type=_enum_or_none(PositionType, data.get("position_type")) or PositionType.LONG,
            entry_action=_enum_or_none(TransactionType, data.get("entry_action")) or TransactionType.BUY,
            exit_action=_enum_or_none(TransactionType, data.get("exit_action")) or TransactionType.SELL,
            entry_date=_opt_str(data.get("entry_date")) or "",
            entry_price=_opt_float(data.get("entry_price")) or 0.0,
            total_quantity=total_qty,
            total_pnl=_opt_float(data.get("total_pnl")) or 0.0,
            total_pnl_comm=_opt_float(data.get("total_pnl_comm")) or 0.0,
            total_brokerage=_opt_float(data.get("total_brokerage")) or 0.0,
            total_platform_fees=_opt_float(data.get("total_platform_fees")) or 0.0,
            total_transaction_amount=_opt_float(data.get("total_transaction_amount")) or 0.0,
            total_amount=_opt_float(data.get("total_amount")) or 0.0,
            is_closed=bool(is_closed) if is_closed is not None else remaining == 0,
            remaining_quantity=remaining if remaining is not None else 0,
            transactions=txns,
            symbol=_opt_str(data.get("symbol")),
            exchange=_opt_str(data.get("exchange")),
        )


@dataclass(frozen=True)
class HistoricalBar:
    """Muestra OHLC de una serie; `time` es el ISO-8601 recibido."""

    time: str
    open: float | None = None
    high: float | None = None
    low: float | None = None
    close: float | None = None
    volume: float | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> HistoricalBar | None:
        t = _opt_str(data.get("time") or data.get("date"))
        if t is None:
            return None
        return cls(
            time=t,
            open=_opt_float(data.get("open")),
            high=_opt_float(data.get("high")),
            low=_opt_float(data.get("low")),
            close=_opt_float(data.get("close")),
            volume=_opt_float(data.get("volume")),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(frozen=True)
class BacktestResult:
    """
    Payload terminal de un job.

    `positions` es None cuando el backend no envía lista propia; una lista vacía
    significa "el backend dice que no hay posiciones".
    """

    backtest_id: str | None = None
    total_trades: int = 0
    transactions: tuple[Transaction, ...] = ()
    positions: tuple[Position, ...] | None = None
    metrics: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> BacktestResult:
        data = data or {}
        raw_txns = data.get("transactions") or []
        raw_positions = data.get("positions")
        positions: tuple[Position, ...] | None = None
        if isinstance(raw_positions, list):
            positions = tuple(Position.from_dict(p) for p in raw_positions if isinstance(p, Mapping))
        reserved = {"backtest_id", "total_trades", "transactions", "positions"}
        return cls(
            backtest_id=_opt_str(data.get("backtest_id")),
            total_trades=_opt_int(data.get("total_trades")) or 0,
            transactions=tuple(
                Transaction.from_dict(t) for t in raw_txns if isinstance(t, Mapping)
            ),
            positions=positions,
            metrics={k: v for k, v in data.items() if k not in reserved},
        )


@dataclass(frozen=True)
class Job:
    """
    Snapshot de un job asíncrono.

    Invariante: `result` solo con status=completed y `error_message` solo con
    status=failed (lo garantiza `normalized()`).
    """

    job_id: str
    status: JobStatus = JobStatus.PENDING
    progress: float = 0.0
    current_bar: int | None = None
    total_bars: int | None = None
    result: Mapping[str, Any] | None = None
    error_message: str | None = None
    message: str | None = None
    strategy_id: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    paused_at: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Job:
        result = data.get("result")
        progress = _opt_float(data.get("progress"))
        return cls(
            job_id=str(data.get("job_id") or data.get("id") or ""),
            status=parse_job_status(data.get("status")),
            progress=min(100.0, max(0.0, progress)) if progress is not None else 0.0,
            current_bar=_opt_int(data.get("current_bar")),
            total_bars=_opt_int(data.get("total_bars")),
            result=dict(result) if isinstance(result, Mapping) else None,
            error_message=_opt_str(data.get("error_message")),
            message=_opt_str(data.get("progress_message") or data.get("message")),
            strategy_id=_opt_str(data.get("strategy_id")),
            created_at=_opt_str(data.get("created_at")),
            started_at=_opt_str(data.get("started_at")),
            completed_at=_opt_str(data.get("completed_at")),
            paused_at=_opt_str(data.get("paused_at")),
        ).normalized()

    def normalized(self) -> Job:
        """Aplica las invariantes result/error_message según el estado."""
        result = self.result if self.status == JobStatus.COMPLETED else None
        error = self.error_message if self.status == JobStatus.FAILED else None
        if result is self.result and error is self.error_message:
            return self
        return replace(self, result=result, error_message=error)

    def evolve(self, **changes: Any) -> Job:
        """Nuevo snapshot con `changes` aplicados (y las invariantes respetadas)."""
        return replace(self, **changes).normalized()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def has_result(self) -> bool:
        return self.result is not None

    def backtest_result(self) -> BacktestResult | None:
        return BacktestResult.from_dict(self.result) if self.result is not None else None


__all__ = [
    "TransactionType",
    "PositionType",
    "JobStatus",
    "TERMINAL_STATUSES",
    "STATUS_OPENED",
    "STATUS_CLOSED",
    "FINANCIAL_FIELDS",
    "parse_job_status",
    "Transaction",
    "Position",
    "HistoricalBar",
    "BacktestResult",
    "Job",
]
