"""Núcleo compartido: modelo de datos, errores, logging y configuración."""

from core.errors import ApiError, AuthError, ClientError, RetryableError, TransportError
from core.types import (
    BacktestResult,
    HistoricalBar,
    Job,
    JobStatus,
    Position,
    PositionType,
    Transaction,
    TransactionType,
)

__all__ = [
    # Modelo
    "Transaction",
    "TransactionType",
    "Position",
    "PositionType",
    "Job",
    "JobStatus",
    "HistoricalBar",
    "BacktestResult",
    # Errores
    "ClientError",
    "TransportError",
    "ApiError",
    "AuthError",
    "RetryableError",
]
