# src/bars/assembler.py
"""
Reensamblado de series históricas que llegan por trozos (chunks).

Cada serie (intervalo: "day", "week", ...) tiene su propia máquina de estados:

    NOT_STARTED → LOADING → (chunks parciales)* → COMPLETE | ERROR

El estado de cada serie es un `SeriesState` inmutable: cada chunk produce una tupla
nueva de puntos, así que dos paneles leyendo series distintas (o
la misma serie en dos momentos) nunca comparten un buffer mutable.

Errores por serie (no bloquean las demás):
- interval_mismatch: se pidió X pero el payload viene etiquetado como Y. Se reporta,
  nunca se sustituye en silencio.
- not_found: el servidor no tiene ese intervalo (puede traer `available_intervals`).
- transport / parse: el canal se cayó o el payload no se pudo interpretar.

Eventos aceptados por `apply_event` (nombres del canal SSE):
    interval_start, data_chunk, interval_complete, complete, all_complete, error
"""

from __future__ import annotations

from collections.abc import AsyncIterable, Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from loguru import logger
import pandas as pd

from core.types import HistoricalBar

__all__ = [
    "SeriesPhase",
    "SeriesError",
    "SeriesState",
    "StreamingDataAssembler",
    "merge_points",
    "parse_points",
]


# ============================================================
# Tipos
# ============================================================


class SeriesPhase(str, Enum):
    NOT_STARTED = "not_started"
    LOADING = "loading"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class SeriesError:
    """Error de una serie concreta; `kind` permite distinguir el mismatch del resto."""

    kind: str  # interval_mismatch | not_found | transport | parse
    message: str
    available_intervals: tuple[str, ...] = ()

    @property
    def is_mismatch(self) -> bool:
        return self.kind == "interval_mismatch"


@dataclass(frozen=True)
class SeriesState:
    interval: str
    phase: SeriesPhase = SeriesPhase.NOT_STARTED
    points: tuple[HistoricalBar, ...] = ()
    total_points: int | None = None
    error: SeriesError | None = None
    is_partial: bool = False
    current_bar: int | None = None
    job_status: str | None = None

    @property
    def loading(self) -> bool:
        return self.phase == SeriesPhase.LOADING

    @property
    def returned_points(self) -> int:
        return len(self.points)

    @property
    def is_truncated(self) -> bool:
        """True si el servidor tiene más puntos de los devueltos (límite aplicado)."""
        return self.total_points is not None and self.total_points > self.returned_points


# ============================================================
# Helpers puros
# ============================================================


def parse_points(raw: Any) -> list[HistoricalBar]:
    """Convierte la lista cruda de puntos; descarta los que no traen `time`."""
    if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)):
        return []
    out: list[HistoricalBar] = []
    for item in raw:
        if isinstance(item, HistoricalBar):
            out.append(item)
        elif isinstance(item, Mapping):
            bar = HistoricalBar.from_dict(item)
            if bar is not None:
                out.append(bar)
    return out


def merge_points(
    existing: Sequence[HistoricalBar], incoming: Iterable[HistoricalBar]
) -> tuple[HistoricalBar, ...]:
    """
    Añade `incoming` a `existing` descartando `time` repetidos.

    Los chunks llegan ordenados; se conserva el orden de llegada. Si un punto con el
    mismo `time` vuelve a llegar, gana la primera versión.
    """
    seen = {p.time for p in existing}
    merged = list(existing)
    for bar in incoming:
        if bar.time in seen:
            continue
        seen.add(bar.time)
        merged.append(bar)
    return tuple(merged)


def _opt_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


# ============================================================
# StreamingDataAssembler
# ============================================================


class StreamingDataAssembler:
    """
    Acumula series históricas por intervalo a partir de eventos de un canal por chunks.

    Parámetros
    ----------
    intervals : Iterable[str]
        Intervalos pedidos. Los eventos de intervalos no pedidos se ignoran.
    limit : int
        Presupuesto aproximado de puntos por serie (se pasa al canal).
    chunk_size : int
        Tamaño de chunk pedido al canal.
    """

    def __init__(self, intervals: Iterable[str], limit: int = 1000, chunk_size: int = 500):
        names = [str(i) for i in intervals if i]
        if not names:
            raise ValueError("Se necesita al menos un intervalo")
        self.intervals: tuple[str, ...] = tuple(dict.fromkeys(names))
        self.limit = int(limit)
        self.chunk_size = int(chunk_size)
        self._states: dict[str, SeriesState] = {i: SeriesState(interval=i) for i in self.intervals}
        # Canal multi: intervalo abierto por el último interval_start.
        self._active: str | None = None

    # ------------------------------------------------------------
    # Lectura
    # ------------------------------------------------------------
    def state(self, interval: str) -> SeriesState:
        return self._states[interval]

    @property
    def states(self) -> dict[str, SeriesState]:
        """Copia del mapa intervalo → estado (los estados ya son inmutables)."""
        return dict(self._states)

    @property
    def loading(self) -> bool:
        return any(s.loading for s in self._states.values())

    @property
    def done(self) -> bool:
        return all(s.phase in (SeriesPhase.COMPLETE, SeriesPhase.ERROR) for s in self._states.values())

    def errors(self) -> dict[str, SeriesError]:
        return {i: s.error for i, s in self._states.items() if s.error is not None}

    def to_frame(self, interval: str) -> pd.DataFrame:
        """DataFrame OHLCV de una serie (columna `time` parseada a datetime UTC)."""
        rows = [p.as_dict() for p in self._states[interval].points]
        df = pd.DataFrame(rows, columns=["time", "open", "high", "low", "close", "volume"])
        if not df.empty:
            df["time"] = pd.to_datetime(df["time"], utc=True, errors="coerce")
        return df

    # ------------------------------------------------------------
    # Escritura (cada cambio sustituye el SeriesState entero)
    # ------------------------------------------------------------
    def _set(self, interval: str, **changes: Any) -> SeriesState:
        new_state = replace(self._states[interval], **changes)
        self._states[interval] = new_state
        return new_state

    def _fail(self, interval: str, error: SeriesError) -> None:
        if interval not in self._states:
            return
        logger.warning(f"[{interval}] {error.kind}: {error.message}")
        self._set(interval, phase=SeriesPhase.ERROR, error=error)

    def begin(self, interval: str) -> None:
        """Marca la serie como cargando (reinicia puntos y error)."""
        self._set(
            interval,
            phase=SeriesPhase.LOADING,
            points=(),
            total_points=None,
            error=None,
        )

    def fail(self, interval: str, kind: str, message: str) -> None:
        self._fail(interval, SeriesError(kind=kind, message=message))

    def _mismatch(self, expected: str, label: str) -> None:
        if expected not in self._states or self._states[expected].phase == SeriesPhase.ERROR:
            return
        self._fail(
            expected,
            SeriesError(
                kind="interval_mismatch",
                message=f"Backend returned '{label}' data for requested interval '{expected}'",
            ),
        )

    def _check_label(self, data: Mapping[str, Any], requested: str | None) -> str | None:
        """
        Devuelve el intervalo al que aplicar el payload o None si hay que ignorarlo.

        Con `requested` (canal de un solo intervalo) el payload debe venir etiquetado
        con ese mismo intervalo; si no, la serie pedida pasa a ERROR por mismatch.
        """
        label = data.get("interval")
        label = str(label) if label else None
        if requested is not None:
            if label is not None and label != requested:
                self._mismatch(requested, label)
                return None
            return requested
        if label is None or label not in self._states:
            logger.debug(f"Evento para intervalo no pedido ignorado: {label!r}")
            return None
        return label

    def apply_event(self, event: str, data: Mapping[str, Any], requested: str | None = None) -> None:
        """
        Aplica un evento del canal histórico.

        `requested` es el intervalo pedido cuando el canal es de un único intervalo;
        en el canal multi-intervalo se deja en None: manda la etiqueta del payload y
        un chunk con otra etiqueta que la del último `interval_start` es un mismatch
        de la serie abierta.
        """
        if requested is not None and requested not in self._states:
            raise KeyError(f"Intervalo no pedido: {requested}")

        if event == "error":
            self._apply_error(data, requested)
            return

        if event in ("complete", "all_complete"):
            targets = [requested] if requested is not None else list(self._states)
            for interval in targets:
                st = self._states[interval]
                if st.phase == SeriesPhase.LOADING:
                    self._set(
                        interval,
                        phase=SeriesPhase.COMPLETE,
                        is_partial=bool(data.get("is_partial", st.is_partial)),
                    )
            return

        if requested is None:
            label = data.get("interval")
            label = str(label) if label else None
            if event == "interval_start":
                self._active = label
            elif event in ("data_chunk", "interval_complete") and self._active is not None:
                if label is not None and label != self._active:
                    self._mismatch(self._active, label)
                    return
                if label is None:
                    data = {**data, "interval": self._active}

        interval = self._check_label(data, requested)
        if interval is None:
            return
        # Tras un mismatch/error la serie queda cerrada para este stream.
        if self._states[interval].phase == SeriesPhase.ERROR:
            return

        if event == "interval_start":
            self.begin(interval)
            self._set(
                interval,
                total_points=_opt_int(data.get("total_points")),
                is_partial=bool(data.get("is_partial", False)),
                current_bar=_opt_int(data.get("current_bar")),
                job_status=data.get("job_status"),
            )
        elif event == "data_chunk":
            st = self._states[interval]
            if st.phase == SeriesPhase.COMPLETE:
                logger.debug(f"[{interval}] chunk tras interval_complete ignorado")
                return
            if st.phase == SeriesPhase.NOT_STARTED:
                self.begin(interval)
                st = self._states[interval]
            points = merge_points(st.points, parse_points(data.get("data_points")))
            total = _opt_int(data.get("total_points"))
            self._set(
                interval,
                points=points,
                total_points=total if total is not None else st.total_points,
                is_partial=bool(data.get("is_partial", st.is_partial)),
                current_bar=_opt_int(data.get("current_bar")) or st.current_bar,
                job_status=data.get("job_status") or st.job_status,
            )
            if data.get("is_last_chunk"):
                self._set(interval, phase=SeriesPhase.COMPLETE)
        elif event == "interval_complete":
            total = _opt_int(data.get("total_points"))
            st = self._states[interval]
            self._set(
                interval,
                phase=SeriesPhase.COMPLETE,
                total_points=total if total is not None else st.total_points,
                is_partial=bool(data.get("is_partial", st.is_partial)),
            )
        else:
            logger.debug(f"Evento histórico desconocido ignorado: {event}")

    def _apply_error(self, data: Mapping[str, Any], requested: str | None) -> None:
        message = str(data.get("message") or data.get("error") or "Error en el stream histórico")
        available = tuple(str(i) for i in (data.get("available_intervals") or ()))
        kind = "not_found" if available else "transport"
        target = requested or (str(data["interval"]) if data.get("interval") else None)
        if available:
            message = f"{message} (disponibles: {', '.join(available)})"
        err = SeriesError(kind=kind, message=message, available_intervals=available)
        if target is not None:
            self._fail(target, err)
            return
        # Error sin intervalo: afecta a todo lo que aún no terminó.
        for interval, st in self._states.items():
            if st.phase in (SeriesPhase.NOT_STARTED, SeriesPhase.LOADING):
                self._fail(interval, err)

    def apply_snapshot(self, payload: Mapping[str, Any], requested: str) -> None:
        """
        Sustituye la serie `requested` con una respuesta REST completa
        (`data_points`, `total_points`, ...). Aplica la misma comprobación de etiqueta.
        """
        if requested not in self._states:
            raise KeyError(f"Intervalo no pedido: {requested}")
        # Un snapshot nuevo da otra oportunidad a una serie en error.
        self.begin(requested)
        interval = self._check_label(payload, requested)
        if interval is None:
            return
        points = merge_points((), parse_points(payload.get("data_points")))
        total = _opt_int(payload.get("total_points"))
        self._set(
            interval,
            phase=SeriesPhase.COMPLETE,
            points=points,
            total_points=total if total is not None else len(points),
            is_partial=bool(payload.get("is_partial", False)),
            current_bar=_opt_int(payload.get("current_bar")),
            job_status=payload.get("job_status"),
        )

    async def consume(
        self,
        events: AsyncIterable[tuple[str, Mapping[str, Any]]],
        requested: str | None = None,
    ) -> None:
        """Consume un stream `(evento, payload)` hasta que se agota."""
        if requested is None:
            self._active = None
        async for event, data in events:
            self.apply_event(event, data, requested)
        # Stream agotado sin cierre explícito: lo que siga cargando queda como parcial.
        targets = [requested] if requested is not None else list(self._states)
        for interval in targets:
            if self._states[interval].phase == SeriesPhase.LOADING:
                self._set(interval, phase=SeriesPhase.COMPLETE, is_partial=True)
