# src/data/feeds/historical.py
"""
Canal por chunks de datos históricos (series OHLC por intervalo) de un job/resultado.

Endpoints SSE:
    /api/sse/backtest/{id}/data?interval=day&limit=1000&chunk_size=500&token=...
    /api/sse/backtest/{id}/data/multi?intervals=day,week&limit=...&chunk_size=...&token=...

Eventos: interval_start, data_chunk, interval_complete, complete, all_complete, error.

Orquestación (`load_series`):
- un solo intervalo          → canal simple
- varios, resultado completo → canal multi (un solo stream)
- varios, job en curso       → un canal simple por intervalo, en paralelo
  (el servidor no ofrece el multi para jobs en ejecución)

Los fallos de transporte se registran en la serie afectada (las demás siguen);
AuthError se propaga: es fatal.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from typing import Any, Mapping, Optional
from urllib.parse import quote, urlencode

from loguru import logger

from bars.assembler import SeriesPhase, StreamingDataAssembler
from core.errors import ApiError, AuthError, ClientError, TransportError

from .sse import EventSource, stream_sse

__all__ = [
    "DEFAULT_LIMIT",
    "DEFAULT_CHUNK_SIZE",
    "HistoricalDataChannel",
    "load_series",
    "fetch_snapshots",
]

DEFAULT_LIMIT = 1000
DEFAULT_CHUNK_SIZE = 500

HistoricalEvent = tuple[str, Mapping[str, Any]]


class HistoricalDataChannel:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        source: EventSource = stream_sse,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._source = source

    def _url(self, result_id: str, suffix: str, params: dict[str, Any]) -> str:
        if self.token:
            params["token"] = self.token
        return f"{self.base_url}/api/sse/backtest/{quote(result_id, safe='')}/{suffix}?{urlencode(params)}"

    def url_single(self, result_id: str, interval: str, limit: int, chunk_size: int) -> str:
        return self._url(
            result_id, "data", {"interval": interval, "limit": limit, "chunk_size": chunk_size}
        )

    def url_multi(self, result_id: str, intervals: Sequence[str], limit: int, chunk_size: int) -> str:
        return self._url(
            result_id,
            "data/multi",
            {"intervals": ",".join(intervals), "limit": limit, "chunk_size": chunk_size},
        )

    async def _events(self, url: str) -> AsyncIterator[HistoricalEvent]:
        async for ev in self._source(url):
            payload = ev.json()
            if not isinstance(payload, dict):
                continue
            yield ev.event, payload

    def stream(
        self,
        result_id: str,
        interval: str,
        *,
        limit: int = DEFAULT_LIMIT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> AsyncIterator[HistoricalEvent]:
        return self._events(self.url_single(result_id, interval, limit, chunk_size))

    def stream_multi(
        self,
        result_id: str,
        intervals: Sequence[str],
        *,
        limit: int = DEFAULT_LIMIT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> AsyncIterator[HistoricalEvent]:
        return self._events(self.url_multi(result_id, intervals, limit, chunk_size))


async def _consume_guarded(
    assembler: StreamingDataAssembler,
    events: AsyncIterator[HistoricalEvent],
    requested: Optional[str],
) -> None:
    targets = [requested] if requested is not None else list(assembler.intervals)
    try:
        await assembler.consume(events, requested)
    except AuthError:
        raise
    except (TransportError, ApiError) as e:
        logger.warning(f"Stream histórico caído ({', '.join(targets)}): {e}")
        for interval in targets:
            if assembler.state(interval).phase in (SeriesPhase.NOT_STARTED, SeriesPhase.LOADING):
                assembler.fail(interval, "transport", str(e))


async def load_series(
    assembler: StreamingDataAssembler,
    channel: HistoricalDataChannel,
    result_id: str,
    *,
    completed: bool = True,
) -> StreamingDataAssembler:
    """Carga todas las series pedidas en `assembler` eligiendo el canal adecuado."""
    intervals = assembler.intervals
    kwargs = {"limit": assembler.limit, "chunk_size": assembler.chunk_size}

    if len(intervals) == 1:
        interval = intervals[0]
        await _consume_guarded(assembler, channel.stream(result_id, interval, **kwargs), interval)
    elif completed:
        await _consume_guarded(assembler, channel.stream_multi(result_id, intervals, **kwargs), None)
    else:
        await asyncio.gather(
            *(
                _consume_guarded(assembler, channel.stream(result_id, i, **kwargs), i)
                for i in intervals
            )
        )

    failed = assembler.errors()
    if failed:
        logger.warning(f"Series con error: {', '.join(sorted(failed))}")
    return assembler


async def fetch_snapshots(assembler: StreamingDataAssembler, api: Any, job_id: str) -> None:
    """
    Sustituye cada serie con el snapshot REST (`api.get_historical_data`).
    Un fallo en un intervalo no afecta a los demás.
    """

    async def _one(interval: str) -> None:
        try:
            payload = await api.get_historical_data(job_id, interval=interval, limit=assembler.limit)
        except AuthError:
            raise
        except ClientError as e:
            assembler.fail(interval, "transport", str(e))
            return
        assembler.apply_snapshot(payload, interval)

    await asyncio.gather(*(_one(i) for i in assembler.intervals))
