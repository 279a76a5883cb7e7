# src/data/feeds/sse.py
"""
Lector de server-sent events (text/event-stream).

- `SSEParser`: parser incremental línea a línea (event/data/id/retry, comentarios
  con ':' ignorados, varias líneas `data:` se unen con '\n', una línea en blanco
  despacha el evento).
- `stream_sse(url)`: iterador asíncrono de `SSEEvent`. La lectura HTTP es bloqueante
  (urllib), así que corre en un hilo dedicado que pasa los eventos al loop con
  `call_soon_threadsafe`; cerrar el iterador corta la conexión.

Errores:
    HTTP 401/403 → AuthError; otro HTTP → ApiError; red/timeout → TransportError.
    Fin normal del stream → el iterador termina sin excepción.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass
import json
import threading
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from loguru import logger

from core.errors import ApiError, AuthError, TransportError

__all__ = ["SSEEvent", "SSEParser", "parse_sse", "stream_sse", "EventSource"]

READ_TIMEOUT_S = 90.0

_EOF = object()


@dataclass(frozen=True)
class SSEEvent:
    event: str = "message"
    data: str = ""
    id: str | None = None
    retry: int | None = None

    def json(self) -> Any:
        """Payload JSON del evento; None si `data` no es JSON válido."""
        if not self.data:
            return None
        try:
            return json.loads(self.data)
        except ValueError:
            logger.debug(f"SSE '{self.event}': data no es JSON ({self.data[:80]!r})")
            return None


class SSEParser:
    def __init__(self) -> None:
        self._event: str | None = None
        self._data: list[str] = []
        self._id: str | None = None
        self._retry: int | None = None

    def _dispatch(self) -> SSEEvent | None:
        if not self._data and self._event is None:
            return None
        ev = SSEEvent(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self._id,
            retry=self._retry,
        )
        self._event = None
        self._data = []
        self._retry = None
        return ev

    def feed_line(self, line: str) -> SSEEvent | None:
        line = line.rstrip("\r\n")
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value
        elif name == "retry":
            try:
                self._retry = int(value)
            except ValueError:
                pass
        return None

    def flush(self) -> SSEEvent | None:
        """Despacha lo pendiente si el stream terminó sin línea en blanco final."""
        return self._dispatch()


def parse_sse(text: str) -> list[SSEEvent]:
    """Parsea un bloque completo de texto SSE (útil para tests y respuestas cortas)."""
    parser = SSEParser()
    events = [ev for ev in (parser.feed_line(line) for line in text.splitlines()) if ev is not None]
    tail = parser.flush()
    if tail is not None:
        events.append(tail)
    return events


async def stream_sse(
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    timeout_s: float = READ_TIMEOUT_S,
    opener: Callable[..., Any] = urlopen,
) -> AsyncIterator[SSEEvent]:
    """Itera los eventos de `url` hasta que el servidor cierra o se cierra el iterador."""
    loop = asyncio.get_running_loop()
    q: asyncio.Queue[Any] = asyncio.Queue()
    stop = threading.Event()
    holder: dict[str, Any] = {}

    def _post(item: Any) -> None:
        if stop.is_set():
            return
        try:
            loop.call_soon_threadsafe(q.put_nowait, item)
        except RuntimeError:
            # loop ya cerrado: nadie escucha
            pass

    def _worker() -> None:
        req = Request(
            url,
            headers={"Accept": "text/event-stream", "Cache-Control": "no-cache", **(headers or {})},
        )
        item: Any = _EOF
        try:
            with opener(req, timeout=timeout_s) as resp:
                holder["resp"] = resp
                parser = SSEParser()
                for raw in resp:
                    if stop.is_set():
                        return
                    line = raw.decode("utf-8", "replace") if isinstance(raw, bytes) else raw
                    ev = parser.feed_line(line)
                    if ev is not None:
                        _post(ev)
                tail = parser.flush()
                if tail is not None:
                    _post(tail)
        except HTTPError as e:
            detail = (e.read() or b"").decode("utf-8", "ignore")
            item = AuthError(e.code, detail) if e.code in (401, 403) else ApiError(e.code, detail)
        except (URLError, TimeoutError, OSError, ValueError) as e:
            item = TransportError(f"SSE {e!r}")
        _post(item)

    thread = threading.Thread(target=_worker, name="SSEReader", daemon=True)
    thread.start()
    try:
        while True:
            item = await q.get()
            if item is _EOF:
                return
            if isinstance(item, Exception):
                raise item
            yield item
    finally:
        stop.set()
        resp = holder.get("resp")
        if resp is not None:
            try:
                resp.close()
            except OSError:
                pass


# Firma de una fuente de eventos inyectable (stream_sse o un fake en tests).
EventSource = Callable[[str], AsyncIterator[SSEEvent]]
