# src/data/feeds/job_progress.py
"""
Canales push del progreso de un job.

Dos transportes con el mismo contrato (`stream(job_id)` → iterador asíncrono de
mensajes dict con clave "type"):

- WebSocketJobChannel: ws(s)://<host>/ws/backtest/{job_id}?token=...
    · heartbeat de aplicación {"type": "ping"} cada `ping_interval_s`
    · `send()` permite pedir {"type": "refresh"} con el socket abierto
- SSEJobChannel: <base>/api/sse/backtest/{job_id}?token=...
    · el nombre del evento SSE se usa como "type" si el payload no lo trae

Tipos de mensaje: connection, progress, transaction, completed, failed, cancelled,
error, pong. El canal no interpreta nada: solo decodifica y entrega.

Cierre y errores:
- Cierre limpio (1000/1001) → el iterador termina sin excepción (no se reintenta).
- Handshake 401/403 → AuthError (fatal).
- Cualquier otra caída → TransportError (el cliente decide reconectar o hacer polling).
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
import json
from typing import Any, Optional, Protocol
from urllib.parse import quote, urlencode

from loguru import logger
import websockets
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedOK,
    InvalidHandshake,
    InvalidStatus,
)

from core.errors import AuthError, TransportError

from .sse import EventSource, stream_sse

__all__ = [
    "JobPushChannel",
    "WebSocketJobChannel",
    "SSEJobChannel",
    "decode_message",
]

CONNECT_TIMEOUT_S = 10
CLOSE_TIMEOUT_S = 3
PING_INTERVAL_S = 30.0


class JobPushChannel(Protocol):
    name: str

    def stream(self, job_id: str) -> AsyncIterator[dict[str, Any]]: ...

    async def send(self, payload: dict[str, Any]) -> bool: ...


def decode_message(raw: Any) -> Optional[dict[str, Any]]:
    """bytes/str JSON → dict con "type"; None si no se puede interpretar."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", "ignore")
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug(f"Mensaje push no JSON descartado: {str(raw)[:80]!r}")
        return None
    if not isinstance(msg, dict) or not msg.get("type"):
        logger.debug(f"Mensaje push sin 'type' descartado: {str(msg)[:80]!r}")
        return None
    return msg


# ============================================================
# WebSocket
# ============================================================


class WebSocketJobChannel:
    name = "websocket"

    def __init__(
        self,
        ws_base: str,
        token: Optional[str] = None,
        *,
        ping_interval_s: float = PING_INTERVAL_S,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.ws_base = ws_base.rstrip("/")
        self.token = token
        self.ping_interval_s = float(ping_interval_s)
        self._connect = connect
        self._ws: Any = None

    def url(self, job_id: str) -> str:
        query = f"?{urlencode({'token': self.token})}" if self.token else ""
        return f"{self.ws_base}/ws/backtest/{quote(job_id, safe='')}{query}"

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def _ping_loop(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self.ping_interval_s)
            try:
                await ws.send(json.dumps({"type": "ping"}))
            except ConnectionClosed:
                return

    async def stream(self, job_id: str) -> AsyncIterator[dict[str, Any]]:
        url = self.url(job_id)
        logger.debug(f"Conectando WS → {self.ws_base}/ws/backtest/{job_id}")
        try:
            async with self._connect(
                url,
                open_timeout=CONNECT_TIMEOUT_S,
                close_timeout=CLOSE_TIMEOUT_S,
            ) as ws:
                self._ws = ws
                pinger = asyncio.create_task(self._ping_loop(ws))
                try:
                    async for raw in ws:
                        msg = decode_message(raw)
                        if msg is not None:
                            yield msg
                finally:
                    pinger.cancel()
                    self._ws = None
        except InvalidStatus as e:
            code = e.response.status_code
            if code in (401, 403):
                raise AuthError(code, "WebSocket rechazado") from e
            raise TransportError(f"Handshake WS inválido (HTTP {code})") from e
        except ConnectionClosedOK:
            return
        except (ConnectionClosed, InvalidHandshake, OSError, TimeoutError) as e:
            raise TransportError(f"WS caído: {e!r}") from e

    async def send(self, payload: dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(json.dumps(payload))
        except ConnectionClosed:
            return False
        return True


# ============================================================
# SSE
# ============================================================


class SSEJobChannel:
    name = "sse"

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

    def url(self, job_id: str) -> str:
        query = f"?{urlencode({'token': self.token})}" if self.token else ""
        return f"{self.base_url}/api/sse/backtest/{quote(job_id, safe='')}{query}"

    async def stream(self, job_id: str) -> AsyncIterator[dict[str, Any]]:
        async for ev in self._source(self.url(job_id)):
            payload = ev.json()
            if not isinstance(payload, dict):
                continue
            payload.setdefault("type", ev.event)
            yield payload

    async def send(self, payload: dict[str, Any]) -> bool:
        # SSE es unidireccional
        return False
