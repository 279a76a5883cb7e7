"""Canales de streaming: SSE, progreso de jobs (WS/SSE) e históricos por chunks."""

from .historical import HistoricalDataChannel, fetch_snapshots, load_series
from .job_progress import SSEJobChannel, WebSocketJobChannel, decode_message
from .sse import SSEEvent, SSEParser, parse_sse, stream_sse

__all__ = [
    "HistoricalDataChannel",
    "fetch_snapshots",
    "load_series",
    "SSEJobChannel",
    "WebSocketJobChannel",
    "decode_message",
    "SSEEvent",
    "SSEParser",
    "parse_sse",
    "stream_sse",
]
