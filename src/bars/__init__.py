"""
Series históricas para gráficos (OHLC por intervalo).

Ejemplo
-------
    from bars import StreamingDataAssembler

    asm = StreamingDataAssembler(["day", "week"], limit=1000, chunk_size=500)
    asm.apply_event("interval_start", {"interval": "day", "total_points": 2})
    asm.apply_event("data_chunk", {"interval": "day", "data_points": [...], "is_last_chunk": True})
    asm.state("day").points
"""

from __future__ import annotations

from .assembler import (
    SeriesError,
    SeriesPhase,
    SeriesState,
    StreamingDataAssembler,
    merge_points,
    parse_points,
)

__all__ = [
    "SeriesError",
    "SeriesPhase",
    "SeriesState",
    "StreamingDataAssembler",
    "merge_points",
    "parse_points",
]
