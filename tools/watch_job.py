#!/usr/bin/env python3
# tools/watch_job.py
"""
Observa un job de backtest hasta que termina y vuelca su ledger.

- Progreso por WebSocket/SSE con fallback a polling (según config).
- Avisos de stall en el log (no cancela nada).
- Al completar: posiciones, transacciones cronológicas, totales y discrepancias.
- Opcional: series históricas por intervalo (--intervals).
- Con --out-dir: positions.csv, transactions.csv y bars_<intervalo>.csv.

Uso:
    PYTHONPATH="$(pwd)/src" python tools/watch_job.py \
        --job-id 6f1c... \
        --token "$API_TOKEN" \
        --intervals day,week \
        --out-dir runs/job_6f1c

Exit code: 0 si el job termina en completed; 1 en cualquier otro caso.
"""

from __future__ import annotations

import argparse
import asyncio
import os
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from bars.assembler import StreamingDataAssembler
from core.config_loader import HistoricalSettings, get_config, get_nested
from core.errors import ClientError
from core.logger_config import init_logger
from core.types import JobStatus
from data.feeds.historical import HistoricalDataChannel, load_series
from jobs.progress_client import JobProgressClient, ProgressState
from ledger.frames import write_ledger_csv
from ledger.view import LedgerView, build_ledger_view


def _log_state(state: ProgressState) -> None:
    job = state.job
    if job is None:
        return
    bars = f" bar {job.current_bar}/{job.total_bars}" if job.total_bars else ""
    flag = " [optimista]" if state.optimistic else ""
    stall = " [posible stall]" if state.stalled else ""
    logger.info(f"{job.status.value} {job.progress:.1f}%{bars}{flag}{stall} via {state.transport}")


def _log_ledger(view: LedgerView) -> None:
    s = view.summary
    t = view.ledger.totals
    source = "backend" if view.backend_positions else "calculadas"
    logger.info(
        f"Posiciones ({source}): {s.total} (cerradas={s.closed}, abiertas={s.open}) | "
        f"transacciones={t.count} | total_trades={view.total_trades}"
    )
    logger.info(
        f"Totales: pnl={t.pnl:.2f} pnl_comm={t.pnl_comm:.2f} brokerage={t.brokerage:.2f} "
        f"platform_fees={t.platform_fees:.2f} total_amount={t.total_amount:.2f}"
    )
    if view.discrepancy is not None:
        logger.warning(view.discrepancy.describe())


async def _load_charts(
    cfg: dict,
    token: Optional[str],
    result_id: str,
    intervals: Sequence[str],
    out_dir: Optional[Path],
) -> None:
    hist = HistoricalSettings.from_config(cfg)
    base_url = str(get_nested(cfg, "api", "base_url"))
    channel = HistoricalDataChannel(base_url, token)
    assembler = StreamingDataAssembler(intervals, limit=hist.limit, chunk_size=hist.chunk_size)
    await load_series(assembler, channel, result_id, completed=True)

    for interval, st in assembler.states.items():
        if st.error is not None:
            logger.warning(f"[{interval}] {st.error.message}")
            continue
        logger.info(f"[{interval}] {st.returned_points}/{st.total_points} puntos")
        if out_dir is not None:
            path = out_dir / f"bars_{interval}.csv"
            assembler.to_frame(interval).to_csv(path, index=False)


async def watch_job(
    job_id: str,
    *,
    token: Optional[str],
    cfg: dict,
    intervals: Sequence[str] = (),
    out_dir: Optional[Path] = None,
) -> int:
    client = JobProgressClient.from_config(cfg, token)
    client.add_listener(_log_state)

    async with client:
        await client.watch(job_id)
        try:
            job = await client.wait()
        except ClientError as e:
            logger.error(f"Seguimiento abortado: {e}")
            return 1

    if job is None or job.status != JobStatus.COMPLETED:
        status = job.status.value if job is not None else "desconocido"
        detail = f": {job.error_message}" if job is not None and job.error_message else ""
        logger.error(f"Job {job_id} terminó en {status}{detail}")
        return 1

    view = build_ledger_view(job.result or {})
    _log_ledger(view)

    if out_dir is not None:
        write_ledger_csv(view, out_dir)

    if intervals:
        result_id = (job.result or {}).get("backtest_id") or job_id
        await _load_charts(cfg, token, str(result_id), intervals, out_dir)
    return 0


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Observa un job de backtest y vuelca su ledger")
    p.add_argument("--job-id", required=True, help="Identificador del job")
    p.add_argument("--token", default=None, help="Token Bearer (por defecto $API_TOKEN)")
    p.add_argument("--config", default=None, help="Ruta alternativa a config.yaml")
    p.add_argument(
        "--no-websocket", action="store_true", help="Desactiva el canal push (solo polling)"
    )
    p.add_argument(
        "--intervals", default="", help="Series históricas a descargar, p. ej. day,week"
    )
    p.add_argument("--out-dir", default=None, help="Directorio para los CSV de salida")
    return p.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    cfg = dict(get_config(args.config, use_cache=False))
    if args.no_websocket:
        cfg["progress"] = {**cfg.get("progress", {}), "use_websocket": False}

    init_logger(
        get_nested(cfg, "environment", "log_level"),
        get_nested(cfg, "environment", "log_dir"),
    )

    out_dir = Path(args.out_dir).expanduser().resolve() if args.out_dir else None
    if out_dir is not None:
        out_dir.mkdir(parents=True, exist_ok=True)

    intervals = [i.strip() for i in args.intervals.split(",") if i.strip()]
    token = args.token or os.getenv("API_TOKEN")
    try:
        return asyncio.run(
            watch_job(args.job_id, token=token, cfg=cfg, intervals=intervals, out_dir=out_dir)
        )
    except KeyboardInterrupt:
        logger.warning("Interrumpido por el usuario")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
