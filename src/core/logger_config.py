# ============================================================
# src/core/logger_config.py — Configuración central del logger
# ------------------------------------------------------------
# Define init_logger(), que configura el logger global de Loguru
# según el entorno (.env) o los valores que le pase el llamante
# (normalmente la sección `environment` de config.yaml).
#
# Salidas:
#   - Consola (stderr, colorizada, nivel configurable)
#   - Archivo de logs con rotación diaria en <log_dir>/
#
# Los módulos de la librería solo hacen `from loguru import logger`;
# configurar sinks es cosa del punto de entrada (tools/, main.py).
# ============================================================

from __future__ import annotations

import os
from pathlib import Path
import sys

from dotenv import load_dotenv
from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

LOG_FILE_NAME = "backtest_monitor.log"


# ============================================================
# Función: init_logger
# ============================================================
def init_logger(
    level: str | None = None,
    log_dir: str | Path | None = None,
    *,
    to_file: bool = True,
) -> Path | None:
    """
    Inicializa la configuración global del logger.

    Prioridad para el nivel: argumento > LOG_LEVEL (.env) > INFO.
    Devuelve la ruta del archivo de log (o None si `to_file=False`).
    Llamar una sola vez al inicio del programa.
    """
    load_dotenv()
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()

    # --- Eliminar configuración previa ---
    logger.remove()

    # --- Consola ---
    logger.add(
        sink=sys.stderr,
        level=log_level,
        colorize=True,
        format=LOG_FORMAT,
    )

    if not to_file:
        logger.debug(f"Logger inicializado (nivel {log_level}, sin archivo)")
        return None

    # --- Archivo (rotación diaria) ---
    directory = Path(log_dir or os.getenv("LOG_DIR", "data/logs"))
    directory.mkdir(parents=True, exist_ok=True)
    log_file_path = directory / LOG_FILE_NAME

    logger.add(
        sink=log_file_path,
        level=log_level,
        rotation="1 day",
        retention="7 days",
        enqueue=True,  # seguro entre hilos (lector SSE en hilo aparte)
        backtrace=True,
        diagnose=False,  # no volcar variables locales: pueden contener el token
        format=LOG_FORMAT,
    )

    logger.info(f"Logger inicializado (nivel {log_level})")
    logger.debug(f"Logs guardados en: {log_file_path}")
    return log_file_path
