# ============================================================
# src/core/config_loader.py — Cargador central de configuración
# ------------------------------------------------------------
# OBJETIVO:
#   Leer la configuración del monitor desde un YAML
#   (src/config/config.yaml) y aplicar "overrides" desde variables
#   de entorno (.env).
#
# CARACTERÍSTICAS:
#   - Cache interna (evita relecturas del archivo).
#   - Overrides vía .env (API_URL, WS_HOST, LOG_LEVEL, ...).
#   - Validación mínima del esquema (claves imprescindibles).
#   - Dataclasses tipadas por sección: ApiSettings, ProgressSettings,
#     HistoricalSettings (from_config()).
#
# USO BÁSICO:
#   from core.config_loader import get_config, ProgressSettings
#   cfg = get_config()
#   progress = ProgressSettings.from_config(cfg)
#
# NOTA:
#   Este módulo NO configura logs (evita dependencia circular).
# ============================================================

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, MutableMapping, Optional

from dotenv import load_dotenv
import yaml

# ------------------------------------------------------------
# Constantes y cache interna
# ------------------------------------------------------------
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[1] / "config" / "config.yaml"
CONFIG_PATH_ENV = "BACKTEST_MONITOR_CONFIG"

_CONFIG_CACHE: Optional[Dict[str, Any]] = None


# ------------------------------------------------------------
# Utilidades internas de tipos / paths
# ------------------------------------------------------------
def _to_bool(value: Any, default: bool = False) -> bool:
    """
    Convierte una cadena/valor a booleano de forma robusta.
    Acepta: "true"/"false", "1"/"0", True/False, etc.
    """
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    return s in {"1", "true", "t", "yes", "y", "on"}


def _to_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _ensure_file_exists(path: Path) -> None:
    if not path.exists():
        raise FileNotFoundError(f"No se encontró el archivo de configuración: {path.resolve()}")


def _deep_set(d: MutableMapping[str, Any], keys: Iterable[str], value: Any) -> None:
    """
    Asigna value en un diccionario anidado siguiendo la lista de 'keys'.
    Crea los nodos intermedios si no existen.
    """
    keys = list(keys)
    current = d
    for k in keys[:-1]:
        if k not in current or not isinstance(current[k], dict):
            current[k] = {}
        current = current[k]
    current[keys[-1]] = value


# ------------------------------------------------------------
# Carga YAML + overrides desde .env
# ------------------------------------------------------------
def _load_yaml_config(path: Path) -> Dict[str, Any]:
    _ensure_file_exists(path)
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"El YAML debe mapear a dict en la raíz. Archivo: {path}")
    return data


# Mapeo: ENV_VAR -> (ruta en config.yaml, conversor)
ENV_TO_CFG: Dict[str, tuple[tuple[str, str], str]] = {
    "LOG_LEVEL": (("environment", "log_level"), "str"),
    "LOG_DIR": (("environment", "log_dir"), "str"),
    "API_URL": (("api", "base_url"), "str"),
    "WS_HOST": (("api", "ws_host"), "str"),
    "USE_WEBSOCKET": (("progress", "use_websocket"), "bool"),
    "PUSH_TRANSPORT": (("progress", "push_transport"), "str"),
    "POLL_INTERVAL_S": (("progress", "poll_interval_s"), "float"),
    "STALL_THRESHOLD_S": (("progress", "stall_threshold_s"), "float"),
}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    """
    Aplica overrides de variables de entorno (.env) sobre el dict `cfg`.
    Mantén este mapeo corto y explícito para evitar sorpresas.
    """
    load_dotenv(override=False)

    for env_var, (path_keys, kind) in ENV_TO_CFG.items():
        if env_var not in os.environ:
            continue
        raw = os.getenv(env_var)
        current = get_nested(cfg, *path_keys)

        value: Any
        if kind == "bool":
            value = _to_bool(raw, default=bool(current))
        elif kind == "float":
            value = _to_float(raw, default=float(current or 0.0))
        else:
            value = raw

        _deep_set(cfg, path_keys, value)


# ------------------------------------------------------------
# Validación mínima del esquema (imprescindibles)
# ------------------------------------------------------------
REQUIRED_PATHS = [
    ("environment", "log_level"),
    ("api", "base_url"),
    ("progress", "poll_interval_s"),
    ("progress", "stall_threshold_s"),
    ("historical", "limit"),
    ("historical", "chunk_size"),
]


def _validate_schema(cfg: Dict[str, Any]) -> None:
    """
    Valida que existan las secciones y claves mínimas.
    Lanza ValueError si falta algo crítico.
    """
    missing: List[str] = []
    for path_keys in REQUIRED_PATHS:
        node: Any = cfg
        ok = True
        for k in path_keys:
            if not isinstance(node, dict) or k not in node:
                ok = False
                break
            node = node[k]
        if not ok:
            missing.append(".".join(path_keys))

    if missing:
        raise ValueError(
            "Faltan claves imprescindibles en config.yaml (o tras overrides): " + ", ".join(missing)
        )

    transport = get_nested(cfg, "progress", "push_transport", default="websocket")
    if transport not in {"websocket", "sse"}:
        raise ValueError(f"progress.push_transport inválido: {transport!r} (websocket|sse)")


# ------------------------------------------------------------
# API pública
# ------------------------------------------------------------
def get_config(path: Optional[Path | str] = None, use_cache: bool = True) -> Dict[str, Any]:
    """
    Devuelve la configuración como diccionario.
    - path: ruta alternativa al YAML (si no, BACKTEST_MONITOR_CONFIG o el default).
    - use_cache: si True, reutiliza la última carga.
    """
    global _CONFIG_CACHE
    if use_cache and _CONFIG_CACHE is not None:
        return _CONFIG_CACHE

    cfg_path = Path(path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    cfg = _load_yaml_config(cfg_path)
    _apply_env_overrides(cfg)
    _validate_schema(cfg)

    _CONFIG_CACHE = cfg
    return cfg


def reload_config(path: Optional[Path | str] = None) -> Dict[str, Any]:
    """Fuerza la recarga del YAML y re-aplica overrides del .env."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = None
    return get_config(path=path, use_cache=False)


def get_nested(cfg: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """
    Acceso seguro a valores anidados: get_nested(cfg, "api", "base_url")
    Devuelve `default` si no existe la ruta.
    """
    node: Any = cfg
    for k in keys:
        if not isinstance(node, dict) or k not in node:
            return default
        node = node[k]
    return node


# ------------------------------------------------------------
# Secciones tipadas
# ------------------------------------------------------------
@dataclass(frozen=True)
class ApiSettings:
    base_url: str = "http://localhost:8000"
    ws_host: str | None = None
    timeout_s: float = 30.0

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> ApiSettings:
        return cls(
            base_url=str(get_nested(cfg, "api", "base_url", default=cls.base_url)).rstrip("/"),
            ws_host=get_nested(cfg, "api", "ws_host") or None,
            timeout_s=_to_float(get_nested(cfg, "api", "timeout_s"), cls.timeout_s),
        )


@dataclass(frozen=True)
class ProgressSettings:
    """Parámetros del JobProgressClient (reconexión, polling, stall)."""

    use_websocket: bool = True
    push_transport: str = "websocket"
    poll_interval_s: float = 2.0
    max_reconnect_attempts: int = 5
    reconnect_delay_s: float = 1.0
    reconnect_delay_max_s: float = 10.0
    ping_interval_s: float = 30.0
    stall_threshold_s: float = 180.0
    stall_epsilon: float = 0.01
    stall_check_interval_s: float = 5.0
    max_poll_failures: int = 5

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> ProgressSettings:
        def g(key: str) -> Any:
            return get_nested(cfg, "progress", key)

        return cls(
            use_websocket=_to_bool(g("use_websocket"), cls.use_websocket),
            push_transport=str(g("push_transport") or cls.push_transport),
            poll_interval_s=_to_float(g("poll_interval_s"), cls.poll_interval_s),
            max_reconnect_attempts=_to_int(g("max_reconnect_attempts"), cls.max_reconnect_attempts),
            reconnect_delay_s=_to_float(g("reconnect_delay_s"), cls.reconnect_delay_s),
            reconnect_delay_max_s=_to_float(g("reconnect_delay_max_s"), cls.reconnect_delay_max_s),
            ping_interval_s=_to_float(g("ping_interval_s"), cls.ping_interval_s),
            stall_threshold_s=_to_float(g("stall_threshold_s"), cls.stall_threshold_s),
            stall_epsilon=_to_float(g("stall_epsilon"), cls.stall_epsilon),
            stall_check_interval_s=_to_float(g("stall_check_interval_s"), cls.stall_check_interval_s),
            max_poll_failures=_to_int(g("max_poll_failures"), cls.max_poll_failures),
        )


@dataclass(frozen=True)
class HistoricalSettings:
    limit: int = 1000
    chunk_size: int = 500
    poll_interval_s: float = 5.0

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> HistoricalSettings:
        return cls(
            limit=_to_int(get_nested(cfg, "historical", "limit"), cls.limit),
            chunk_size=_to_int(get_nested(cfg, "historical", "chunk_size"), cls.chunk_size),
            poll_interval_s=_to_float(
                get_nested(cfg, "historical", "poll_interval_s"), cls.poll_interval_s
            ),
        )
