# src/data/api_client.py
"""
Cliente REST del API de jobs de backtesting (colaborador externo).

Endpoints:
    POST /api/backtesting/jobs                       crear job (?broker_type&credentials_id)
    GET  /api/backtesting/jobs/{id}                  snapshot del job
    GET  /api/backtesting/jobs                       listar (?status_filter&strategy_id&limit)
    POST /api/backtesting/jobs/{id}/cancel
    POST /api/backtesting/jobs/{id}/pause            body {"reason": ...}
    POST /api/backtesting/jobs/{id}/resume
    GET  /api/backtesting/jobs/{id}/historical-data  (?limit&format=json&interval)

HTTP síncrono con urllib (Request/urlopen); los métodos async lo delegan a un hilo
con asyncio.to_thread para no bloquear el loop. Auth: Bearer token.

Errores:
    HTTP 401/403      → AuthError (fatal)
    otros HTTP        → ApiError(status, detail)
    red/timeout/JSON  → TransportError
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode, urlsplit, urlunsplit
from urllib.request import Request, urlopen

from loguru import logger

from core.config_loader import ApiSettings
from core.errors import ApiError, AuthError, TransportError
from core.types import Job

JOBS_PATH = "/api/backtesting/jobs"
USER_AGENT = "backtest-monitor/0.1"

Opener = Callable[..., Any]


def _extract_detail(raw: bytes) -> str:
    """`detail` de una respuesta de error (FastAPI-style) o el cuerpo en texto."""
    text = raw.decode("utf-8", "ignore").strip()
    try:
        payload = json.loads(text)
    except ValueError:
        return text
    if isinstance(payload, dict):
        detail = payload.get("detail") or payload.get("message") or payload.get("error")
        if isinstance(detail, str):
            return detail
        if detail is not None:
            return json.dumps(detail)
    return text


def ws_base_from_http(base_url: str, ws_host: Optional[str] = None) -> str:
    """http(s)://host → ws(s)://host (o ws_host explícito si se configuró)."""
    if ws_host:
        if "://" in ws_host:
            return ws_host.rstrip("/")
        scheme = "wss" if base_url.startswith("https") else "ws"
        return f"{scheme}://{ws_host.strip('/')}"
    parts = urlsplit(base_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    return urlunsplit((scheme, parts.netloc, parts.path.rstrip("/"), "", ""))


class BacktestApiClient:
    """
    Cliente del API de comandos.

    `opener` permite inyectar un sustituto de urlopen en tests (misma firma:
    opener(request, timeout=...) → context manager con .read()).
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        timeout_s: float = 30.0,
        ws_host: Optional[str] = None,
        opener: Opener = urlopen,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_s = float(timeout_s)
        self.ws_base = ws_base_from_http(self.base_url, ws_host)
        self._opener = opener

    @classmethod
    def from_settings(cls, settings: ApiSettings, token: Optional[str] = None, **kwargs: Any) -> BacktestApiClient:
        return cls(
            settings.base_url,
            token,
            timeout_s=settings.timeout_s,
            ws_host=settings.ws_host,
            **kwargs,
        )

    # ------------------------------------------------------------
    # URLs
    # ------------------------------------------------------------
    def url(self, path: str, params: Optional[Mapping[str, Any]] = None) -> str:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        suffix = f"?{urlencode(query)}" if query else ""
        return f"{self.base_url}{path}{suffix}"

    def ws_url(self, path: str, params: Optional[Mapping[str, Any]] = None) -> str:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        suffix = f"?{urlencode(query)}" if query else ""
        return f"{self.ws_base}{path}{suffix}"

    @staticmethod
    def job_path(job_id: str, *suffix: str) -> str:
        return "/".join([JOBS_PATH, quote(str(job_id), safe=""), *suffix])

    def _headers(self, *, body: bool = False) -> Dict[str, str]:
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        if body:
            headers["Content-Type"] = "application/json"
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    # ------------------------------------------------------------
    # HTTP síncrono
    # ------------------------------------------------------------
    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        url = self.url(path, params)
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = Request(url, data=data, method=method, headers=self._headers(body=data is not None))
        logger.debug(f"{method} {path}")
        try:
            with self._opener(req, timeout=self.timeout_s) as resp:
                raw = resp.read()
        except HTTPError as e:
            detail = _extract_detail(e.read() or b"")
            if e.code in (401, 403):
                raise AuthError(e.code, detail) from e
            raise ApiError(e.code, detail) from e
        except (URLError, TimeoutError, OSError) as e:
            raise TransportError(f"{method} {path}: {e!r}") from e

        if not raw:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise TransportError(f"{method} {path}: respuesta no JSON") from e

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        return await asyncio.to_thread(self.request, method, path, **kwargs)

    # ------------------------------------------------------------
    # API de jobs
    # ------------------------------------------------------------
    async def create_job(
        self,
        request: Mapping[str, Any],
        *,
        broker_type: Optional[str] = None,
        credentials_id: Optional[str] = None,
    ) -> Job:
        params = {"broker_type": broker_type, "credentials_id": credentials_id}
        payload = await self._call("POST", JOBS_PATH, params=params, body=dict(request))
        job = Job.from_dict(payload or {})
        logger.info(f"Job creado: {job.job_id} ({job.status.value})")
        return job

    async def get_job(self, job_id: str) -> Job:
        payload = await self._call("GET", self.job_path(job_id))
        if not isinstance(payload, Mapping):
            raise TransportError(f"Respuesta inesperada para el job {job_id}")
        return Job.from_dict(payload)

    async def list_jobs(
        self,
        *,
        status_filter: Optional[str] = None,
        strategy_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Job]:
        params = {"status_filter": status_filter, "strategy_id": strategy_id, "limit": limit}
        payload = await self._call("GET", JOBS_PATH, params=params)
        rows = payload.get("jobs", []) if isinstance(payload, Mapping) else payload or []
        return [Job.from_dict(r) for r in rows if isinstance(r, Mapping)]

    async def cancel_job(self, job_id: str) -> Dict[str, Any]:
        return await self._call("POST", self.job_path(job_id, "cancel")) or {}

    async def pause_job(self, job_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        body = {"reason": reason} if reason else {}
        return await self._call("POST", self.job_path(job_id, "pause"), body=body) or {}

    async def resume_job(self, job_id: str) -> Dict[str, Any]:
        return await self._call("POST", self.job_path(job_id, "resume")) or {}

    async def get_historical_data(
        self,
        job_id: str,
        *,
        interval: Optional[str] = None,
        limit: int = 1000,
    ) -> Dict[str, Any]:
        """
        Snapshot REST de una serie. El servidor puede devolver una lista de puntos
        o un objeto con `data_points`; se normaliza siempre a objeto.
        """
        params = {"limit": limit, "format": "json", "interval": interval}
        payload = await self._call("GET", self.job_path(job_id, "historical-data"), params=params)
        if isinstance(payload, list):
            return {"data_points": payload, "total_points": len(payload)}
        return dict(payload or {})
