# src/jobs/job_list.py
"""
Seguimiento en vivo de la lista de jobs del usuario (SSE /api/sse/backtest/jobs).

Eventos:
    connection                → conectado
    snapshot  {jobs: [...]}   → sustituye la lista entera
    job_added {job}           → se añade al principio
    job_updated {job}         → reemplaza el job con el mismo job_id (si no está, se ignora)
    job_removed {job_id}      → se quita
    error {message}           → se guarda el mensaje; la lista no se toca

La lista es una tupla inmutable: cada evento produce una tupla nueva.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional
from urllib.parse import urlencode

from loguru import logger

from core.errors import ApiError, AuthError, TransportError
from core.types import Job
from data.feeds.sse import EventSource, stream_sse

__all__ = ["JobListTracker"]


class JobListTracker:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        limit: int = 50,
        status_filter: Optional[str] = None,
        source: EventSource = stream_sse,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.limit = int(limit)
        self.status_filter = status_filter
        self._source = source
        self.jobs: tuple[Job, ...] = ()
        self.error: Optional[str] = None
        self.connected = False
        self.loading = True

    def url(self) -> str:
        params: dict[str, Any] = {"limit": self.limit}
        if self.token:
            params["token"] = self.token
        if self.status_filter:
            params["status_filter"] = self.status_filter
        return f"{self.base_url}/api/sse/backtest/jobs?{urlencode(params)}"

    def get(self, job_id: str) -> Optional[Job]:
        return next((j for j in self.jobs if j.job_id == job_id), None)

    def apply_event(self, event: str, data: Mapping[str, Any]) -> bool:
        """Aplica un evento; devuelve True si la lista cambió."""
        before = self.jobs
        if event == "connection":
            self.connected = True
            self.loading = False
            self.error = None
        elif event == "snapshot":
            rows = data.get("jobs") or []
            self.jobs = tuple(Job.from_dict(r) for r in rows if isinstance(r, Mapping))
            self.loading = False
        elif event == "job_added":
            job = data.get("job")
            if isinstance(job, Mapping):
                added = Job.from_dict(job)
                self.jobs = (added,) + tuple(j for j in self.jobs if j.job_id != added.job_id)
        elif event == "job_updated":
            job = data.get("job")
            if isinstance(job, Mapping):
                updated = Job.from_dict(job)
                self.jobs = tuple(updated if j.job_id == updated.job_id else j for j in self.jobs)
        elif event == "job_removed":
            job_id = data.get("job_id")
            self.jobs = tuple(j for j in self.jobs if j.job_id != job_id)
        elif event == "error":
            self.error = str(data.get("message") or "Connection error")
            self.loading = False
            logger.warning(f"Stream de jobs: {self.error}")
        else:
            logger.debug(f"Evento de lista de jobs desconocido: {event}")
        return self.jobs != before

    async def run(self) -> None:
        """Consume el stream hasta que el servidor lo cierre. AuthError se propaga."""
        try:
            async for ev in self._source(self.url()):
                payload = ev.json()
                self.apply_event(ev.event, payload if isinstance(payload, Mapping) else {})
        except AuthError:
            self.connected = False
            raise
        except (TransportError, ApiError) as e:
            self.error = "Connection closed. Attempting to reconnect..."
            logger.warning(f"Stream de jobs caído: {e}")
        finally:
            self.connected = False
            self.loading = False
