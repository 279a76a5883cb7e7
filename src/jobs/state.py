# src/jobs/state.py
"""
Máquina de estados de un job observado.

    pending → queued → running ⇄ {paused ⇄ resuming} → {completed | failed | cancelled}

Una única función de transición (`JobStateMachine.apply`) decide si un snapshot del
servidor se aplica:
  1. Snapshots de otro job_id se descartan.
  2. Un estado terminal no tiene salidas: se rechaza cualquier cambio de status.
  3. Filtro de "cambio significativo" (status, progreso, presencia de resultado,
     error_message): si nada de eso cambia no se publica snapshot nuevo y los
     consumidores no recalculan el ledger en cada tick.
  4. Saltos no previstos por el grafo (p. ej. pending → completed si nos perdimos
     mensajes) se aceptan con WARNING: el servidor manda.

Tras un comando de usuario (cancel/pause/resume) se aplica una actualización
optimista (`apply_optimistic`). El siguiente snapshot del servidor la sustituye
siempre, sin pasar por el filtro ni por la regla de terminales.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from loguru import logger

from core.types import Job, JobStatus

__all__ = [
    "ALLOWED_TRANSITIONS",
    "OPTIMISTIC_STATUS",
    "can_transition",
    "is_meaningful_change",
    "JobStateMachine",
]

S = JobStatus

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    S.PENDING: frozenset({S.QUEUED, S.RUNNING, S.COMPLETED, S.FAILED, S.CANCELLED}),
    S.QUEUED: frozenset({S.RUNNING, S.COMPLETED, S.FAILED, S.CANCELLED}),
    S.RUNNING: frozenset({S.PAUSED, S.COMPLETED, S.FAILED, S.CANCELLED}),
    S.PAUSED: frozenset({S.RESUMING, S.RUNNING, S.FAILED, S.CANCELLED}),
    S.RESUMING: frozenset({S.RUNNING, S.PAUSED, S.COMPLETED, S.FAILED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
}

# Estado que se muestra justo después de cada comando, antes de que conteste el servidor.
OPTIMISTIC_STATUS: Dict[str, JobStatus] = {
    "cancel": S.CANCELLED,
    "pause": S.PAUSED,
    "resume": S.RESUMING,
}


def can_transition(old: JobStatus, new: JobStatus) -> bool:
    """True si `old → new` está en el grafo (quedarse en el mismo estado siempre vale)."""
    if old == new:
        return True
    return new in ALLOWED_TRANSITIONS.get(old, frozenset())


def is_meaningful_change(old: Optional[Job], new: Job) -> bool:
    if old is None:
        return True
    return (
        old.status != new.status
        or old.progress != new.progress
        or old.has_result != new.has_result
        or old.error_message != new.error_message
    )


class JobStateMachine:
    """Snapshot vigente de un job + regla de transición. No hace I/O."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._job: Optional[Job] = None
        self._optimistic = False

    @property
    def job(self) -> Optional[Job]:
        return self._job

    @property
    def status(self) -> Optional[JobStatus]:
        return self._job.status if self._job is not None else None

    @property
    def optimistic(self) -> bool:
        """True mientras el snapshot vigente sea una suposición local tras un comando."""
        return self._optimistic

    @property
    def is_terminal(self) -> bool:
        return self._job is not None and self._job.is_terminal and not self._optimistic

    def reset(self, job_id: Optional[str] = None) -> None:
        if job_id is not None:
            self.job_id = job_id
        self._job = None
        self._optimistic = False

    def apply(self, snapshot: Job) -> bool:
        """
        Aplica un snapshot del servidor. Devuelve True si el snapshot vigente cambió.
        """
        if snapshot.job_id and snapshot.job_id != self.job_id:
            logger.debug(f"Snapshot de otro job ignorado: {snapshot.job_id} (observando {self.job_id})")
            return False
        if not snapshot.job_id:
            snapshot = snapshot.evolve(job_id=self.job_id)

        current = self._job
        if current is None:
            self._job = snapshot
            return True

        if self._optimistic:
            self._optimistic = False
            self._job = snapshot
            return True

        if current.is_terminal and snapshot.status != current.status:
            logger.warning(
                f"Job {self.job_id}: transición {current.status.value} → {snapshot.status.value} "
                "ignorada (estado terminal)"
            )
            return False

        if not is_meaningful_change(current, snapshot):
            return False

        if not can_transition(current.status, snapshot.status):
            logger.warning(
                f"Job {self.job_id}: transición inesperada {current.status.value} → "
                f"{snapshot.status.value} (se acepta, el servidor manda)"
            )

        self._job = snapshot
        return True

    def apply_optimistic(self, command: str) -> Optional[Job]:
        """
        Marca el estado esperado tras `command` (cancel/pause/resume).

        Sin snapshot previo, o con el job ya terminado, no hace nada y devuelve None.
        """
        status = OPTIMISTIC_STATUS.get(command)
        if status is None:
            raise ValueError(f"Comando desconocido: {command!r}")
        if self._job is None or self.is_terminal:
            return None
        self._job = self._job.evolve(status=status)
        self._optimistic = True
        return self._job
