# src/jobs/stall.py
"""
Detector de progreso estancado (solo aviso, nunca cancela).

Mientras status=running: si |p − p0| < epsilon durante ≥ threshold segundos se
marca "posiblemente estancado". Cualquier salto ≥ epsilon reinicia la referencia
(p0, t0) y limpia el aviso al instante. Fuera de running el detector se rearma.
"""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Callable, Optional

from loguru import logger

from core.types import JobStatus

__all__ = ["StallStatus", "StallDetector"]


@dataclass(frozen=True)
class StallStatus:
    stalled: bool
    progress: float | None = None
    since: float | None = None
    stalled_for_s: float = 0.0


class StallDetector:
    def __init__(
        self,
        threshold_s: float = 180.0,
        epsilon: float = 0.01,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold_s = float(threshold_s)
        self.epsilon = float(epsilon)
        self._clock = clock
        self._baseline: Optional[float] = None
        self._since: Optional[float] = None
        self._stalled = False

    @property
    def stalled(self) -> bool:
        return self._stalled

    def reset(self) -> None:
        self._baseline = None
        self._since = None
        self._stalled = False

    def observe(self, status: JobStatus, progress: float) -> bool:
        """Registra un snapshot; devuelve el flag de stall actualizado."""
        now = self._clock()
        if status != JobStatus.RUNNING:
            self.reset()
            return False

        if self._baseline is None or abs(progress - self._baseline) >= self.epsilon:
            if self._stalled:
                logger.info(f"Progreso reanudado ({self._baseline:.2f}% → {progress:.2f}%)")
            self._baseline = progress
            self._since = now
            self._stalled = False
            return False

        return self._evaluate(now)

    def check(self) -> bool:
        """Re-evalúa con el reloj actual (para llamar periódicamente sin mensajes nuevos)."""
        if self._baseline is None:
            return False
        return self._evaluate(self._clock())

    def _evaluate(self, now: float) -> bool:
        assert self._since is not None
        elapsed = now - self._since
        if elapsed >= self.threshold_s and not self._stalled:
            self._stalled = True
            logger.warning(
                f"Progreso sin cambios en {self._baseline:.2f}% durante {elapsed:.0f}s: "
                "el job podría estar estancado"
            )
        return self._stalled

    def snapshot(self) -> StallStatus:
        elapsed = 0.0
        if self._since is not None:
            elapsed = max(0.0, self._clock() - self._since)
        return StallStatus(
            stalled=self._stalled,
            progress=self._baseline,
            since=self._since,
            stalled_for_s=elapsed if self._stalled else 0.0,
        )
