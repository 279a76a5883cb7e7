# src/jobs/progress_client.py
"""
JobProgressClient: ciclo de vida de la suscripción a UN job.

Flujo de `watch(job_id)`:
  1. Snapshot inicial por REST (si falla por transporte se sigue: el push lo traerá).
  2. Canal push (WebSocket o SSE). Caída → reconexión con backoff
     (delay = reconnect_delay_s · 2^(n−1), tope reconnect_delay_max_s,
     máx. max_reconnect_attempts seguidos). Cierre limpio → no se reintenta.
  3. Agotados los reintentos (o sin push configurado) → polling REST cada
     poll_interval_s. max_poll_failures fallos seguidos → RetryableError.
  4. Termina al llegar a completed/failed/cancelled.

Invariantes:
- Una sola suscripción activa: `watch()` de otro id sube el contador de generación
  (síncrono, antes de cualquier await) y cancela/espera las tareas viejas; cualquier
  mensaje tardío de la generación anterior se descarta.
- Todos los snapshots pasan por JobStateMachine (filtro de cambio significativo,
  terminales absorbentes, overrides optimistas).
- AuthError es fatal para la suscripción: se guarda en el estado, se loguea y
  `wait()` la relanza. Nunca se reintenta.
- El stall detector solo avisa; nunca cancela.

Todo corre en un único event loop (asyncio); no hay paralelismo real.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from loguru import logger

from core.config_loader import ApiSettings, ProgressSettings
from core.errors import AuthError, ClientError, RetryableError, TransportError
from core.types import Job, JobStatus, Transaction, parse_job_status
from data.api_client import BacktestApiClient
from data.feeds.job_progress import JobPushChannel, SSEJobChannel, WebSocketJobChannel

from .stall import StallDetector
from .state import JobStateMachine

__all__ = ["ProgressState", "JobProgressClient", "backoff_delay", "make_push_channel"]

Listener = Callable[["ProgressState"], None]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class ProgressState:
    """Foto inmutable de lo que sabe el cliente (se publica a los listeners)."""

    job_id: Optional[str] = None
    job: Optional[Job] = None
    optimistic: bool = False
    stalled: bool = False
    transport: str = "idle"  # idle | websocket | sse | polling
    connected: bool = False
    live_transactions: tuple[Transaction, ...] = ()
    error: Optional[ClientError] = None

    @property
    def status(self) -> Optional[JobStatus]:
        return self.job.status if self.job is not None else None

    @property
    def is_terminal(self) -> bool:
        return self.job is not None and self.job.is_terminal and not self.optimistic


def backoff_delay(attempt: int, base_s: float = 1.0, max_s: float = 10.0) -> float:
    """Retardo del intento `attempt` (1-based): base · 2^(n−1), con tope."""
    return min(base_s * (2 ** max(0, attempt - 1)), max_s)


def make_push_channel(
    api: BacktestApiClient,
    settings: ProgressSettings,
) -> Optional[JobPushChannel]:
    """Canal push según config (None → solo polling)."""
    if not settings.use_websocket:
        return None
    if settings.push_transport == "sse":
        return SSEJobChannel(api.base_url, api.token)
    return WebSocketJobChannel(api.ws_base, api.token, ping_interval_s=settings.ping_interval_s)


class JobProgressClient:
    def __init__(
        self,
        api: Any,
        channel: Optional[JobPushChannel] = None,
        *,
        settings: ProgressSettings = ProgressSettings(),
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self._api = api
        self._channel = channel
        self.settings = settings
        self._sleep = sleep
        self._stall = StallDetector(settings.stall_threshold_s, settings.stall_epsilon, clock=clock)
        self._fsm: Optional[JobStateMachine] = None
        self._generation = 0
        self._tasks: List[asyncio.Task[Any]] = []
        self._done = asyncio.Event()
        self._listeners: List[Listener] = []
        self._state = ProgressState()

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], token: Optional[str] = None, **kwargs: Any) -> JobProgressClient:
        settings = ProgressSettings.from_config(cfg)
        api = BacktestApiClient.from_settings(ApiSettings.from_config(cfg), token)
        return cls(api, make_push_channel(api, settings), settings=settings, **kwargs)

    # ------------------------------------------------------------
    # Estado / listeners
    # ------------------------------------------------------------
    @property
    def state(self) -> ProgressState:
        return self._state

    @property
    def job(self) -> Optional[Job]:
        return self._state.job

    @property
    def job_id(self) -> Optional[str]:
        return self._state.job_id

    @property
    def generation(self) -> int:
        return self._generation

    def add_listener(self, fn: Listener) -> Callable[[], None]:
        """Registra `fn(state)`; devuelve la función para darlo de baja."""
        self._listeners.append(fn)

        def _remove() -> None:
            if fn in self._listeners:
                self._listeners.remove(fn)

        return _remove

    def _publish(self, **changes: Any) -> None:
        new_state = replace(self._state, **changes)
        if new_state == self._state:
            return
        self._state = new_state
        for fn in list(self._listeners):
            try:
                fn(new_state)
            except Exception as e:
                logger.exception(f"Listener de progreso falló: {e!r}")

    def _sync_job(self) -> None:
        assert self._fsm is not None
        self._publish(job=self._fsm.job, optimistic=self._fsm.optimistic)

    def _is_current(self, gen: int) -> bool:
        return gen == self._generation

    def _terminal(self) -> bool:
        return self._fsm is not None and self._fsm.is_terminal

    # ------------------------------------------------------------
    # Suscripción
    # ------------------------------------------------------------
    async def watch(self, job_id: str) -> None:
        """Empieza a observar `job_id` (cancela antes cualquier suscripción previa)."""
        if not job_id:
            raise ValueError("job_id vacío")
        self._generation += 1
        gen = self._generation
        await self._cancel_tasks()

        self._fsm = JobStateMachine(job_id)
        self._stall.reset()
        # Quien esperaba al job anterior se despierta; wait() ve que el evento ya no es el actual.
        self._done.set()
        self._done = asyncio.Event()
        self._state = ProgressState()
        self._publish(job_id=job_id)
        logger.info(f"Observando job {job_id}")

        self._tasks = [
            asyncio.create_task(self._run(job_id, gen), name=f"job-progress-{job_id}"),
            asyncio.create_task(self._stall_loop(gen), name=f"job-stall-{job_id}"),
        ]

    async def unsubscribe(self) -> None:
        """Deja de observar el job actual (no toca el job remoto)."""
        self._generation += 1
        await self._cancel_tasks()
        self._publish(transport="idle", connected=False)
        self._done.set()

    async def _cancel_tasks(self) -> None:
        tasks, self._tasks = self._tasks, []
        current = asyncio.current_task()
        for t in tasks:
            if t is not current:
                t.cancel()
        for t in tasks:
            if t is current:
                continue
            try:
                await t
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Tarea previa terminó con error al cancelar: {e!r}")

    async def wait(self, timeout: Optional[float] = None) -> Optional[Job]:
        """
        Espera al fin de la suscripción. Relanza el error fatal si lo hubo.

        Devuelve None si mientras tanto se pasó a observar otro job.
        """
        done = self._done
        if timeout is None:
            await done.wait()
        else:
            await asyncio.wait_for(done.wait(), timeout)
        if done is not self._done:
            return None
        if self._state.error is not None:
            raise self._state.error
        return self._state.job

    async def close(self) -> None:
        await self.unsubscribe()

    async def __aenter__(self) -> JobProgressClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------
    # Bucle principal
    # ------------------------------------------------------------
    async def _run(self, job_id: str, gen: int) -> None:
        try:
            await self._initial_fetch(job_id, gen)
            if not self._terminal() and self._channel is not None:
                await self._push_loop(job_id, gen)
            if not self._terminal() and self._is_current(gen):
                await self._poll_loop(job_id, gen)
        except (AuthError, RetryableError) as e:
            if self._is_current(gen):
                logger.error(f"Suscripción a {job_id} terminada: {e}")
                self._publish(error=e, connected=False)
        finally:
            if self._is_current(gen):
                self._publish(connected=False)
                self._done.set()

    async def _initial_fetch(self, job_id: str, gen: int) -> None:
        try:
            job = await self._api.get_job(job_id)
        except AuthError:
            raise
        except ClientError as e:
            logger.warning(f"Snapshot inicial de {job_id} no disponible: {e}")
            return
        self._apply_snapshot(job, gen)

    async def _push_loop(self, job_id: str, gen: int) -> None:
        assert self._channel is not None
        s = self.settings
        attempts = 0
        while self._is_current(gen) and not self._terminal():
            self._publish(transport=self._channel.name)
            try:
                async for msg in self._channel.stream(job_id):
                    if not self._is_current(gen):
                        return
                    attempts = 0
                    if not self._state.connected:
                        self._publish(connected=True)
                    await self._handle_message(job_id, msg, gen)
                    if self._terminal():
                        return
            except AuthError:
                raise
            except TransportError as e:
                attempts += 1
                self._publish(connected=False)
                if attempts > s.max_reconnect_attempts:
                    logger.warning(
                        f"Canal {self._channel.name} sin recuperar tras {s.max_reconnect_attempts} "
                        "reintentos; paso a polling"
                    )
                    return
                delay = backoff_delay(attempts, s.reconnect_delay_s, s.reconnect_delay_max_s)
                logger.warning(
                    f"Canal {self._channel.name} caído ({e}); reintento "
                    f"{attempts}/{s.max_reconnect_attempts} en {delay:.1f}s"
                )
                await self._sleep(delay)
                continue

            # Cierre limpio del servidor: no se reconecta.
            self._publish(connected=False)
            if not self._terminal():
                logger.info(f"Canal {self._channel.name} cerrado por el servidor; sigo por polling")
            return

    async def _poll_loop(self, job_id: str, gen: int) -> None:
        s = self.settings
        failures = 0
        self._publish(transport="polling")
        while self._is_current(gen) and not self._terminal():
            try:
                job = await self._api.get_job(job_id)
            except AuthError:
                raise
            except ClientError as e:
                failures += 1
                logger.warning(f"Polling de {job_id} falló ({failures}/{s.max_poll_failures}): {e}")
                if failures >= s.max_poll_failures:
                    raise RetryableError(
                        f"No se pudo obtener el estado de {job_id} tras {failures} intentos"
                    ) from e
            else:
                failures = 0
                self._apply_snapshot(job, gen)
                if self._terminal():
                    return
            await self._sleep(s.poll_interval_s)

    async def _stall_loop(self, gen: int) -> None:
        while self._is_current(gen) and not self._done.is_set():
            await self._sleep(self.settings.stall_check_interval_s)
            if not self._is_current(gen):
                return
            self._publish(stalled=self._stall.check())

    # ------------------------------------------------------------
    # Aplicación de snapshots / mensajes
    # ------------------------------------------------------------
    def _apply_snapshot(self, job: Job, gen: int) -> bool:
        if not self._is_current(gen) or self._fsm is None:
            return False
        changed = self._fsm.apply(job)
        if changed:
            self._sync_job()
        current = self._fsm.job
        if current is not None:
            self._publish(stalled=self._stall.observe(current.status, current.progress))
        if changed and current is not None and current.is_terminal and not self._fsm.optimistic:
            logger.info(f"Job {current.job_id} terminado: {current.status.value}")
        return changed

    def _base_job(self, job_id: str) -> Job:
        assert self._fsm is not None
        return self._fsm.job or Job(job_id=job_id)

    async def _handle_message(self, job_id: str, msg: Mapping[str, Any], gen: int) -> None:
        kind = msg.get("type")
        if kind == "connection":
            logger.info(f"Conectado al stream de {job_id}")
        elif kind == "progress":
            self._apply_snapshot(self._merge_progress(job_id, msg), gen)
        elif kind == "transaction":
            self._append_transactions(msg, gen)
        elif kind == "completed":
            summary = msg.get("result_summary") or msg.get("result")
            result = await self._fetch_full_result(job_id, summary)
            if not self._is_current(gen):
                return
            base = self._base_job(job_id)
            self._apply_snapshot(
                base.evolve(status=JobStatus.COMPLETED, progress=100.0, result=result), gen
            )
        elif kind == "failed":
            error = msg.get("error_message") or msg.get("message") or "Backtest failed"
            self._apply_snapshot(
                self._base_job(job_id).evolve(status=JobStatus.FAILED, error_message=str(error)), gen
            )
        elif kind == "cancelled":
            self._apply_snapshot(self._base_job(job_id).evolve(status=JobStatus.CANCELLED), gen)
        elif kind == "error":
            logger.warning(f"Error reportado por el stream de {job_id}: {msg.get('message')}")
        elif kind == "pong":
            logger.trace("pong")
        else:
            logger.debug(f"Mensaje desconocido ignorado: {kind!r}")

    def _merge_progress(self, job_id: str, msg: Mapping[str, Any]) -> Job:
        base = self._base_job(job_id)
        changes: Dict[str, Any] = {}
        if msg.get("status") is not None:
            changes["status"] = parse_job_status(msg.get("status"), default=base.status)
        parsed = Job.from_dict({"job_id": job_id, **msg})
        if msg.get("progress") is not None:
            changes["progress"] = parsed.progress
        if msg.get("current_bar") is not None:
            changes["current_bar"] = parsed.current_bar
        if msg.get("total_bars") is not None:
            changes["total_bars"] = parsed.total_bars
        if msg.get("message"):
            changes["message"] = str(msg["message"])
        return base.evolve(**changes)

    def _append_transactions(self, msg: Mapping[str, Any], gen: int) -> None:
        if not self._is_current(gen):
            return
        raw = msg.get("transactions") or []
        new = tuple(Transaction.from_dict(t) for t in raw if isinstance(t, Mapping))
        if not new:
            return
        self._publish(live_transactions=self._state.live_transactions + new)
        logger.debug(
            f"+{len(new)} transacciones en vivo (total {len(self._state.live_transactions)})"
        )

    async def _fetch_full_result(self, job_id: str, summary: Any) -> Optional[Dict[str, Any]]:
        """
        El mensaje `completed` solo trae un resumen; el resultado completo se pide
        por REST. Si no está disponible se usa el resumen.
        """
        fallback = dict(summary) if isinstance(summary, Mapping) else None
        try:
            job = await self._api.get_job(job_id)
        except ClientError as e:
            logger.warning(f"No se pudo obtener el resultado completo de {job_id}: {e}; uso el resumen")
            return fallback
        if job.status == JobStatus.COMPLETED and job.result is not None:
            return dict(job.result)
        logger.warning(f"Resultado completo de {job_id} no disponible ({job.status.value}); uso el resumen")
        return fallback

    # ------------------------------------------------------------
    # Comandos de usuario
    # ------------------------------------------------------------
    async def refresh(self) -> Optional[Job]:
        """Pide un snapshot nuevo: por el socket si está abierto, si no por REST."""
        if self._fsm is None:
            return None
        gen = self._generation
        job_id = self._fsm.job_id
        if self._channel is not None and self._state.connected:
            if await self._channel.send({"type": "refresh"}):
                return self._state.job
        try:
            job = await self._api.get_job(job_id)
        except AuthError:
            raise
        except ClientError as e:
            logger.warning(f"Refresh de {job_id} falló: {e}")
            return self._state.job
        self._apply_snapshot(job, gen)
        return self._state.job

    async def _command(self, name: str, call: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        if self._fsm is None:
            raise RuntimeError("No hay job observado")
        gen = self._generation
        job_id = self._fsm.job_id
        try:
            response = await call(job_id, *args)
            if self._is_current(gen) and self._fsm.apply_optimistic(name) is not None:
                self._sync_job()
            logger.info(f"Comando {name} enviado a {job_id}")
            return response
        except ClientError as e:
            logger.error(f"Comando {name} sobre {job_id} falló: {e}")
            raise
        finally:
            # Refresco siempre, haya ido bien o mal.
            if self._is_current(gen):
                await self.refresh()

    async def cancel(self) -> Any:
        return await self._command("cancel", self._api.cancel_job)

    async def pause(self, reason: Optional[str] = "User requested") -> Any:
        return await self._command("pause", self._api.pause_job, reason)

    async def resume(self) -> Any:
        return await self._command("resume", self._api.resume_job)
