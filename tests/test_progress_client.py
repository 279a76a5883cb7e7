from __future__ import annotations

import asyncio

import pytest

from core.config_loader import ProgressSettings
from core.errors import ApiError, AuthError, RetryableError, TransportError
from core.types import Job, JobStatus
from data.api_client import BacktestApiClient
from data.feeds.job_progress import SSEJobChannel, WebSocketJobChannel
from jobs.progress_client import JobProgressClient, backoff_delay, make_push_channel

STALL_TICK = 999.0

SETTINGS = ProgressSettings(
    max_reconnect_attempts=2,
    reconnect_delay_s=1.0,
    reconnect_delay_max_s=10.0,
    poll_interval_s=0.5,
    stall_check_interval_s=STALL_TICK,
    max_poll_failures=3,
)


def _job(job_id: str = "J1", status: str = "running", progress: float = 0.0, **kw) -> Job:
    return Job.from_dict({"job_id": job_id, "status": status, "progress": progress, **kw})


# ------------------------------------------------------------
# Fakes
# ------------------------------------------------------------
class FakeApi:
    """get_job devuelve la lista de respuestas en orden; la última se repite."""

    def __init__(self, responses, command_error: Exception | None = None):
        self.responses = {k: list(v) for k, v in responses.items()}
        self.command_error = command_error
        self.calls: list[tuple] = []

    async def get_job(self, job_id):
        self.calls.append(("get_job", job_id))
        seq = self.responses[job_id]
        item = seq.pop(0) if len(seq) > 1 else seq[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def _command(self, *call):
        self.calls.append(call)
        if self.command_error is not None:
            raise self.command_error
        return {"status": "ok"}

    async def cancel_job(self, job_id):
        return await self._command("cancel", job_id)

    async def pause_job(self, job_id, reason=None):
        return await self._command("pause", job_id, reason)

    async def resume_job(self, job_id):
        return await self._command("resume", job_id)


class FakeChannel:
    """
    Cada sesión es una lista de mensajes; una excepción en la lista se lanza en
    ese punto. Sesión agotada sin excepción = cierre limpio. Sin sesiones → caída.
    """

    name = "websocket"

    def __init__(self, sessions):
        self.sessions = list(sessions)
        self.opened = 0
        self.sent: list[dict] = []
        self._open = False

    async def stream(self, job_id):
        self.opened += 1
        if not self.sessions:
            raise TransportError("connection refused")
        session = self.sessions.pop(0)
        self._open = True
        try:
            for item in session:
                await asyncio.sleep(0)
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self._open = False

    async def send(self, payload):
        self.sent.append(payload)
        return self._open


class QueueChannel:
    """Canal que entrega lo que el test mete en la cola de cada job (None = cierre)."""

    name = "websocket"

    def __init__(self):
        self.queues: dict[str, asyncio.Queue] = {}
        self.closed: list[str] = []
        self.sent: list[dict] = []
        self._open = False

    def queue(self, job_id):
        return self.queues.setdefault(job_id, asyncio.Queue())

    async def stream(self, job_id):
        q = self.queue(job_id)
        self._open = True
        try:
            while True:
                item = await q.get()
                if item is None:
                    return
                yield item
        finally:
            self._open = False
            self.closed.append(job_id)

    async def send(self, payload):
        self.sent.append(payload)
        return self._open


class FakeSleep:
    """Registra los retardos pedidos; el tick del stall detector se queda bloqueado."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds):
        if seconds == STALL_TICK:
            await asyncio.Event().wait()
        self.delays.append(seconds)
        await asyncio.sleep(0)


async def _settle(ticks: int = 20):
    for _ in range(ticks):
        await asyncio.sleep(0)


# ------------------------------------------------------------
# Tests
# ------------------------------------------------------------
def test_backoff_delay_doubles_up_to_cap():
    assert [backoff_delay(n, 1.0, 10.0) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]
    assert backoff_delay(1, 0.5, 10.0) == 0.5


def test_websocket_happy_path_fetches_full_result():
    full = {"total_trades": 2, "transactions": [], "total_return_pct": 3.1}

    async def scenario():
        api = FakeApi({"J1": [_job(progress=0), _job(status="completed", progress=100, result=full)]})
        channel = FakeChannel([[
            {"type": "connection", "job_id": "J1"},
            {"type": "progress", "status": "running", "progress": 50, "current_bar": 500},
            {"type": "progress", "status": "running", "progress": 50, "current_bar": 501},
            {"type": "completed", "result_summary": {"total_trades": 2}},
        ]])
        sleep = FakeSleep()
        client = JobProgressClient(api, channel, settings=SETTINGS, sleep=sleep)
        seen: list[float] = []
        client.add_listener(lambda s: s.job is not None and seen.append(s.job.progress))

        await client.watch("J1")
        job = await client.wait(timeout=1)
        state = client.state
        await client.close()
        return state, job, seen, sleep

    state, job, seen, sleep = asyncio.run(scenario())

    assert job.status == JobStatus.COMPLETED
    assert job.result == full
    assert state.transport == "websocket"
    assert state.error is None
    assert sleep.delays == []
    # 500 → 501 no es un cambio significativo
    deduped = [p for i, p in enumerate(seen) if i == 0 or seen[i - 1] != p]
    assert deduped == [0.0, 50.0, 100.0]


def test_completed_falls_back_to_summary_when_rest_fails():
    async def scenario():
        api = FakeApi({"J1": [_job(progress=90), TransportError("down")]})
        channel = FakeChannel([[{"type": "completed", "result_summary": {"total_trades": 7}}]])
        client = JobProgressClient(api, channel, settings=SETTINGS, sleep=FakeSleep())
        await client.watch("J1")
        job = await client.wait(timeout=1)
        await client.close()
        return job

    job = asyncio.run(scenario())
    assert job.status == JobStatus.COMPLETED
    assert job.result == {"total_trades": 7}


def test_reconnects_with_backoff_then_polls():
    async def scenario():
        api = FakeApi({
            "J1": [
                _job(progress=10),
                _job(progress=20),
                _job(status="completed", progress=100, result={"total_trades": 0}),
            ]
        })
        channel = FakeChannel([])
        sleep = FakeSleep()
        client = JobProgressClient(api, channel, settings=SETTINGS, sleep=sleep)
        await client.watch("J1")
        job = await client.wait(timeout=1)
        state = client.state
        await client.close()
        return state, channel, sleep, job

    state, channel, sleep, job = asyncio.run(scenario())

    assert channel.opened == 3  # 1 intento + 2 reintentos
    assert sleep.delays == [1.0, 2.0, 0.5]
    assert job.status == JobStatus.COMPLETED
    assert state.transport == "polling"


def test_attempt_counter_resets_after_each_message():
    async def scenario():
        api = FakeApi({"J1": [_job(progress=0), _job(status="completed", progress=100, result={})]})
        channel = FakeChannel([
            [{"type": "progress", "progress": 10}, TransportError("drop")],
            [{"type": "progress", "progress": 20}, TransportError("drop")],
            [{"type": "progress", "progress": 30}, TransportError("drop")],
        ])
        sleep = FakeSleep()
        client = JobProgressClient(api, channel, settings=SETTINGS, sleep=sleep)
        await client.watch("J1")
        job = await client.wait(timeout=1)
        await client.close()
        return sleep, job

    sleep, job = asyncio.run(scenario())
    assert sleep.delays == [1.0, 1.0, 1.0, 2.0]
    assert job.status == JobStatus.COMPLETED


def test_clean_close_is_not_retried():
    async def scenario():
        api = FakeApi({"J1": [_job(progress=0), _job(status="cancelled", progress=40)]})
        channel = FakeChannel([[{"type": "progress", "progress": 40}]])
        sleep = FakeSleep()
        client = JobProgressClient(api, channel, settings=SETTINGS, sleep=sleep)
        await client.watch("J1")
        job = await client.wait(timeout=1)
        await client.close()
        return channel, sleep, job

    channel, sleep, job = asyncio.run(scenario())
    assert channel.opened == 1
    assert sleep.delays == []
    assert job.status == JobStatus.CANCELLED


def test_auth_error_is_fatal_and_never_retried():
    async def scenario():
        api = FakeApi({"J1": [_job(progress=5)]})
        channel = FakeChannel([[AuthError(401, "token expired")]])
        sleep = FakeSleep()
        client = JobProgressClient(api, channel, settings=SETTINGS, sleep=sleep)
        await client.watch("J1")
        with pytest.raises(AuthError):
            await client.wait(timeout=1)
        await client.close()
        return client, channel, sleep

    client, channel, sleep = asyncio.run(scenario())
    assert channel.opened == 1
    assert sleep.delays == []
    assert isinstance(client.state.error, AuthError)
    assert client.state.connected is False


def test_polling_gives_up_after_consecutive_failures():
    async def scenario():
        api = FakeApi({"J1": [TransportError("timeout")]})
        sleep = FakeSleep()
        client = JobProgressClient(api, None, settings=SETTINGS, sleep=sleep)
        await client.watch("J1")
        with pytest.raises(RetryableError):
            await client.wait(timeout=1)
        state = client.state
        await client.close()
        return state, sleep, api

    state, sleep, api = asyncio.run(scenario())
    assert sleep.delays == [0.5, 0.5]
    assert len(api.calls) == 4  # snapshot inicial + 3 polls
    assert state.transport == "polling"
    assert isinstance(state.error, RetryableError)


def test_switching_jobs_discards_old_subscription():
    async def scenario():
        api = FakeApi({"J1": [_job("J1", progress=10)], "J2": [_job("J2", progress=5)]})
        channel = QueueChannel()
        client = JobProgressClient(api, channel, settings=SETTINGS, sleep=FakeSleep())

        await client.watch("J1")
        channel.queue("J1").put_nowait({"type": "progress", "status": "running", "progress": 20})
        await _settle()
        assert client.job.progress == 20.0

        gen = client.generation
        await client.watch("J2")
        assert client.generation == gen + 1
        assert channel.closed == ["J1"]

        channel.queue("J1").put_nowait({"type": "progress", "progress": 90})
        channel.queue("J2").put_nowait({"type": "progress", "status": "running", "progress": 7})
        await _settle()
        state = client.state
        await client.close()
        return state

    state = asyncio.run(scenario())
    assert state.job_id == "J2"
    assert state.job.job_id == "J2"
    assert state.job.progress == 7.0


def test_switching_jobs_releases_previous_waiter():
    async def scenario():
        api = FakeApi({"J1": [_job("J1", progress=10)], "J2": [_job("J2", progress=5)]})
        client = JobProgressClient(api, QueueChannel(), settings=SETTINGS, sleep=FakeSleep())

        await client.watch("J1")
        waiter = asyncio.create_task(client.wait())
        await _settle()
        assert not waiter.done()

        await client.watch("J2")
        previous = await asyncio.wait_for(waiter, 1)
        current = client.job_id
        await client.close()
        return previous, current

    previous, current = asyncio.run(scenario())
    assert previous is None
    assert current == "J2"


def test_live_transactions_accumulate():
    async def scenario():
        api = FakeApi({"J1": [_job(progress=10)]})
        channel = QueueChannel()
        client = JobProgressClient(api, channel, settings=SETTINGS, sleep=FakeSleep())
        await client.watch("J1")
        q = channel.queue("J1")
        q.put_nowait({"type": "transaction", "transactions": [
            {"trade_id": "T1", "type": "BUY", "status": "OPENED", "quantity": 1},
            {"trade_id": "T2", "type": "BUY", "status": "OPENED", "quantity": 2},
        ]})
        q.put_nowait({"type": "transaction", "transactions": [
            {"trade_id": "T1", "type": "SELL", "status": "CLOSED", "quantity": 1},
        ]})
        q.put_nowait({"type": "pong"})
        q.put_nowait({"type": "something_new"})
        await _settle()
        state = client.state
        await client.close()
        return state

    state = asyncio.run(scenario())
    assert [t.trade_id for t in state.live_transactions] == ["T1", "T2", "T1"]
    assert state.connected is True


def test_optimistic_pause_survives_socket_refresh_until_server_answers():
    async def scenario():
        api = FakeApi({"J1": [_job(progress=40)]})
        channel = QueueChannel()
        client = JobProgressClient(api, channel, settings=SETTINGS, sleep=FakeSleep())
        await client.watch("J1")
        channel.queue("J1").put_nowait({"type": "connection"})
        await _settle()
        assert client.state.connected

        await client.pause()
        after_command = client.state
        sent = list(channel.sent)

        channel.queue("J1").put_nowait({"type": "progress", "status": "running", "progress": 41})
        await _settle()
        after_server = client.state
        await client.close()
        return api, after_command, sent, after_server

    api, after_command, sent, after_server = asyncio.run(scenario())

    assert ("pause", "J1", "User requested") in api.calls
    assert after_command.job.status == JobStatus.PAUSED
    assert after_command.optimistic is True
    assert sent == [{"type": "refresh"}]

    assert after_server.job.status == JobStatus.RUNNING
    assert after_server.job.progress == 41.0
    assert after_server.optimistic is False


def test_optimistic_cancel_replaced_by_rest_refresh():
    async def scenario():
        api = FakeApi({"J1": [_job(progress=40), _job(status="cancelled", progress=40)]})
        channel = QueueChannel()  # abierto pero sin mensajes: refresh por REST
        client = JobProgressClient(api, channel, settings=SETTINGS, sleep=FakeSleep())
        await client.watch("J1")
        await _settle()
        await client.cancel()
        state = client.state
        await client.close()
        return api, state

    api, state = asyncio.run(scenario())
    assert api.calls == [("get_job", "J1"), ("cancel", "J1"), ("get_job", "J1")]
    assert state.job.status == JobStatus.CANCELLED
    assert state.optimistic is False
    assert state.is_terminal


def test_failed_command_is_raised_and_state_refreshed():
    async def scenario():
        api = FakeApi({"J1": [_job(progress=40)]}, command_error=ApiError(409, "Job is not running"))
        channel = QueueChannel()
        client = JobProgressClient(api, channel, settings=SETTINGS, sleep=FakeSleep())
        await client.watch("J1")
        await _settle()
        with pytest.raises(ApiError):
            await client.resume()
        state = client.state
        await client.close()
        return api, state

    api, state = asyncio.run(scenario())
    assert api.calls == [("get_job", "J1"), ("resume", "J1"), ("get_job", "J1")]
    assert state.job.status == JobStatus.RUNNING
    assert state.optimistic is False


def test_commands_require_a_watched_job():
    async def scenario():
        client = JobProgressClient(FakeApi({}), None, settings=SETTINGS, sleep=FakeSleep())
        with pytest.raises(RuntimeError):
            await client.cancel()
        assert await client.refresh() is None

    asyncio.run(scenario())


def test_listener_can_be_removed():
    async def scenario():
        api = FakeApi({"J1": [_job(status="completed", progress=100, result={})]})
        client = JobProgressClient(api, None, settings=SETTINGS, sleep=FakeSleep())
        calls: list = []
        remove = client.add_listener(calls.append)
        remove()
        await client.watch("J1")
        await client.wait(timeout=1)
        await client.close()
        return calls

    assert asyncio.run(scenario()) == []


def test_make_push_channel_follows_settings():
    api = BacktestApiClient("https://api.example.com", "tok")

    assert make_push_channel(api, ProgressSettings(use_websocket=False)) is None

    sse = make_push_channel(api, ProgressSettings(push_transport="sse"))
    assert isinstance(sse, SSEJobChannel)
    assert sse.url("J1") == "https://api.example.com/api/sse/backtest/J1?token=tok"

    ws = make_push_channel(api, ProgressSettings())
    assert isinstance(ws, WebSocketJobChannel)
    assert ws.url("J1") == "wss://api.example.com/ws/backtest/J1?token=tok"
