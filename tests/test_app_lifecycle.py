import asyncio
import logging
import signal

import pytest

import form_relay.app as app_module
from form_relay.app import FormRelayService, main
from form_relay.config import AppConfig
from form_relay.domain.schema import JobPayload

from tests.fakes import InMemoryBroker, FakeSheetWriter, wait_until


class FakeServer:
    """Stands in for uvicorn.Server: serves until should_exit is set."""

    def __init__(self, events, fail_with=None):
        self.events = events
        self.fail_with = fail_with
        self.should_exit = False
        self.started = False

    async def serve(self):
        self.started = True
        if self.fail_with is not None:
            raise self.fail_with
        while not self.should_exit:
            await asyncio.sleep(0.005)
        self.events.append("server_stopped")


def record_queue_close(service, events):
    original_close = service.job_queue.close

    async def close(timeout=30.0):
        events.append("queue_closing")
        await original_close(timeout)

    service.job_queue.close = close


async def run_until(service, server, trigger):
    task = asyncio.create_task(service.run(server=server))
    await wait_until(lambda: server.started)
    trigger()
    return await asyncio.wait_for(task, timeout=5)


@pytest.fixture
def service(app_config):
    return FormRelayService(app_config, broker=InMemoryBroker(), sheet_writer=FakeSheetWriter())


@pytest.mark.asyncio
async def test_signal_stops_server_before_draining_queue(service):
    events = []
    server = FakeServer(events)

    async with service.lifespan():
        record_queue_close(service, events)
        code = await run_until(service, server, lambda: service._handle_signal(signal.SIGTERM))

    assert code == 0
    assert events[:2] == ["server_stopped", "queue_closing"]
    assert not service.job_queue.is_processing


@pytest.mark.asyncio
async def test_in_flight_job_finishes_during_shutdown(service):
    events = []
    server = FakeServer(events)
    release = asyncio.Event()
    finished = []

    async with service.lifespan():
        original_worker = service.worker

        async def slow_worker(job):
            await release.wait()
            await original_worker(job)
            finished.append(job.id)

        service.worker = slow_worker
        handle = await service.job_queue.enqueue(
            JobPayload(name="Ana María", phone="+593991234567", timestamp="5/3/2026, 9:07:03")
        )

        task = asyncio.create_task(service.run(server=server))
        await wait_until(lambda: service.job_queue.in_flight == 1)
        service.request_shutdown("test")
        await asyncio.sleep(0.02)
        release.set()
        code = await asyncio.wait_for(task, timeout=5)

    assert code == 0
    assert finished == [handle.job_id]
    assert service.sheet_writer.rows[0][0] == "Ana María"


@pytest.mark.asyncio
async def test_unhandled_loop_exception_is_fatal(service):
    server = FakeServer([])

    async with service.lifespan():
        loop = asyncio.get_running_loop()
        code = await run_until(
            service,
            server,
            lambda: loop.call_exception_handler({
                "message": "Task exception was never retrieved",
                "exception": RuntimeError("boom")
            })
        )

    assert code == 1


@pytest.mark.asyncio
async def test_background_failure_is_fatal(service):
    server = FakeServer([])

    async with service.lifespan():
        code = await run_until(service, server, lambda: service._on_background_failure(RuntimeError("loop died")))

    assert code == 1


@pytest.mark.asyncio
async def test_server_crash_is_fatal(service):
    server = FakeServer([], fail_with=OSError("address already in use"))

    async with service.lifespan():
        code = await asyncio.wait_for(service.run(server=server), timeout=5)

    assert code == 1


@pytest.mark.asyncio
async def test_loop_exception_handler_is_restored(service):
    loop = asyncio.get_running_loop()
    previous = loop.get_exception_handler()

    async with service.lifespan():
        await run_until(service, FakeServer([]), lambda: service.request_shutdown("test"))

    assert loop.get_exception_handler() is previous


@pytest.mark.asyncio
async def test_run_requires_setup(app_config):
    with pytest.raises(RuntimeError):
        await FormRelayService(app_config).run(server=FakeServer([]))


@pytest.mark.asyncio
async def test_main_refuses_to_start_without_required_settings(monkeypatch, caplog):
    monkeypatch.setattr(app_module, "load_config", lambda: AppConfig())
    monkeypatch.setattr(app_module, "setup_logging", lambda **kwargs: None)

    with caplog.at_level(logging.ERROR):
        code = await main()

    assert code == 1
    messages = " ".join(record.getMessage() for record in caplog.records)
    for name in ("GOOGLE_CLIENT_EMAIL", "GOOGLE_PRIVATE_KEY", "SPREADSHEET_ID", "REDIS_URL"):
        assert name in messages


@pytest.mark.asyncio
async def test_main_exits_when_config_cannot_load(monkeypatch):
    def broken_load():
        raise ValueError("Invalid YAML config")

    monkeypatch.setattr(app_module, "load_config", broken_load)

    assert await main() == 1
