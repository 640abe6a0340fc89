import asyncio
import signal

import uvicorn

from clipper.registry import JobProcessHandle
from clipper.server import ClipperServer

from conftest import FakeProcess


class RecordingLoop:
    def __init__(self):
        self.scheduled = []

    def is_closed(self):
        return False

    def call_soon_threadsafe(self, callback, *args):
        self.scheduled.append(callback)


def make_server(registry):
    return ClipperServer(uvicorn.Config(app=None), registry=registry)


def admit_running_job(registry):
    job_id = registry.try_admit().job_id
    handle = JobProcessHandle()
    registry.register(job_id, handle)
    handle.process = FakeProcess()
    return handle.process


def test_handle_exit_defers_cancellation_to_loop(registry):
    process = admit_running_job(registry)
    server = make_server(registry)
    server.loop = RecordingLoop()

    server.handle_exit(signal.SIGTERM, None)

    assert server.should_exit
    assert server.loop.scheduled == [server._cancel_jobs]
    assert not process.killed
    assert len(registry) == 1

    server.loop.scheduled[0]()

    assert process.killed
    assert len(registry) == 0


def test_handle_exit_does_not_block_on_held_registry_lock(registry):
    process = admit_running_job(registry)
    server = make_server(registry)

    async def scenario():
        server.loop = asyncio.get_running_loop()
        # the signal lands while a request thread is inside the registry
        with registry._lock:
            server.handle_exit(signal.SIGTERM, None)
            assert not process.killed
        await asyncio.sleep(0.01)

    asyncio.run(scenario())

    assert process.killed
    assert len(registry) == 0


def test_handle_exit_before_serving_only_requests_shutdown(registry):
    process = admit_running_job(registry)
    server = make_server(registry)

    server.handle_exit(signal.SIGINT, None)

    assert server.should_exit
    assert not process.killed
