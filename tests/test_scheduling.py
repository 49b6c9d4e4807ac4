import asyncio
import threading

import anyio.to_thread
import pytest
from conftest import FakeTimers
from querykit import LoopTimeoutProvider, TimeoutManager
from querykit.scheduling import call_soon, has_running_loop, schedule_on_loop


@pytest.mark.asyncio
async def test_loop_provider_timeout():
	provider = LoopTimeoutProvider()
	fired: list[str] = []
	provider.set_timeout(lambda: fired.append("a"), 0.01)
	cancelled = provider.set_timeout(lambda: fired.append("b"), 0.01)
	provider.clear_timeout(cancelled)
	await asyncio.sleep(0.05)
	assert fired == ["a"]


@pytest.mark.asyncio
async def test_loop_provider_interval():
	provider = LoopTimeoutProvider()
	ticks: list[int] = []
	handle = provider.set_interval(lambda: ticks.append(1), 0.01)
	await asyncio.sleep(0.1)
	provider.clear_interval(handle)
	count = len(ticks)
	assert count >= 2
	await asyncio.sleep(0.05)
	assert len(ticks) == count


@pytest.mark.asyncio
async def test_timeout_callback_errors_go_to_loop_handler():
	loop = asyncio.get_running_loop()
	seen: list[BaseException] = []
	loop.set_exception_handler(lambda _, context: seen.append(context["exception"]))
	try:

		def boom():
			raise ValueError("boom")

		LoopTimeoutProvider().set_timeout(boom, 0)
		await asyncio.sleep(0.01)
	finally:
		loop.set_exception_handler(None)
	assert isinstance(seen[0], ValueError)


def test_manager_delegates_to_provider():
	timers = FakeTimers(start=50.0)
	manager = TimeoutManager(timers)
	assert manager.now() == 50.0
	handle = manager.set_timeout(lambda: None, 1.0)
	assert timers.pending() == 1
	manager.clear_timeout(handle)
	assert timers.pending() == 0


def test_switching_provider_after_use_warns(caplog: pytest.LogCaptureFixture):
	manager = TimeoutManager(FakeTimers())
	manager.set_timeout_provider(FakeTimers())
	assert "Switching timeout provider" not in caplog.text

	manager.set_timeout(lambda: None, 1.0)
	replacement = FakeTimers()
	manager.set_timeout_provider(replacement)
	assert "Switching timeout provider" in caplog.text
	assert manager.provider is replacement


def test_call_soon_without_loop_runs_inline():
	ran: list[int] = []
	assert not has_running_loop()
	assert call_soon(lambda: ran.append(1)) is False
	assert ran == [1]


@pytest.mark.asyncio
async def test_call_soon_defers_on_loop():
	ran: list[int] = []
	assert call_soon(lambda: ran.append(1)) is True
	assert ran == []
	await asyncio.sleep(0)
	assert ran == [1]


@pytest.mark.asyncio
async def test_schedule_on_loop_from_another_thread():
	loop = asyncio.get_running_loop()
	done = asyncio.Event()
	threads: list[int] = []

	def record():
		threads.append(threading.get_ident())
		done.set()

	worker = threading.Thread(target=lambda: schedule_on_loop(record, loop))
	worker.start()
	await asyncio.wait_for(done.wait(), 1.0)
	worker.join()
	assert threads == [threading.get_ident()]


@pytest.mark.asyncio
async def test_schedule_on_loop_from_anyio_worker():
	threads: list[int] = []
	await anyio.to_thread.run_sync(lambda: schedule_on_loop(lambda: threads.append(threading.get_ident())))
	assert threads == [threading.get_ident()]
