import pytest
from conftest import flush
from querykit.notify import NotifyManager


@pytest.mark.asyncio
async def test_schedule_defers_to_next_iteration():
	manager = NotifyManager()
	calls: list[str] = []
	manager.schedule(lambda: calls.append("a"))
	assert calls == []
	await flush()
	assert calls == ["a"]


@pytest.mark.asyncio
async def test_batch_flushes_once_after_outermost_block():
	manager = NotifyManager()
	calls: list[int] = []
	with manager.batch():
		manager.schedule(lambda: calls.append(1))
		with manager.batch():
			manager.schedule(lambda: calls.append(2))
		assert manager.in_batch
		await flush()
		# Still inside the outer batch
		assert calls == []
	assert not manager.in_batch
	await flush()
	assert calls == [1, 2]


@pytest.mark.asyncio
async def test_batch_calls_wraps_callback():
	manager = NotifyManager()
	seen: list[tuple[int, str]] = []
	wrapped = manager.batch_calls(lambda a, b: seen.append((a, b)))
	with manager.batch():
		wrapped(1, "x")
		wrapped(2, "y")
	await flush()
	assert seen == [(1, "x"), (2, "y")]


@pytest.mark.asyncio
async def test_listener_errors_are_logged_and_do_not_stop_others(caplog: pytest.LogCaptureFixture):
	manager = NotifyManager()
	calls: list[str] = []

	def broken():
		raise ValueError("boom")

	with manager.batch():
		manager.schedule(broken)
		manager.schedule(lambda: calls.append("after"))
	await flush()
	assert calls == ["after"]
	assert "Unhandled exception in notification listener" in caplog.text


@pytest.mark.asyncio
async def test_custom_notify_and_batch_functions():
	manager = NotifyManager()
	events: list[str] = []

	def notify_fn(callback):
		events.append("notify")
		callback()

	def batch_notify_fn(run):
		events.append("batch-start")
		run()
		events.append("batch-end")

	manager.set_notify_function(notify_fn)
	manager.set_batch_notify_function(batch_notify_fn)
	with manager.batch():
		manager.schedule(lambda: events.append("listener"))
	await flush()
	assert events == ["batch-start", "notify", "listener", "batch-end"]


def test_inline_scheduler_flushes_synchronously():
	manager = NotifyManager(scheduler=lambda cb: cb())
	calls: list[int] = []
	with manager.batch():
		manager.schedule(lambda: calls.append(1))
		assert calls == []
	assert calls == [1]
