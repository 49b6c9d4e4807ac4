import pytest
from conftest import FakeTimers, flush
from querykit.environment import FocusManager, OnlineManager
from querykit.errors import CancelledError, MissingQueryFnError
from querykit.retryer import (
	CancellationSignal,
	Retryer,
	can_fetch,
	default_retry_delay,
	should_retry,
)
from querykit.scheduling import TimeoutManager


def make_retryer(fn, timers: FakeTimers, **kwargs):
	kwargs.setdefault("focus", FocusManager())
	kwargs.setdefault("online", OnlineManager())
	return Retryer(fn, timeouts=TimeoutManager(timers), **kwargs)


def test_default_retry_delay_doubles_and_caps():
	assert default_retry_delay(0) == 1.0
	assert default_retry_delay(1) == 2.0
	assert default_retry_delay(4) == 16.0
	assert default_retry_delay(10) == 30.0


def test_should_retry_policies():
	error = ValueError()
	assert should_retry(None, 2, error)
	assert not should_retry(None, 3, error)
	assert should_retry(True, 100, error)
	assert not should_retry(False, 0, error)
	assert should_retry(2, 1, error)
	assert not should_retry(2, 2, error)
	assert should_retry(lambda count, err: isinstance(err, ValueError), 0, error)


def test_can_fetch_by_network_mode():
	online = OnlineManager()
	online.set_online(False)
	assert not can_fetch("online", online)
	assert not can_fetch(None, online)
	assert can_fetch("always", online)
	assert can_fetch("offlineFirst", online)


@pytest.mark.asyncio
async def test_resolves_first_success(timers: FakeTimers):
	retryer = make_retryer(lambda: 42, timers)
	assert await retryer.start() == 42
	assert retryer.status() == "fulfilled"
	assert retryer.failure_count == 0


@pytest.mark.asyncio
async def test_retry_count_bounds_attempts(timers: FakeTimers):
	calls = 0
	failures: list[int] = []

	async def fn():
		nonlocal calls
		calls += 1
		raise ValueError(f"attempt {calls}")

	retryer = make_retryer(
		fn, timers, retry=2, retry_delay=1.0, on_fail=lambda count, _: failures.append(count)
	)
	future = retryer.start()
	await timers.advance(1.0)
	await timers.advance(1.0)
	with pytest.raises(ValueError, match="attempt 3"):
		await future
	assert calls == 3
	assert failures == [1, 2]


@pytest.mark.asyncio
async def test_retry_waits_for_delay(timers: FakeTimers):
	calls = 0

	async def fn():
		nonlocal calls
		calls += 1
		if calls < 2:
			raise ValueError("first")
		return "ok"

	retryer = make_retryer(fn, timers, retry=1)
	future = retryer.start()
	await flush()
	assert calls == 1
	await timers.advance(0.5)
	assert calls == 1
	await timers.advance(0.5)
	assert await future == "ok"


@pytest.mark.asyncio
async def test_usage_errors_are_not_retried(timers: FakeTimers):
	calls = 0

	def fn():
		nonlocal calls
		calls += 1
		raise MissingQueryFnError("['x']")

	retryer = make_retryer(fn, timers, retry=5)
	with pytest.raises(MissingQueryFnError):
		await retryer.start()
	assert calls == 1


@pytest.mark.asyncio
async def test_cancel_rejects_and_notifies(timers: FakeTimers):
	cancelled: list[CancelledError] = []

	async def fn():
		await timers_never()

	async def timers_never():
		await CancellationSignal().wait()

	retryer = make_retryer(fn, timers, on_cancel=cancelled.append)
	future = retryer.start()
	await flush()
	retryer.cancel(revert=True)
	with pytest.raises(CancelledError) as info:
		await future
	assert info.value.revert
	assert cancelled == [info.value]
	retryer.cancel()
	assert len(cancelled) == 1


@pytest.mark.asyncio
async def test_pauses_while_offline_and_continues(timers: FakeTimers):
	online = OnlineManager()
	online.set_online(False)
	paused: list[bool] = []
	resumed: list[bool] = []
	calls = 0

	def fn():
		nonlocal calls
		calls += 1
		return "done"

	retryer = make_retryer(
		fn,
		timers,
		online=online,
		on_pause=lambda: paused.append(True),
		on_continue=lambda: resumed.append(True),
	)
	future = retryer.start()
	await flush()
	assert paused == [True]
	assert calls == 0

	retryer.continue_()
	await flush()
	assert calls == 0

	online.set_online(True)
	retryer.continue_()
	assert await future == "done"
	assert resumed == [True]


@pytest.mark.asyncio
async def test_unfocused_retry_pauses_after_delay(timers: FakeTimers):
	focus = FocusManager()
	calls = 0

	def fn():
		nonlocal calls
		calls += 1
		if calls == 1:
			raise ValueError("flaky")
		return "ok"

	retryer = make_retryer(fn, timers, focus=focus, retry=1, retry_delay=1.0)
	future = retryer.start()
	await flush()
	focus.set_focused(False)
	await timers.advance(1.0)
	assert calls == 1

	focus.set_focused(True)
	retryer.continue_()
	assert await future == "ok"
	assert calls == 2


@pytest.mark.asyncio
async def test_cancel_retry_stops_after_current_attempt(timers: FakeTimers):
	calls = 0

	def fn():
		nonlocal calls
		calls += 1
		raise ValueError("nope")

	retryer = make_retryer(fn, timers, retry=3, retry_delay=1.0)
	future = retryer.start()
	await flush()
	retryer.cancel_retry()
	await timers.advance(1.0)
	with pytest.raises(ValueError):
		await future
	assert calls == 1


@pytest.mark.asyncio
async def test_initial_future_is_used_for_first_attempt(timers: FakeTimers):
	async def initial():
		return "from initial"

	retryer = make_retryer(lambda: "from fn", timers, initial_future=initial())
	assert await retryer.start() == "from initial"


@pytest.mark.asyncio
async def test_cancellation_signal():
	signal = CancellationSignal()
	heard: list[bool] = []
	signal.add_listener(lambda: heard.append(True))
	signal.abort()
	assert signal.aborted
	assert heard == [True]
	with pytest.raises(CancelledError):
		signal.raise_if_aborted()
	await signal.wait()

	late: list[bool] = []
	signal.add_listener(lambda: late.append(True))
	assert late == [True]
