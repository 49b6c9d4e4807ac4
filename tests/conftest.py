import asyncio
import itertools
from collections.abc import Callable
from typing import Any

import pytest
from querykit import FocusManager, NotifyManager, OnlineManager, QueryClient, TimeoutManager


class FakeTimers:
	"""Virtual clock. Timers only fire when a test calls `advance`."""

	def __init__(self, start: float = 1000.0) -> None:
		self._now = start
		self._ids = itertools.count(1)
		self._timers: dict[int, tuple[float, Callable[[], None], float | None]] = {}

	def set_timeout(self, callback: Callable[[], None], delay: float) -> int:
		timer_id = next(self._ids)
		self._timers[timer_id] = (self._now + max(delay, 0.0), callback, None)
		return timer_id

	def clear_timeout(self, handle: Any) -> None:
		self._timers.pop(handle, None)

	def set_interval(self, callback: Callable[[], None], interval: float) -> int:
		timer_id = next(self._ids)
		self._timers[timer_id] = (self._now + interval, callback, interval)
		return timer_id

	def clear_interval(self, handle: Any) -> None:
		self._timers.pop(handle, None)

	def now(self) -> float:
		return self._now

	def pending(self) -> int:
		return len(self._timers)

	async def advance(self, seconds: float) -> None:
		target = self._now + seconds
		await flush()
		while True:
			due = [(when, timer_id) for timer_id, (when, _, _) in self._timers.items() if when <= target]
			if not due:
				break
			when, timer_id = min(due)
			_, callback, interval = self._timers.pop(timer_id)
			self._now = max(self._now, when)
			if interval is not None:
				self._timers[timer_id] = (when + interval, callback, interval)
			callback()
			await flush()
		self._now = target
		await flush()


async def flush(rounds: int = 20) -> None:
	"""Let pending tasks and deferred notifications run."""
	for _ in range(rounds):
		await asyncio.sleep(0)


@pytest.fixture
def timers() -> FakeTimers:
	return FakeTimers()


@pytest.fixture
def client(timers: FakeTimers) -> QueryClient:
	return QueryClient(
		notify_manager=NotifyManager(),
		focus_manager=FocusManager(),
		online_manager=OnlineManager(),
		timeout_manager=TimeoutManager(timers),
	)
