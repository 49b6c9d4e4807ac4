"""Notification batching.

Listener calls raised while a batch is open are queued and flushed once, on
the next loop iteration, after the outermost batch closes. Nested batches are
tracked with a transaction counter.
"""

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, ParamSpec

from querykit.scheduling import call_soon

P = ParamSpec("P")

logger = logging.getLogger(__name__)

NotifyCallback = Callable[[], None]
NotifyFunction = Callable[[NotifyCallback], None]
BatchNotifyFunction = Callable[[Callable[[], None]], None]
ScheduleFunction = Callable[[Callable[[], None]], Any]


def _default_notify(callback: NotifyCallback) -> None:
	callback()


def _default_scheduler(callback: Callable[[], None]) -> None:
	call_soon(callback)


class NotifyManager:
	_queue: list[NotifyCallback]
	_transactions: int
	_notify_fn: NotifyFunction
	_batch_notify_fn: BatchNotifyFunction
	_schedule_fn: ScheduleFunction

	def __init__(self, scheduler: ScheduleFunction | None = None) -> None:
		self._queue = []
		self._transactions = 0
		self._notify_fn = _default_notify
		self._batch_notify_fn = _default_notify
		self._schedule_fn = scheduler or _default_scheduler

	@property
	def in_batch(self) -> bool:
		return self._transactions > 0

	@contextmanager
	def batch(self) -> Iterator[None]:
		"""
		Usage:
		    with notify_manager.batch():
		        query_a.invalidate()
		        query_b.invalidate()
		    # listeners of both run once, after the block
		"""
		self._transactions += 1
		try:
			yield
		finally:
			self._transactions -= 1
			if self._transactions == 0:
				self.flush()

	def schedule(self, callback: NotifyCallback) -> None:
		if self._transactions:
			self._queue.append(callback)
		else:
			self._schedule_fn(lambda: self._run(callback))

	def batch_calls(self, callback: Callable[P, Any]) -> Callable[P, None]:
		"""Wrap `callback` so every call to it goes through the batch queue."""

		def wrapper(*args: P.args, **kwargs: P.kwargs) -> None:
			self.schedule(lambda: callback(*args, **kwargs))

		return wrapper

	def flush(self) -> None:
		queue = self._queue
		self._queue = []
		if not queue:
			return

		def _flush_queue() -> None:
			def _run_all() -> None:
				for callback in queue:
					self._run(callback)

			self._batch_notify_fn(_run_all)

		self._schedule_fn(_flush_queue)

	def _run(self, callback: NotifyCallback) -> None:
		try:
			self._notify_fn(callback)
		except Exception:
			logger.exception("Unhandled exception in notification listener")

	def set_notify_function(self, fn: NotifyFunction) -> None:
		"""Wrap every individual listener call, e.g. to run it inside a test harness."""
		self._notify_fn = fn

	def set_batch_notify_function(self, fn: BatchNotifyFunction) -> None:
		"""Wrap each flushed group of listener calls."""
		self._batch_notify_fn = fn

	def set_scheduler(self, fn: ScheduleFunction) -> None:
		"""Replace how flushes are deferred. Pass `lambda cb: cb()` to flush inline."""
		self._schedule_fn = fn


notify_manager = NotifyManager()
