"""Retry executor.

A `Retryer` runs a single operation to exactly one outcome. Failures go
through the retry policy and a delay, and the run is paused (without spending
an attempt) while focus, connectivity or the owner's `can_run` forbid
progress. Cancellation is cooperative: the outcome is rejected immediately
with a `CancelledError`, and the owner aborts its `CancellationSignal`.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Generic, Literal, TypeVar

from querykit.environment import FocusManager, OnlineManager, focus_manager, online_manager
from querykit.errors import USAGE_ERRORS, CancelledError
from querykit.helpers import consume_exception, maybe_await
from querykit.scheduling import TimeoutManager, timeout_manager
from querykit.types import NetworkMode, RetryDelayValue, RetryValue

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_RETRY_COUNT = 3
MAX_RETRY_DELAY = 30.0

RetryerStatus = Literal["pending", "fulfilled", "rejected"]


def default_retry_delay(failure_count: int, _error: BaseException | None = None) -> float:
	return min(1.0 * 2**failure_count, MAX_RETRY_DELAY)


def can_fetch(network_mode: NetworkMode | None, online: OnlineManager | None = None) -> bool:
	if (network_mode or "online") == "online":
		return (online or online_manager).is_online()
	return True


def should_retry(retry: RetryValue | None, failure_count: int, error: BaseException) -> bool:
	if retry is None:
		retry = DEFAULT_RETRY_COUNT
	# bool is checked first since it is also an int
	if isinstance(retry, bool):
		return retry
	if isinstance(retry, int):
		return failure_count < retry
	return bool(retry(failure_count, error))


def resolve_retry_delay(
	retry_delay: RetryDelayValue | None, failure_count: int, error: BaseException
) -> float:
	if retry_delay is None:
		return default_retry_delay(failure_count, error)
	if callable(retry_delay):
		return retry_delay(failure_count, error)
	return retry_delay


class CancellationSignal:
	"""
	Cooperative cancellation token handed to fetch and mutate functions.
	Long-running functions can poll `aborted`, call `raise_if_aborted()`,
	register a listener or `await signal.wait()`.
	"""

	aborted: bool
	reason: BaseException | None
	_listeners: list[Callable[[], None]]
	_event: asyncio.Event | None

	def __init__(self) -> None:
		self.aborted = False
		self.reason = None
		self._listeners = []
		self._event = None

	def abort(self, reason: BaseException | None = None) -> None:
		if self.aborted:
			return
		self.aborted = True
		self.reason = reason or CancelledError()
		if self._event is not None:
			self._event.set()
		listeners = self._listeners
		self._listeners = []
		for listener in listeners:
			try:
				listener()
			except Exception:
				logger.exception("Error in cancellation listener")

	def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
		if self.aborted:
			listener()
			return lambda: None
		self._listeners.append(listener)

		def remove() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return remove

	def raise_if_aborted(self) -> None:
		if self.aborted:
			raise self.reason or CancelledError()

	async def wait(self) -> None:
		if self.aborted:
			return
		if self._event is None:
			self._event = asyncio.Event()
		await self._event.wait()


class Retryer(Generic[T]):
	future: "asyncio.Future[T]"
	failure_count: int

	_fn: Callable[[], T | Awaitable[T]]
	_initial_future: Awaitable[T] | None
	_retry: RetryValue | None
	_retry_delay: RetryDelayValue | None
	_network_mode: NetworkMode | None
	_can_run: Callable[[], bool]
	_on_cancel: Callable[[CancelledError], None] | None
	_on_fail: Callable[[int, BaseException], None] | None
	_on_pause: Callable[[], None] | None
	_on_continue: Callable[[], None] | None
	_retry_cancelled: bool
	_continue_fn: Callable[[], None] | None
	_sleep_waiter: "asyncio.Future[None] | None"
	_task: "asyncio.Task[None] | None"

	def __init__(
		self,
		fn: Callable[[], T | Awaitable[T]],
		*,
		initial_future: Awaitable[T] | None = None,
		retry: RetryValue | None = None,
		retry_delay: RetryDelayValue | None = None,
		network_mode: NetworkMode | None = None,
		can_run: Callable[[], bool] | None = None,
		on_cancel: Callable[[CancelledError], None] | None = None,
		on_fail: Callable[[int, BaseException], None] | None = None,
		on_pause: Callable[[], None] | None = None,
		on_continue: Callable[[], None] | None = None,
		focus: FocusManager | None = None,
		online: OnlineManager | None = None,
		timeouts: TimeoutManager | None = None,
	) -> None:
		self._fn = fn
		self._initial_future = initial_future
		self._retry = retry
		self._retry_delay = retry_delay
		self._network_mode = network_mode
		self._can_run = can_run or (lambda: True)
		self._on_cancel = on_cancel
		self._on_fail = on_fail
		self._on_pause = on_pause
		self._on_continue = on_continue
		self._focus = focus or focus_manager
		self._online = online or online_manager
		self._timeouts = timeouts or timeout_manager

		self.failure_count = 0
		self._retry_cancelled = False
		self._continue_fn = None
		self._sleep_waiter = None
		self._task = None

		self.future = asyncio.get_running_loop().create_future()
		self.future.add_done_callback(consume_exception)

	def status(self) -> RetryerStatus:
		if not self.future.done():
			return "pending"
		if self.future.cancelled() or self.future.exception() is not None:
			return "rejected"
		return "fulfilled"

	def is_resolved(self) -> bool:
		return self.future.done()

	def can_continue(self) -> bool:
		return (
			self._focus.is_focused()
			and (self._network_mode == "always" or self._online.is_online())
			and self._can_run()
		)

	def can_start(self) -> bool:
		return can_fetch(self._network_mode, self._online) and self._can_run()

	def cancel(self, revert: bool = False, silent: bool = False) -> None:
		if self.is_resolved():
			return
		error = CancelledError(revert=revert, silent=silent)
		self._reject(error)
		if self._on_cancel is not None:
			self._on_cancel(error)

	def cancel_retry(self) -> None:
		self._retry_cancelled = True

	def continue_retry(self) -> None:
		self._retry_cancelled = False

	def continue_(self) -> "asyncio.Future[T]":
		"""Wake a paused run if it may proceed. Returns the outcome future."""
		if self._continue_fn is not None:
			self._continue_fn()
		return self.future

	def start(self) -> "asyncio.Future[T]":
		if self._task is None:
			self._task = asyncio.get_running_loop().create_task(self._execute())
		return self.future

	def _wake(self) -> None:
		if self._continue_fn is not None:
			self._continue_fn()
		waiter = self._sleep_waiter
		if waiter is not None and not waiter.done():
			waiter.set_result(None)

	def _resolve(self, value: T) -> None:
		if not self.is_resolved():
			self.future.set_result(value)
			self._wake()

	def _reject(self, error: BaseException) -> None:
		if not self.is_resolved():
			self.future.set_exception(error)
			self._wake()

	async def _pause(self) -> None:
		waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()

		def continue_fn() -> None:
			if (self.is_resolved() or self.can_continue()) and not waiter.done():
				waiter.set_result(None)

		self._continue_fn = continue_fn
		logger.debug("retryer paused")
		if self._on_pause is not None:
			self._on_pause()
		try:
			await waiter
		finally:
			if self._continue_fn is continue_fn:
				self._continue_fn = None
		if not self.is_resolved() and self._on_continue is not None:
			self._on_continue()

	async def _sleep(self, delay: float) -> None:
		waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()

		def wake() -> None:
			if not waiter.done():
				waiter.set_result(None)

		self._sleep_waiter = waiter
		handle = self._timeouts.set_timeout(wake, delay)
		try:
			await waiter
		finally:
			self._timeouts.clear_timeout(handle)
			self._sleep_waiter = None

	async def _execute(self) -> None:
		if not self.can_start():
			await self._pause()

		while not self.is_resolved():
			initial = self._initial_future if self.failure_count == 0 else None
			try:
				if initial is not None:
					value = await initial
				else:
					value = await maybe_await(self._fn())
			except asyncio.CancelledError:
				self._reject(CancelledError())
				raise
			except Exception as error:
				if self.is_resolved():
					return
				if isinstance(error, USAGE_ERRORS):
					self._reject(error)
					return

				delay = resolve_retry_delay(self._retry_delay, self.failure_count, error)
				if self._retry_cancelled or not should_retry(self._retry, self.failure_count, error):
					self._reject(error)
					return

				self.failure_count += 1
				if self._on_fail is not None:
					self._on_fail(self.failure_count, error)
				logger.debug(
					"retrying after failure %d in %.3fs: %r", self.failure_count, delay, error
				)

				await self._sleep(delay)
				if self.is_resolved():
					return
				if not self.can_continue():
					await self._pause()
				if self._retry_cancelled:
					self._reject(error)
					return
				continue

			self._resolve(value)
			return


__all__ = [
	"DEFAULT_RETRY_COUNT",
	"MAX_RETRY_DELAY",
	"CancellationSignal",
	"Retryer",
	"can_fetch",
	"default_retry_delay",
	"should_retry",
]
