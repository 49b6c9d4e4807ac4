import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol, override

from anyio import from_thread

logger = logging.getLogger(__name__)


class TimeoutProvider(Protocol):
	"""Timer source used for every delay in the engine. Swap it to virtualize time."""

	def set_timeout(self, callback: Callable[[], None], delay: float) -> Any: ...
	def clear_timeout(self, handle: Any) -> None: ...
	def set_interval(self, callback: Callable[[], None], interval: float) -> Any: ...
	def clear_interval(self, handle: Any) -> None: ...
	def now(self) -> float: ...


def _get_loop() -> asyncio.AbstractEventLoop:
	try:
		return asyncio.get_running_loop()
	except RuntimeError:
		try:
			return asyncio.get_event_loop()
		except RuntimeError as exc:
			raise RuntimeError("Timers require an event loop") from exc


def _report(loop: asyncio.AbstractEventLoop, message: str, exc: Exception, fn: Any):
	loop.call_exception_handler(
		{
			"message": message,
			"exception": exc,
			"context": {"callback": fn},
		}
	)


class RepeatHandle:
	task: asyncio.Task[None] | None
	cancelled: bool

	def __init__(self) -> None:
		self.task = None
		self.cancelled = False

	def cancel(self):
		if self.cancelled:
			return
		self.cancelled = True
		if self.task is not None and not self.task.done():
			self.task.cancel()


class LoopTimeoutProvider:
	"""Default provider backed by the running asyncio loop and wall-clock time."""

	def set_timeout(self, callback: Callable[[], None], delay: float) -> asyncio.TimerHandle:
		loop = _get_loop()

		def _run():
			try:
				callback()
			except Exception as exc:
				_report(loop, "Unhandled exception in timeout callback", exc, callback)

		return loop.call_later(max(delay, 0.0), _run)

	def clear_timeout(self, handle: Any) -> None:
		if handle is not None:
			handle.cancel()

	def set_interval(self, callback: Callable[[], None], interval: float) -> RepeatHandle:
		loop = _get_loop()
		handle = RepeatHandle()

		async def _runner():
			try:
				while not handle.cancelled:
					# The next interval starts counting after the previous run
					await asyncio.sleep(interval)
					if handle.cancelled:
						break
					try:
						callback()
					except Exception as exc:
						_report(loop, "Unhandled exception in interval callback", exc, callback)
			except asyncio.CancelledError:
				pass

		handle.task = loop.create_task(_runner())
		return handle

	def clear_interval(self, handle: Any) -> None:
		if handle is not None:
			handle.cancel()

	def now(self) -> float:
		return time.time()


class TimeoutManager:
	"""
	Indirection over the active TimeoutProvider. The provider is replaced
	wholesale with `set_timeout_provider`, never per call.
	"""

	_provider: TimeoutProvider
	_provider_called: bool

	def __init__(self, provider: TimeoutProvider | None = None) -> None:
		self._provider = provider or LoopTimeoutProvider()
		self._provider_called = False

	@property
	def provider(self) -> TimeoutProvider:
		return self._provider

	def set_timeout_provider(self, provider: TimeoutProvider) -> None:
		if self._provider_called and provider is not self._provider:
			logger.warning(
				"Switching timeout provider after timers were scheduled on the previous provider %r",
				self._provider,
			)
		self._provider = provider
		self._provider_called = False

	def set_timeout(self, callback: Callable[[], None], delay: float) -> Any:
		self._provider_called = True
		return self._provider.set_timeout(callback, delay)

	def clear_timeout(self, handle: Any) -> None:
		self._provider.clear_timeout(handle)

	def set_interval(self, callback: Callable[[], None], interval: float) -> Any:
		self._provider_called = True
		return self._provider.set_interval(callback, interval)

	def clear_interval(self, handle: Any) -> None:
		self._provider.clear_interval(handle)

	def now(self) -> float:
		return self._provider.now()

	@override
	def __repr__(self) -> str:
		return f"TimeoutManager(provider={self._provider!r})"


timeout_manager = TimeoutManager()


def call_soon(callback: Callable[[], None]) -> bool:
	"""
	Run `callback` on the next loop iteration. Without a running loop it runs
	inline. Returns True if the callback was deferred.
	"""
	try:
		loop = asyncio.get_running_loop()
	except RuntimeError:
		callback()
		return False
	loop.call_soon(callback)
	return True


def has_running_loop() -> bool:
	try:
		asyncio.get_running_loop()
	except RuntimeError:
		return False
	return True


def schedule_on_loop(
	callback: Callable[[], None], loop: asyncio.AbstractEventLoop | None = None
) -> None:
	"""
	Run a callback on the engine's event loop from any thread. On the loop
	thread it runs inline; from other threads it is marshalled with
	`call_soon_threadsafe`, or through anyio when called from an anyio worker.
	"""
	try:
		running = asyncio.get_running_loop()
	except RuntimeError:
		running = None

	if running is not None and (loop is None or running is loop):
		callback()
		return

	if loop is not None and not loop.is_closed():
		loop.call_soon_threadsafe(callback)
		return

	try:
		from_thread.run_sync(callback)
	except RuntimeError:
		# No loop anywhere: plain synchronous usage
		callback()
