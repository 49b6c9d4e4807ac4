"""Focus and connectivity signals.

Both managers attach to their environment probe lazily, only while at least
one listener is subscribed. A probe is a `setup(callback)` function that
returns an optional cleanup callable; the callback it receives may be invoked
from any thread and is marshalled onto the event loop.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from querykit.helpers import Subscribable
from querykit.scheduling import schedule_on_loop

logger = logging.getLogger(__name__)

FocusListener = Callable[[bool], None]
OnlineListener = Callable[[bool], None]
SetupFn = Callable[[Callable[..., None]], Callable[[], None] | None]


def _current_loop() -> asyncio.AbstractEventLoop | None:
	try:
		return asyncio.get_running_loop()
	except RuntimeError:
		return None


def _no_probe(_callback: Callable[..., None]) -> None:
	return None


class _EnvironmentSignal(Subscribable[Callable[[bool], None]], ABC):
	_setup: SetupFn
	_cleanup: Callable[[], None] | None
	_loop: asyncio.AbstractEventLoop | None

	def __init__(self) -> None:
		super().__init__()
		self._setup = _no_probe
		self._cleanup = None
		self._loop = None

	def on_subscribe(self) -> None:
		if self._cleanup is None:
			self.set_event_listener(self._setup)

	def on_unsubscribe(self) -> None:
		if not self.has_listeners() and self._cleanup is not None:
			self._cleanup()
			self._cleanup = None

	def set_event_listener(self, setup: SetupFn) -> None:
		self._setup = setup
		if self._cleanup is not None:
			self._cleanup()
		self._loop = _current_loop()
		loop = self._loop

		def callback(*args: object) -> None:
			value = args[0] if args else None
			schedule_on_loop(lambda: self._on_probe(value), loop)

		self._cleanup = setup(callback)

	@abstractmethod
	def _on_probe(self, value: object) -> None: ...

	def _broadcast(self, value: bool) -> None:
		for listener in list(self.listeners):
			listener(value)


class FocusManager(_EnvironmentSignal):
	"""
	Tracks whether the application is focused. Without an explicit value it
	reports focused, since there is no visibility probe outside a browser.
	"""

	_focused: bool | None

	def __init__(self) -> None:
		super().__init__()
		self._focused = None

	def _on_probe(self, value: object) -> None:
		if isinstance(value, bool):
			self.set_focused(value)
		else:
			self.on_focus()

	def set_focused(self, focused: bool | None) -> None:
		if self._focused != focused:
			self._focused = focused
			self.on_focus()

	def on_focus(self) -> None:
		is_focused = self.is_focused()
		logger.debug("focus changed: focused=%s", is_focused)
		self._broadcast(is_focused)

	def is_focused(self) -> bool:
		if self._focused is None:
			return True
		return self._focused


class OnlineManager(_EnvironmentSignal):
	_online: bool

	def __init__(self) -> None:
		super().__init__()
		self._online = True

	def _on_probe(self, value: object) -> None:
		if isinstance(value, bool):
			self.set_online(value)
		else:
			self.on_online()

	def set_online(self, online: bool) -> None:
		if self._online != online:
			self._online = online
			self.on_online()

	def on_online(self) -> None:
		logger.debug("connectivity changed: online=%s", self._online)
		self._broadcast(self._online)

	def is_online(self) -> bool:
		return self._online


focus_manager = FocusManager()
online_manager = OnlineManager()
