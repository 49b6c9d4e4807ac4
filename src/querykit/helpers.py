import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar, cast

T = TypeVar("T")
TListener = TypeVar("TListener", bound=Callable[..., Any])


def noop(*_args: Any, **_kwargs: Any) -> None:
	return None


async def maybe_await(value: T | Awaitable[T]) -> T:
	if inspect.isawaitable(value):
		return await cast(Awaitable[T], value)
	return cast(T, value)


def _positional_capacity(fn: Callable[..., Any]) -> int | None:
	try:
		sig = inspect.signature(fn)
	except (TypeError, ValueError):
		return None
	count = 0
	for param in sig.parameters.values():
		if param.kind == inspect.Parameter.VAR_POSITIONAL:
			return None
		if param.kind in (
			inspect.Parameter.POSITIONAL_ONLY,
			inspect.Parameter.POSITIONAL_OR_KEYWORD,
		):
			count += 1
	return count


def call_flexible(fn: Callable[..., T], *args: Any) -> T:
	"""
	Call `fn` with as many of the positional `args` as it accepts, so
	callbacks can ignore trailing arguments they don't care about.
	"""
	capacity = _positional_capacity(fn)
	if capacity is None:
		return fn(*args)
	return fn(*args[:capacity])


def consume_exception(future: "asyncio.Future[Any]") -> None:
	"""Done callback that marks a future's exception as retrieved."""
	if not future.cancelled():
		future.exception()


class Subscribable(Generic[TListener]):
	"""Minimal listener set with subscribe/unsubscribe hooks for subclasses."""

	listeners: list[TListener]

	def __init__(self) -> None:
		self.listeners = []

	def subscribe(self, listener: TListener) -> Callable[[], None]:
		self.listeners.append(listener)
		self.on_subscribe()

		def unsubscribe() -> None:
			if listener in self.listeners:
				self.listeners.remove(listener)
				self.on_unsubscribe()

		return unsubscribe

	def has_listeners(self) -> bool:
		return len(self.listeners) > 0

	def on_subscribe(self) -> None:
		pass

	def on_unsubscribe(self) -> None:
		pass
