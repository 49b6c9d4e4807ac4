import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Generic, Literal, Protocol, TypeVar, cast, override

from querykit.errors import CancelledError, MissingQueryFnError, UndefinedDataError
from querykit.gc import GCManager, Removable
from querykit.helpers import call_flexible, consume_exception
from querykit.keys import replace_data
from querykit.retryer import CancellationSignal, Retryer, can_fetch
from querykit.types import (
	FetchDirection,
	FetchMeta,
	FetchOptions,
	FetchStatus,
	QueryKey,
	QueryOptions,
	QueryStatus,
)

if TYPE_CHECKING:
	from querykit.client import QueryClient
	from querykit.environment import OnlineManager
	from querykit.query_cache import QueryCache
	from querykit.query_observer import QueryObserver

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QueryState(Generic[T]):
	data: T | None = None
	data_update_count: int = 0
	data_updated_at: float = 0.0
	error: BaseException | None = None
	error_update_count: int = 0
	error_updated_at: float = 0.0
	fetch_failure_count: int = 0
	fetch_failure_reason: BaseException | None = None
	fetch_meta: FetchMeta | None = None
	is_invalidated: bool = False
	status: QueryStatus = "pending"
	fetch_status: FetchStatus = "idle"


# Reducer actions


@dataclass(frozen=True, slots=True)
class FailedAction:
	failure_count: int
	error: BaseException
	type: Literal["failed"] = "failed"


@dataclass(frozen=True, slots=True)
class PauseAction:
	type: Literal["pause"] = "pause"


@dataclass(frozen=True, slots=True)
class ContinueAction:
	type: Literal["continue"] = "continue"


@dataclass(frozen=True, slots=True)
class FetchAction:
	meta: FetchMeta | None = None
	type: Literal["fetch"] = "fetch"


@dataclass(frozen=True, slots=True)
class SuccessAction:
	data: Any
	data_updated_at: float | None = None
	manual: bool = False
	type: Literal["success"] = "success"


@dataclass(frozen=True, slots=True)
class ErrorAction:
	error: BaseException
	type: Literal["error"] = "error"


@dataclass(frozen=True, slots=True)
class InvalidateAction:
	type: Literal["invalidate"] = "invalidate"


@dataclass(frozen=True, slots=True)
class SetStateAction:
	state: QueryState[Any]
	type: Literal["setState"] = "setState"


QueryAction = (
	FailedAction
	| PauseAction
	| ContinueAction
	| FetchAction
	| SuccessAction
	| ErrorAction
	| InvalidateAction
	| SetStateAction
)


def fetch_state(
	data: Any, options: QueryOptions, online: "OnlineManager | None" = None
) -> dict[str, Any]:
	"""Fields applied to a state when a fetch starts."""
	changes: dict[str, Any] = {
		"fetch_failure_count": 0,
		"fetch_failure_reason": None,
		"fetch_status": "fetching" if can_fetch(options.get("network_mode"), online) else "paused",
	}
	if data is None:
		changes["error"] = None
		changes["status"] = "pending"
	return changes


def default_query_state(options: QueryOptions, now: float) -> QueryState[Any]:
	initial_data = options.get("initial_data")
	data = initial_data() if callable(initial_data) else initial_data
	has_data = data is not None
	updated_at: float | None = 0.0
	if has_data:
		raw = options.get("initial_data_updated_at")
		updated_at = raw() if callable(raw) else raw
	return QueryState(
		data=data,
		data_updated_at=(now if updated_at is None else updated_at) if has_data else 0.0,
		status="success" if has_data else "pending",
	)


def reduce_query_state(
	state: QueryState[T],
	action: QueryAction,
	*,
	options: QueryOptions,
	now: float,
	online: "OnlineManager | None" = None,
) -> QueryState[T]:
	"""Compute the next state snapshot for `action`. Never mutates `state`."""
	if isinstance(action, FailedAction):
		return replace(
			state, fetch_failure_count=action.failure_count, fetch_failure_reason=action.error
		)
	if isinstance(action, PauseAction):
		return replace(state, fetch_status="paused")
	if isinstance(action, ContinueAction):
		return replace(state, fetch_status="fetching")
	if isinstance(action, FetchAction):
		return replace(state, **fetch_state(state.data, options, online), fetch_meta=action.meta)
	if isinstance(action, SuccessAction):
		changes: dict[str, Any] = {
			"data": action.data,
			"data_update_count": state.data_update_count + 1,
			"data_updated_at": now if action.data_updated_at is None else action.data_updated_at,
			"error": None,
			"is_invalidated": False,
			"status": "success",
		}
		if not action.manual:
			changes.update(fetch_status="idle", fetch_failure_count=0, fetch_failure_reason=None)
		return replace(state, **changes)
	if isinstance(action, ErrorAction):
		return replace(
			state,
			error=action.error,
			error_update_count=state.error_update_count + 1,
			error_updated_at=now,
			fetch_failure_count=state.fetch_failure_count + 1,
			fetch_failure_reason=action.error,
			fetch_status="idle",
			status="error",
		)
	if isinstance(action, InvalidateAction):
		return replace(state, is_invalidated=True)
	if isinstance(action, SetStateAction):
		return cast(QueryState[T], action.state)
	raise TypeError(f"Unknown query action: {action!r}")


# Option resolution shared by queries and observers


def resolve_stale_time(stale_time: Any, query: "Query[Any]") -> float | Literal["static"]:
	if callable(stale_time):
		stale_time = stale_time(query)
	return 0.0 if stale_time is None else stale_time


def resolve_enabled(enabled: Any, query: "Query[Any]") -> bool:
	if callable(enabled):
		return bool(enabled(query))
	return True if enabled is None else enabled


def time_until_stale(updated_at: float, stale_time: float, now: float) -> float:
	return max(updated_at + (stale_time or 0.0) - now, 0.0)


class QueryFunctionContext:
	"""Argument passed to query functions."""

	__slots__ = ("client", "query_key", "meta", "page_param", "direction", "_signal_getter")

	client: "QueryClient"
	query_key: QueryKey
	meta: dict[str, Any] | None
	page_param: Any
	direction: FetchDirection | None

	def __init__(
		self,
		client: "QueryClient",
		query_key: QueryKey,
		meta: dict[str, Any] | None,
		signal_getter: Callable[[], CancellationSignal],
		page_param: Any = None,
		direction: FetchDirection | None = None,
	) -> None:
		self.client = client
		self.query_key = query_key
		self.meta = meta
		self.page_param = page_param
		self.direction = direction
		self._signal_getter = signal_getter

	@property
	def signal(self) -> CancellationSignal:
		return self._signal_getter()

	@override
	def __repr__(self) -> str:
		return f"QueryFunctionContext(query_key={self.query_key!r}, page_param={self.page_param!r})"


class FetchContext(Generic[T]):
	"""
	Everything a query behavior needs to wrap a fetch. Behaviors replace
	`fetch_fn` to change what the retryer runs.
	"""

	fetch_fn: Callable[[], T | Awaitable[T]]
	fetch_options: FetchOptions
	options: QueryOptions
	query_key: QueryKey
	client: "QueryClient"
	state: QueryState[T]
	_signal_getter: Callable[[], CancellationSignal]

	def __init__(
		self,
		*,
		fetch_fn: Callable[[], T | Awaitable[T]],
		fetch_options: FetchOptions,
		options: QueryOptions,
		query_key: QueryKey,
		client: "QueryClient",
		state: QueryState[T],
		signal_getter: Callable[[], CancellationSignal],
	) -> None:
		self.fetch_fn = fetch_fn
		self.fetch_options = fetch_options
		self.options = options
		self.query_key = query_key
		self.client = client
		self.state = state
		self._signal_getter = signal_getter

	@property
	def signal(self) -> CancellationSignal:
		return self._signal_getter()

	def query_fn_context(
		self, page_param: Any = None, direction: FetchDirection | None = None
	) -> QueryFunctionContext:
		return QueryFunctionContext(
			self.client,
			self.query_key,
			self.options.get("meta"),
			self._signal_getter,
			page_param=page_param,
			direction=direction,
		)


class QueryBehavior(Protocol):
	def on_fetch(self, context: FetchContext[Any], query: "Query[Any]") -> None: ...


def ensure_query_fn(
	options: QueryOptions, fetch_options: FetchOptions | None = None
) -> Callable[..., Any]:
	query_fn = options.get("query_fn")
	if query_fn is None:
		initial = (fetch_options or {}).get("initial_future")
		if initial is not None:
			return lambda *_: initial
		query_hash = options.get("query_hash", "")

		def missing(*_: Any) -> Any:
			raise MissingQueryFnError(query_hash)

		return missing
	return query_fn


class Query(Removable, Generic[T]):
	"""
	A single cache entry. Holds the state for one query key, runs fetches
	through a `Retryer` and tracks the observers attached to it.
	"""

	query_key: QueryKey
	query_hash: str
	options: QueryOptions
	state: QueryState[T]
	observers: "list[QueryObserver[Any, Any]]"

	_initial_state: QueryState[T]
	_revert_state: QueryState[T] | None
	_retryer: Retryer[T] | None
	_fetch_task: "asyncio.Future[T] | None"
	_abort_signal_consumed: bool

	def __init__(
		self,
		*,
		client: "QueryClient",
		cache: "QueryCache",
		query_key: QueryKey,
		query_hash: str,
		options: QueryOptions,
		state: QueryState[T] | None = None,
		default_options: QueryOptions | None = None,
	) -> None:
		super().__init__()
		self._client = client
		self._cache = cache
		self._gc_manager = client.get_gc_manager()
		self._default_options = default_options or {}
		self._retryer = None
		self._fetch_task = None
		self._revert_state = None
		self._abort_signal_consumed = False
		self.observers = []
		self.query_key = query_key
		self.query_hash = query_hash
		self._apply_options(options)
		self._initial_state = default_query_state(self.options, self._now())
		self.state = state or self._initial_state
		self.mark_for_gc()

	@override
	def __repr__(self) -> str:
		return f"Query({self.query_hash}, status={self.state.status}, fetch_status={self.state.fetch_status})"

	@property
	def meta(self) -> dict[str, Any] | None:
		return self.options.get("meta")

	@property
	def future(self) -> "asyncio.Future[T] | None":
		"""The outcome of the current or most recent fetch."""
		return self._fetch_task

	@override
	def get_gc_manager(self) -> GCManager:
		return self._gc_manager

	def _now(self) -> float:
		return self._client.timeout_manager.now()

	def _apply_options(self, options: QueryOptions) -> None:
		self.options = {**self._default_options, **options}
		self.update_gc_time(self.options.get("gc_time"))

	def set_options(self, options: QueryOptions) -> None:
		self._apply_options(options)
		if self.state.data is None:
			default_state = default_query_state(self.options, self._now())
			if default_state.data is not None:
				self.set_data(
					default_state.data, updated_at=default_state.data_updated_at, manual=True
				)
				self._initial_state = default_state

	@override
	def optional_remove(self) -> bool:
		if self.is_safe_to_remove():
			self._cache.remove(self)
			return True
		self.clear_gc_mark()
		return False

	def is_safe_to_remove(self) -> bool:
		return not self.observers and self.state.fetch_status == "idle"

	def set_data(self, new_data: T, *, updated_at: float | None = None, manual: bool = False) -> T:
		data = replace_data(self.state.data, new_data, self.options)
		self._dispatch(SuccessAction(data=data, data_updated_at=updated_at, manual=manual))
		return data

	def set_state(self, state: QueryState[T]) -> None:
		self._dispatch(SetStateAction(state=state))

	def cancel(self, revert: bool = False, silent: bool = False) -> "asyncio.Future[None]":
		"""Cancel the in-flight fetch. The returned future settles once the retryer has."""
		retryer = self._retryer
		if retryer is not None:
			retryer.cancel(revert=revert, silent=silent)
		return _settled(retryer.future if retryer is not None else None)

	@override
	def destroy(self) -> None:
		super().destroy()
		if self._retryer is not None:
			self._retryer.cancel(silent=True)

	def reset(self) -> None:
		self.destroy()
		self.set_state(self._initial_state)

	def is_active(self) -> bool:
		return any(
			resolve_enabled(observer.options.get("enabled"), self) is not False
			for observer in self.observers
		)

	def is_disabled(self) -> bool:
		if self.observers:
			return not self.is_active()
		return self.state.data_update_count + self.state.error_update_count == 0

	def is_static(self) -> bool:
		if self.observers:
			return any(
				resolve_stale_time(observer.options.get("stale_time"), self) == "static"
				for observer in self.observers
			)
		return False

	def is_stale(self) -> bool:
		if self.observers:
			return any(observer.get_current_result().is_stale for observer in self.observers)
		return self.state.data is None or self.state.is_invalidated

	def is_stale_by_time(self, stale_time: float | Literal["static"] = 0.0) -> bool:
		if self.state.data is None:
			return True
		if stale_time == "static":
			return False
		if self.state.is_invalidated:
			return True
		return not time_until_stale(self.state.data_updated_at, stale_time, self._now())

	def on_focus(self) -> None:
		observer = next((x for x in self.observers if x.should_fetch_on_window_focus()), None)
		if observer is not None:
			observer.refetch(cancel_refetch=False)
		if self._retryer is not None:
			self._retryer.continue_()

	def on_online(self) -> None:
		observer = next((x for x in self.observers if x.should_fetch_on_reconnect()), None)
		if observer is not None:
			observer.refetch(cancel_refetch=False)
		if self._retryer is not None:
			self._retryer.continue_()

	def add_observer(self, observer: "QueryObserver[Any, Any]") -> None:
		if observer in self.observers:
			return
		self.observers.append(observer)
		self.clear_gc_mark()
		self._cache.notify_event("observerAdded", self, observer=observer)

	def remove_observer(self, observer: "QueryObserver[Any, Any]") -> None:
		if observer not in self.observers:
			return
		self.observers = [x for x in self.observers if x is not observer]
		if not self.observers:
			if self._retryer is not None:
				if self._abort_signal_consumed:
					self._retryer.cancel(revert=True)
				else:
					self._retryer.cancel_retry()
			if self.is_safe_to_remove():
				self.mark_for_gc()
		self._cache.notify_event("observerRemoved", self, observer=observer)

	def get_observers_count(self) -> int:
		return len(self.observers)

	def invalidate(self) -> None:
		if not self.state.is_invalidated:
			self._dispatch(InvalidateAction())

	def fetch(
		self, options: QueryOptions | None = None, fetch_options: FetchOptions | None = None
	) -> "asyncio.Future[T]":
		"""
		Start a fetch, or join the one in flight. Must be called with a running
		event loop. The state switches to fetching synchronously; the returned
		future resolves to the fetched data.
		"""
		fetch_options = fetch_options or {}
		retryer = self._retryer
		if (
			self.state.fetch_status != "idle"
			and retryer is not None
			and retryer.status() != "rejected"
		):
			if self.state.data is not None and fetch_options.get("cancel_refetch"):
				self.cancel(silent=True)
			elif self._fetch_task is not None:
				retryer.continue_retry()
				return self._fetch_task

		if options:
			self.set_options(options)

		if self.options.get("query_fn") is None:
			observer = next((x for x in self.observers if x.options.get("query_fn")), None)
			if observer is not None:
				self.set_options(observer.options)

		signal = CancellationSignal()

		def consume_signal() -> CancellationSignal:
			self._abort_signal_consumed = True
			return signal

		def fetch_fn() -> Any:
			query_fn = ensure_query_fn(self.options, fetch_options)
			context = QueryFunctionContext(
				self._client, self.query_key, self.meta, consume_signal
			)
			self._abort_signal_consumed = False
			return call_flexible(query_fn, context)

		context: FetchContext[T] = FetchContext(
			fetch_fn=fetch_fn,
			fetch_options=fetch_options,
			options=self.options,
			query_key=self.query_key,
			client=self._client,
			state=self.state,
			signal_getter=consume_signal,
		)

		behavior: QueryBehavior | None = self.options.get("behavior")
		if behavior is not None:
			behavior.on_fetch(context, self)

		self._revert_state = self.state
		meta = context.fetch_options.get("meta")
		if self.state.fetch_status == "idle" or self.state.fetch_meta != meta:
			self._dispatch(FetchAction(meta=cast(FetchMeta | None, meta)))

		def on_cancel(error: CancelledError) -> None:
			if error.revert and self._revert_state is not None:
				self.set_state(replace(self._revert_state, fetch_status="idle"))
			signal.abort(error)

		new_retryer: Retryer[T] = Retryer(
			context.fetch_fn,
			initial_future=fetch_options.get("initial_future"),
			on_cancel=on_cancel,
			on_fail=lambda count, error: self._dispatch(FailedAction(count, error)),
			on_pause=lambda: self._dispatch(PauseAction()),
			on_continue=lambda: self._dispatch(ContinueAction()),
			retry=context.options.get("retry"),
			retry_delay=context.options.get("retry_delay"),
			network_mode=context.options.get("network_mode"),
			focus=self._client.focus_manager,
			online=self._client.online_manager,
			timeouts=self._client.timeout_manager,
		)
		self._retryer = new_retryer
		new_retryer.start()

		task = asyncio.get_running_loop().create_task(self._run(new_retryer))
		task.add_done_callback(consume_exception)
		self._fetch_task = task
		return task

	async def _run(self, retryer: Retryer[T]) -> T:
		try:
			data = await retryer.future
			if data is None:
				logger.error(
					"Query data cannot be None. Return a value other than None from the query "
					"function. Affected query key: %s",
					self.query_hash,
				)
				raise UndefinedDataError(self.query_hash)
			self.set_data(data)
			config = self._cache.config
			if config.on_success is not None:
				config.on_success(data, self)
			if config.on_settled is not None:
				config.on_settled(data, self.state.error, self)
			return data
		except CancelledError as error:
			if error.silent:
				current = self._fetch_task
				if self._retryer is not retryer and current is not None:
					return await current
				raise
			if error.revert:
				if self.state.data is None:
					raise
				return self.state.data
			self._on_fetch_error(error)
			raise
		except Exception as error:
			self._on_fetch_error(error)
			raise
		finally:
			if self.is_safe_to_remove():
				self.mark_for_gc()

	def _on_fetch_error(self, error: BaseException) -> None:
		self._dispatch(ErrorAction(error=error))
		config = self._cache.config
		if config.on_error is not None:
			config.on_error(error, self)
		if config.on_settled is not None:
			config.on_settled(self.state.data, error, self)

	def _dispatch(self, action: QueryAction) -> None:
		state = reduce_query_state(
			self.state,
			action,
			options=self.options,
			now=self._now(),
			online=self._client.online_manager,
		)
		if isinstance(action, SuccessAction):
			self._revert_state = state if action.manual else None
		self.state = state

		with self._cache.notify_manager.batch():
			for observer in list(self.observers):
				observer.on_query_update()
			self._cache.notify_event("updated", self, action=action)


def _settled(future: "asyncio.Future[Any] | None") -> "asyncio.Future[None]":
	"""A future that resolves once `future` settles, ignoring its outcome."""
	loop = asyncio.get_running_loop()
	result: asyncio.Future[None] = loop.create_future()
	if future is None or future.done():
		result.set_result(None)
		return result

	def done(_: "asyncio.Future[Any]") -> None:
		if not result.done():
			result.set_result(None)

	future.add_done_callback(done)
	return result


__all__ = [
	"FetchContext",
	"Query",
	"QueryAction",
	"QueryFunctionContext",
	"QueryState",
	"default_query_state",
	"fetch_state",
	"reduce_query_state",
]
