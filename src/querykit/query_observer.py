"""Per-consumer views over a Query.

A `QueryObserver` derives an immutable `QueryObserverResult` from the bound
query's state and its own options, owns the stale and refetch-interval timers
for that consumer, and only notifies its listeners when a field the consumer
cares about changed.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, Literal, TypeVar, cast, override

from querykit.errors import InvalidEnabledError
from querykit.gc import is_valid_timeout
from querykit.helpers import Subscribable, call_flexible, consume_exception
from querykit.keys import is_same, replace_data, shallow_equal_objects
from querykit.query import (
	Query,
	QueryState,
	fetch_state,
	resolve_enabled,
	resolve_stale_time,
	time_until_stale,
)
from querykit.types import FetchOptions, FetchStatus, QueryOptions, QueryStatus

if TYPE_CHECKING:
	from querykit.client import QueryClient

TQueryFnData = TypeVar("TQueryFnData")
TData = TypeVar("TData")

logger = logging.getLogger(__name__)

# Extra delay so the stale timer fires strictly after the deadline
STALE_TIMER_EPSILON = 0.001


@dataclass(frozen=True, slots=True, kw_only=True)
class QueryObserverResult(Generic[TData]):
	status: QueryStatus
	fetch_status: FetchStatus
	data: TData | None
	data_updated_at: float
	error: BaseException | None
	error_updated_at: float
	error_update_count: int
	failure_count: int
	failure_reason: BaseException | None
	is_pending: bool
	is_success: bool
	is_error: bool
	is_initial_loading: bool
	is_loading: bool
	is_fetched: bool
	is_fetched_after_mount: bool
	is_fetching: bool
	is_refetching: bool
	is_loading_error: bool
	is_refetch_error: bool
	is_paused: bool
	is_placeholder_data: bool
	is_stale: bool
	is_enabled: bool
	refetch: Callable[..., "asyncio.Future[Any]"] = field(compare=False)


class TrackedResult(Generic[TData]):
	"""
	Read-through wrapper around a result that records which fields the
	consumer accessed. The observer uses the recorded set to decide whether a
	new result is worth a notification.
	"""

	__slots__ = ("_result", "_on_read")

	_result: QueryObserverResult[TData]
	_on_read: Callable[[str], None]

	def __init__(self, result: QueryObserverResult[TData], on_read: Callable[[str], None]):
		object.__setattr__(self, "_result", result)
		object.__setattr__(self, "_on_read", on_read)

	def __getattr__(self, name: str) -> Any:
		value = getattr(self._result, name)
		self._on_read(name)
		return value

	@override
	def __setattr__(self, name: str, value: Any) -> None:
		raise AttributeError("Observer results are read-only")

	@override
	def __repr__(self) -> str:
		return f"TrackedResult({self._result!r})"


def should_load_on_mount(query: Query[Any], options: QueryOptions) -> bool:
	return (
		resolve_enabled(options.get("enabled"), query) is not False
		and query.state.data is None
		and not (query.state.status == "error" and options.get("retry_on_mount") is False)
	)


def should_fetch_on_mount(query: Query[Any], options: QueryOptions) -> bool:
	return should_load_on_mount(query, options) or (
		query.state.data is not None
		and should_fetch_on(query, options, options.get("refetch_on_mount"))
	)


def should_fetch_on(query: Query[Any], options: QueryOptions, setting: Any) -> bool:
	if (
		resolve_enabled(options.get("enabled"), query) is not False
		and resolve_stale_time(options.get("stale_time"), query) != "static"
	):
		value = setting(query) if callable(setting) else setting
		return value == "always" or (value is not False and is_stale(query, options))
	return False


def should_fetch_optionally(
	query: Query[Any],
	prev_query: Query[Any] | None,
	options: QueryOptions,
	prev_options: QueryOptions,
) -> bool:
	return (
		query is not prev_query or resolve_enabled(prev_options.get("enabled"), query) is False
	) and is_stale(query, options)


def is_stale(query: Query[Any], options: QueryOptions) -> bool:
	return resolve_enabled(options.get("enabled"), query) is not False and query.is_stale_by_time(
		resolve_stale_time(options.get("stale_time"), query)
	)


def should_throw_error(throw_on_error: Any, error: BaseException, query: Query[Any]) -> bool:
	if callable(throw_on_error):
		return bool(throw_on_error(error, query))
	return bool(throw_on_error)


async def _ignore_errors(future: "asyncio.Future[Any]") -> Any:
	try:
		return await future
	except Exception:
		return None


class QueryObserver(Subscribable[Callable[[Any], None]], Generic[TQueryFnData, TData]):
	options: QueryOptions

	_client: "QueryClient"
	_current_query: Query[TQueryFnData]
	_current_query_initial_state: QueryState[TQueryFnData]
	_current_result: QueryObserverResult[TData] | None
	_current_result_state: QueryState[TQueryFnData] | None
	_current_result_options: QueryOptions | None
	_select_error: BaseException | None
	_select_fn: Callable[[Any], Any] | None
	_select_result: Any
	_last_query_with_defined_data: Query[TQueryFnData] | None
	_stale_timeout: Any
	_refetch_interval_handle: Any
	_current_refetch_interval: float | Literal[False] | None
	_tracked_props: set[str]

	def __init__(self, client: "QueryClient", options: QueryOptions) -> None:
		super().__init__()
		self._client = client
		self.options = options
		self._current_query = cast(Query[TQueryFnData], None)
		self._current_query_initial_state = cast(QueryState[TQueryFnData], None)
		self._current_result = None
		self._current_result_state = None
		self._current_result_options = None
		self._select_error = None
		self._select_fn = None
		self._select_result = None
		self._last_query_with_defined_data = None
		self._stale_timeout = None
		self._refetch_interval_handle = None
		self._current_refetch_interval = None
		self._tracked_props = set()
		# One bound method, so results compare equal across recomputations
		self.refetch = self.refetch
		self.set_options(options)

	@override
	def on_subscribe(self) -> None:
		if len(self.listeners) == 1:
			self._current_query.add_observer(self)
			if should_fetch_on_mount(self._current_query, self.options):
				self._execute_fetch()
			else:
				self.update_result()
			self._update_timers()

	@override
	def on_unsubscribe(self) -> None:
		if not self.has_listeners():
			self.destroy()

	def should_fetch_on_reconnect(self) -> bool:
		return should_fetch_on(
			self._current_query, self.options, self.options.get("refetch_on_reconnect")
		)

	def should_fetch_on_window_focus(self) -> bool:
		return should_fetch_on(
			self._current_query, self.options, self.options.get("refetch_on_window_focus")
		)

	def destroy(self) -> None:
		self.listeners = []
		self._clear_stale_timeout()
		self._clear_refetch_interval()
		self._current_query.remove_observer(self)

	def set_options(self, options: QueryOptions) -> None:
		prev_options = self.options
		prev_query: Query[TQueryFnData] | None = self._current_query

		self.options = self._client.default_query_options(options)
		enabled = self.options.get("enabled")
		if enabled is not None and not isinstance(enabled, bool) and not callable(enabled):
			raise InvalidEnabledError(enabled)

		self._update_query()
		self._current_query.set_options(self.options)

		if prev_options.get("_defaulted") and not shallow_equal_objects(self.options, prev_options):
			self._client.get_query_cache().notify_event(
				"observerOptionsUpdated", self._current_query, observer=self
			)

		mounted = self.has_listeners()
		if mounted and should_fetch_optionally(
			self._current_query, prev_query, self.options, prev_options
		):
			self._execute_fetch()

		self.update_result()

		query = self._current_query
		enabled_changed = resolve_enabled(self.options.get("enabled"), query) != resolve_enabled(
			prev_options.get("enabled"), query
		)
		if mounted and (
			query is not prev_query
			or enabled_changed
			or resolve_stale_time(self.options.get("stale_time"), query)
			!= resolve_stale_time(prev_options.get("stale_time"), query)
		):
			self._update_stale_timeout()

		next_interval = self._compute_refetch_interval()
		if mounted and (
			query is not prev_query
			or enabled_changed
			or next_interval != self._current_refetch_interval
		):
			self._update_refetch_interval(next_interval)

	def get_optimistic_result(self, options: QueryOptions) -> QueryObserverResult[TData]:
		"""
		Compute a result for `options` without waiting on a fetch. The query is
		built synchronously, so the first read never blocks.
		"""
		query = self._client.get_query_cache().build(self._client, options)
		result = self.create_result(query, options)
		if not shallow_equal_objects(self._current_result, result):
			self._current_result = result
			self._current_result_options = self.options
			self._current_result_state = self._current_query.state
		return result

	def get_current_result(self) -> QueryObserverResult[TData]:
		result = self._current_result
		if result is None:
			raise RuntimeError("QueryObserver has no result until its options are set")
		return result

	def get_result_or_raise(self) -> QueryObserverResult[TData]:
		"""Current result, re-raising its error if `throw_on_error` says so."""
		result = self.get_current_result()
		if (
			result.is_error
			and not result.is_fetching
			and result.error is not None
			and should_throw_error(
				self.options.get("throw_on_error"), result.error, self._current_query
			)
		):
			raise result.error
		return result

	def track_result(
		self,
		result: QueryObserverResult[TData],
		on_prop_tracked: Callable[[str], None] | None = None,
	) -> TrackedResult[TData]:
		def on_read(name: str) -> None:
			self.track_prop(name)
			if on_prop_tracked is not None:
				on_prop_tracked(name)

		return TrackedResult(result, on_read)

	def track_prop(self, name: str) -> None:
		self._tracked_props.add(name)

	def get_current_query(self) -> Query[TQueryFnData]:
		return self._current_query

	def refetch(self, **fetch_options: Any) -> "asyncio.Future[QueryObserverResult[TData]]":
		return self.fetch(cast(FetchOptions, fetch_options))

	def fetch(self, fetch_options: FetchOptions) -> "asyncio.Future[QueryObserverResult[TData]]":
		"""Fetch through the current query, replacing an in-flight fetch unless `cancel_refetch` is False."""
		future = self._execute_fetch(
			cast(
				FetchOptions,
				{**fetch_options, "cancel_refetch": fetch_options.get("cancel_refetch", True)},
			)
		)

		async def finish() -> QueryObserverResult[TData]:
			await future
			self.update_result()
			return self.get_current_result()

		task = asyncio.get_running_loop().create_task(finish())
		task.add_done_callback(consume_exception)
		return task

	async def fetch_optimistic(self, options: QueryOptions) -> QueryObserverResult[TData]:
		defaulted = self._client.default_query_options(options)
		query = self._client.get_query_cache().build(self._client, defaulted)
		await query.fetch()
		return self.create_result(query, defaulted)

	def _execute_fetch(self, fetch_options: FetchOptions | None = None) -> "asyncio.Future[Any]":
		self._update_query()
		future = self._current_query.fetch(self.options, fetch_options)
		if not (fetch_options or {}).get("throw_on_error"):
			future = asyncio.ensure_future(_ignore_errors(future))
		return future

	def _update_stale_timeout(self) -> None:
		self._clear_stale_timeout()
		stale_time = resolve_stale_time(self.options.get("stale_time"), self._current_query)
		result = self._current_result
		if result is None or result.is_stale or not is_valid_timeout(stale_time):
			return
		timeouts = self._client.timeout_manager
		time = time_until_stale(result.data_updated_at, cast(float, stale_time), timeouts.now())

		def on_stale() -> None:
			if self._current_result is not None and not self._current_result.is_stale:
				self.update_result()

		self._stale_timeout = timeouts.set_timeout(on_stale, time + STALE_TIMER_EPSILON)

	def _compute_refetch_interval(self) -> float | Literal[False]:
		interval = self.options.get("refetch_interval")
		if callable(interval):
			interval = interval(self._current_query)
		return False if interval is None else interval

	def _update_refetch_interval(self, next_interval: float | Literal[False]) -> None:
		self._clear_refetch_interval()
		self._current_refetch_interval = next_interval
		if (
			resolve_enabled(self.options.get("enabled"), self._current_query) is False
			or not is_valid_timeout(next_interval)
			or next_interval == 0
		):
			return

		def on_interval() -> None:
			if (
				self.options.get("refetch_interval_in_background")
				or self._client.focus_manager.is_focused()
			):
				self._execute_fetch()

		self._refetch_interval_handle = self._client.timeout_manager.set_interval(
			on_interval, cast(float, next_interval)
		)

	def _update_timers(self) -> None:
		self._update_stale_timeout()
		self._update_refetch_interval(self._compute_refetch_interval())

	def _clear_stale_timeout(self) -> None:
		if self._stale_timeout is not None:
			self._client.timeout_manager.clear_timeout(self._stale_timeout)
			self._stale_timeout = None

	def _clear_refetch_interval(self) -> None:
		if self._refetch_interval_handle is not None:
			self._client.timeout_manager.clear_interval(self._refetch_interval_handle)
			self._refetch_interval_handle = None

	def _result_fields(
		self, query: Query[TQueryFnData], options: QueryOptions
	) -> dict[str, Any]:
		prev_query: Query[TQueryFnData] | None = self._current_query
		prev_options = self.options
		prev_result = self._current_result
		prev_result_state = self._current_result_state
		prev_result_options = self._current_result_options
		query_change = query is not prev_query
		query_initial_state = query.state if query_change else self._current_query_initial_state

		state = query.state
		fetch_status: FetchStatus = state.fetch_status
		status: QueryStatus = state.status
		error = state.error
		optimistic = options.get("_optimistic_results")
		if optimistic:
			mounted = self.has_listeners()
			fetch_on_mount = not mounted and should_fetch_on_mount(query, options)
			fetch_optionally = mounted and should_fetch_optionally(
				query, prev_query, options, prev_options
			)
			if fetch_on_mount or fetch_optionally:
				changes = fetch_state(state.data, query.options, self._client.online_manager)
				fetch_status = changes["fetch_status"]
				status = changes.get("status", status)
				error = changes.get("error", error)
			if optimistic == "isRestoring":
				fetch_status = "idle"

		error_updated_at = state.error_updated_at
		data: Any = state.data
		is_placeholder_data = False
		skip_select = False

		placeholder = options.get("placeholder_data")
		if placeholder is not None and data is None and status == "pending":
			# Reuse only if the placeholder option is literally the same object
			if (
				prev_result is not None
				and prev_result.is_placeholder_data
				and prev_result_options is not None
				and placeholder is prev_result_options.get("placeholder_data")
			):
				placeholder_data = prev_result.data
				skip_select = True
			elif callable(placeholder):
				last = self._last_query_with_defined_data
				placeholder_data = call_flexible(
					placeholder, last.state.data if last is not None else None, last
				)
			else:
				placeholder_data = placeholder
			if placeholder_data is not None:
				status = "success"
				data = replace_data(
					prev_result.data if prev_result is not None else None,
					placeholder_data,
					options,
				)
				is_placeholder_data = True

		select = options.get("select")
		if select is not None and data is not None and not skip_select:
			if (
				prev_result is not None
				and prev_result_state is not None
				and data is prev_result_state.data
				and select is self._select_fn
			):
				data = self._select_result
			else:
				try:
					self._select_fn = select
					data = select(data)
					data = replace_data(
						prev_result.data if prev_result is not None else None, data, options
					)
					self._select_result = data
					self._select_error = None
				except Exception as select_error:
					self._select_error = select_error

		if self._select_error is not None:
			error = self._select_error
			data = self._select_result
			error_updated_at = self._client.timeout_manager.now()
			status = "error"

		is_fetching = fetch_status == "fetching"
		is_pending = status == "pending"
		is_error = status == "error"
		is_loading = is_pending and is_fetching
		has_data = data is not None

		return {
			"status": status,
			"fetch_status": fetch_status,
			"is_pending": is_pending,
			"is_success": status == "success",
			"is_error": is_error,
			"is_initial_loading": is_loading,
			"is_loading": is_loading,
			"data": data,
			"data_updated_at": state.data_updated_at,
			"error": error,
			"error_updated_at": error_updated_at,
			"failure_count": state.fetch_failure_count,
			"failure_reason": state.fetch_failure_reason,
			"error_update_count": state.error_update_count,
			"is_fetched": state.data_update_count > 0 or state.error_update_count > 0,
			"is_fetched_after_mount": (
				state.data_update_count > query_initial_state.data_update_count
				or state.error_update_count > query_initial_state.error_update_count
			),
			"is_fetching": is_fetching,
			"is_refetching": is_fetching and not is_pending,
			"is_loading_error": is_error and not has_data,
			"is_paused": fetch_status == "paused",
			"is_placeholder_data": is_placeholder_data,
			"is_refetch_error": is_error and has_data,
			"is_stale": is_stale(query, options),
			"refetch": self.refetch,
			"is_enabled": resolve_enabled(options.get("enabled"), query) is not False,
		}

	def create_result(
		self, query: Query[TQueryFnData], options: QueryOptions
	) -> QueryObserverResult[TData]:
		return QueryObserverResult(**self._result_fields(query, options))

	def update_result(self) -> None:
		prev_result = self._current_result
		next_result = self.create_result(self._current_query, self.options)
		self._current_result_state = self._current_query.state
		self._current_result_options = self.options
		if self._current_result_state.data is not None:
			self._last_query_with_defined_data = self._current_query

		if shallow_equal_objects(next_result, prev_result):
			return
		self._current_result = next_result
		self._notify(listeners=self._should_notify_listeners(prev_result, next_result))

	def _should_notify_listeners(
		self,
		prev_result: QueryObserverResult[TData] | None,
		next_result: QueryObserverResult[TData],
	) -> bool:
		if prev_result is None:
			return True
		notify_on_change_props = self.options.get("notify_on_change_props")
		value = notify_on_change_props() if callable(notify_on_change_props) else notify_on_change_props
		if value == "all" or (not value and not self._tracked_props):
			return True

		included = set(value if value else self._tracked_props)
		if self.options.get("throw_on_error"):
			included.add("error")
		return any(
			not is_same(getattr(next_result, name, None), getattr(prev_result, name, None))
			for name in included
		)

	def _update_query(self) -> None:
		query = cast(
			Query[TQueryFnData],
			self._client.get_query_cache().build(self._client, self.options),
		)
		if query is self._current_query:
			return
		prev_query: Query[TQueryFnData] | None = self._current_query
		self._current_query = query
		self._current_query_initial_state = query.state
		if self.has_listeners():
			if prev_query is not None:
				prev_query.remove_observer(self)
			query.add_observer(self)

	def on_query_update(self) -> None:
		self.update_result()
		if self.has_listeners():
			self._update_timers()

	def _notify(self, *, listeners: bool) -> None:
		notify_manager = self._client.notify_manager
		with notify_manager.batch():
			if listeners:
				result = self._current_result
				for listener in list(self.listeners):
					notify_manager.schedule(lambda listener=listener: listener(result))
			self._client.get_query_cache().notify_event(
				"observerResultsUpdated", self._current_query
			)
