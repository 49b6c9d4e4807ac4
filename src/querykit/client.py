"""The `QueryClient` coordinator.

The client owns both caches and the garbage collector, applies layered
default options, and exposes the imperative cache operations. The notify,
focus, online and timeout managers default to the process-wide instances and
can be replaced per client.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar, cast

from querykit.environment import FocusManager, OnlineManager
from querykit.environment import focus_manager as default_focus_manager
from querykit.environment import online_manager as default_online_manager
from querykit.gc import GCManager
from querykit.helpers import consume_exception
from querykit.infinite_query import infinite_query_behavior
from querykit.keys import functional_update, hash_key, hash_query_key_by_options, partial_match_key
from querykit.mutation_cache import MutationCache
from querykit.notify import NotifyManager
from querykit.notify import notify_manager as default_notify_manager
from querykit.query import QueryState, resolve_stale_time
from querykit.query_cache import QueryCache
from querykit.scheduling import TimeoutManager
from querykit.scheduling import timeout_manager as default_timeout_manager
from querykit.types import (
	DefaultOptions,
	FetchOptions,
	MutationFilters,
	MutationKey,
	MutationOptions,
	QueryFilters,
	QueryKey,
	QueryOptions,
	QueryTypeFilter,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)


class QueryClient:
	notify_manager: NotifyManager
	focus_manager: FocusManager
	online_manager: OnlineManager
	timeout_manager: TimeoutManager

	_query_cache: QueryCache
	_mutation_cache: MutationCache
	_gc_manager: GCManager
	_default_options: DefaultOptions
	_query_defaults: dict[str, tuple[QueryKey, QueryOptions]]
	_mutation_defaults: dict[str, tuple[MutationKey, MutationOptions]]
	_mount_count: int
	_unsubscribe_focus: Callable[[], None] | None
	_unsubscribe_online: Callable[[], None] | None
	_background_tasks: "set[asyncio.Task[Any]]"

	def __init__(
		self,
		*,
		query_cache: QueryCache | None = None,
		mutation_cache: MutationCache | None = None,
		default_options: DefaultOptions | None = None,
		notify_manager: NotifyManager | None = None,
		focus_manager: FocusManager | None = None,
		online_manager: OnlineManager | None = None,
		timeout_manager: TimeoutManager | None = None,
		gc_manager: GCManager | None = None,
	) -> None:
		self.notify_manager = notify_manager or default_notify_manager
		self.focus_manager = focus_manager or default_focus_manager
		self.online_manager = online_manager or default_online_manager
		self.timeout_manager = timeout_manager or default_timeout_manager
		self._query_cache = query_cache or QueryCache(notify_manager=self.notify_manager)
		self._mutation_cache = mutation_cache or MutationCache(notify_manager=self.notify_manager)
		self._gc_manager = gc_manager or GCManager(self.timeout_manager)
		self._default_options = default_options or {}
		self._query_defaults = {}
		self._mutation_defaults = {}
		self._mount_count = 0
		self._unsubscribe_focus = None
		self._unsubscribe_online = None
		self._background_tasks = set()

	# Lifecycle

	def mount(self) -> None:
		"""Start listening to focus and connectivity. Reference counted."""
		self._mount_count += 1
		if self._mount_count != 1:
			return

		def on_focus(focused: bool) -> None:
			if focused:
				self._spawn_after_resume(self._query_cache.on_focus)

		def on_online(online: bool) -> None:
			if online:
				self._spawn_after_resume(self._query_cache.on_online)

		self._unsubscribe_focus = self.focus_manager.subscribe(on_focus)
		self._unsubscribe_online = self.online_manager.subscribe(on_online)

	def unmount(self) -> None:
		self._mount_count -= 1
		if self._mount_count != 0:
			return
		if self._unsubscribe_focus is not None:
			self._unsubscribe_focus()
			self._unsubscribe_focus = None
		if self._unsubscribe_online is not None:
			self._unsubscribe_online()
			self._unsubscribe_online = None

	def _spawn_after_resume(self, then: Callable[[], None]) -> None:
		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			then()
			return

		async def run() -> None:
			await self.resume_paused_mutations()
			then()

		task = loop.create_task(run())
		self._background_tasks.add(task)
		task.add_done_callback(self._background_tasks.discard)
		task.add_done_callback(consume_exception)

	def clear(self) -> None:
		self._query_cache.clear()
		self._mutation_cache.clear()
		self._gc_manager.clear()

	# Accessors

	def get_query_cache(self) -> QueryCache:
		return self._query_cache

	def get_mutation_cache(self) -> MutationCache:
		return self._mutation_cache

	def get_gc_manager(self) -> GCManager:
		return self._gc_manager

	def get_default_options(self) -> DefaultOptions:
		return self._default_options

	def set_default_options(self, options: DefaultOptions) -> None:
		self._default_options = options

	def set_query_defaults(self, query_key: QueryKey, options: QueryOptions) -> None:
		self._query_defaults[hash_key(query_key)] = (query_key, options)

	def get_query_defaults(self, query_key: QueryKey) -> QueryOptions:
		result: dict[str, Any] = {}
		for key, defaults in self._query_defaults.values():
			if partial_match_key(query_key, key):
				result.update(defaults)
		return cast(QueryOptions, result)

	def set_mutation_defaults(self, mutation_key: MutationKey, options: MutationOptions) -> None:
		self._mutation_defaults[hash_key(mutation_key)] = (mutation_key, options)

	def get_mutation_defaults(self, mutation_key: MutationKey) -> MutationOptions:
		result: dict[str, Any] = {}
		for key, defaults in self._mutation_defaults.values():
			if partial_match_key(mutation_key, key):
				result.update(defaults)
		return cast(MutationOptions, result)

	def default_query_options(self, options: QueryOptions) -> QueryOptions:
		if options.get("_defaulted"):
			return options
		defaulted = cast(
			QueryOptions,
			{
				**self._default_options.get("queries", {}),
				**self.get_query_defaults(options["query_key"]),
				**options,
				"_defaulted": True,
			},
		)
		if not defaulted.get("query_hash"):
			defaulted["query_hash"] = hash_query_key_by_options(defaulted["query_key"], defaulted)
		if defaulted.get("refetch_on_reconnect") is None:
			defaulted["refetch_on_reconnect"] = defaulted.get("network_mode") != "always"
		if defaulted.get("throw_on_error") is None:
			defaulted["throw_on_error"] = False
		return defaulted

	def default_mutation_options(self, options: MutationOptions | None = None) -> MutationOptions:
		if options and options.get("_defaulted"):
			return options
		options = options or {}
		mutation_key = options.get("mutation_key")
		return cast(
			MutationOptions,
			{
				**self._default_options.get("mutations", {}),
				**(self.get_mutation_defaults(mutation_key) if mutation_key else {}),
				**options,
				"_defaulted": True,
			},
		)

	# Reads and writes

	def is_fetching(self, filters: QueryFilters | None = None) -> int:
		return len(self._query_cache.find_all({**(filters or {}), "fetch_status": "fetching"}))

	def is_mutating(self, filters: MutationFilters | None = None) -> int:
		return len(self._mutation_cache.find_all({**(filters or {}), "status": "pending"}))

	def get_query_data(self, query_key: QueryKey) -> Any:
		options = self.default_query_options({"query_key": query_key})
		query = self._query_cache.get(options["query_hash"])
		return query.state.data if query is not None else None

	def get_query_state(self, query_key: QueryKey) -> QueryState[Any] | None:
		options = self.default_query_options({"query_key": query_key})
		query = self._query_cache.get(options["query_hash"])
		return query.state if query is not None else None

	def get_queries_data(self, filters: QueryFilters) -> list[tuple[QueryKey, Any]]:
		return [(query.query_key, query.state.data) for query in self._query_cache.find_all(filters)]

	def set_query_data(
		self,
		query_key: QueryKey,
		updater: Any | Callable[[Any], Any],
		*,
		updated_at: float | None = None,
	) -> Any:
		"""
		Write data for `query_key`, creating the query if needed. `updater` is
		either the new data or a function of the previous data; returning None
		leaves the cache untouched.
		"""
		options = self.default_query_options({"query_key": query_key})
		query = self._query_cache.get(options["query_hash"])
		prev_data = query.state.data if query is not None else None
		data = functional_update(updater, prev_data)
		if data is None:
			return None
		return self._query_cache.build(self, options).set_data(
			data, updated_at=updated_at, manual=True
		)

	def set_queries_data(
		self,
		filters: QueryFilters,
		updater: Any | Callable[[Any], Any],
		*,
		updated_at: float | None = None,
	) -> list[tuple[QueryKey, Any]]:
		with self.notify_manager.batch():
			return [
				(
					query.query_key,
					self.set_query_data(query.query_key, updater, updated_at=updated_at),
				)
				for query in self._query_cache.find_all(filters)
			]

	# Fetching

	async def fetch_query(self, options: QueryOptions) -> Any:
		"""Fetch unless the cached data is still fresh. Retries are off by default."""
		defaulted = self.default_query_options(options)
		if defaulted.get("retry") is None:
			defaulted = cast(QueryOptions, {**defaulted, "retry": False})
		query = self._query_cache.build(self, defaulted)
		if query.is_stale_by_time(resolve_stale_time(defaulted.get("stale_time"), query)):
			return await query.fetch(defaulted)
		return query.state.data

	async def prefetch_query(self, options: QueryOptions) -> None:
		try:
			await self.fetch_query(options)
		except Exception:
			logger.debug("prefetch of %r failed", options.get("query_key"), exc_info=True)

	async def ensure_query_data(
		self, options: QueryOptions, *, revalidate_if_stale: bool = False
	) -> Any:
		"""Cached data if present, fetched data otherwise."""
		defaulted = self.default_query_options(options)
		query = self._query_cache.build(self, defaulted)
		cached = query.state.data
		if cached is None:
			return await self.fetch_query(options)
		if revalidate_if_stale and query.is_stale_by_time(
			resolve_stale_time(defaulted.get("stale_time"), query)
		):
			task = asyncio.get_running_loop().create_task(self.prefetch_query(defaulted))
			self._background_tasks.add(task)
			task.add_done_callback(self._background_tasks.discard)
		return cached

	async def fetch_infinite_query(self, options: QueryOptions) -> Any:
		return await self.fetch_query(_with_infinite_behavior(options))

	async def prefetch_infinite_query(self, options: QueryOptions) -> None:
		await self.prefetch_query(_with_infinite_behavior(options))

	async def ensure_infinite_query_data(
		self, options: QueryOptions, *, revalidate_if_stale: bool = False
	) -> Any:
		return await self.ensure_query_data(
			_with_infinite_behavior(options), revalidate_if_stale=revalidate_if_stale
		)

	# Bulk operations

	def remove_queries(self, filters: QueryFilters | None = None) -> None:
		with self.notify_manager.batch():
			for query in self._query_cache.find_all(filters):
				self._query_cache.remove(query)

	async def reset_queries(
		self, filters: QueryFilters | None = None, fetch_options: FetchOptions | None = None
	) -> None:
		with self.notify_manager.batch():
			for query in self._query_cache.find_all(filters):
				query.reset()
			refetch = self._start_refetch(
				cast(QueryFilters, {"type": "active", **(filters or {})}), fetch_options
			)
		await refetch

	async def cancel_queries(
		self, filters: QueryFilters | None = None, *, revert: bool = True, silent: bool = False
	) -> None:
		with self.notify_manager.batch():
			futures = [
				query.cancel(revert=revert, silent=silent)
				for query in self._query_cache.find_all(filters)
			]
		await asyncio.gather(*futures, return_exceptions=True)

	async def invalidate_queries(
		self, filters: QueryFilters | None = None, fetch_options: FetchOptions | None = None
	) -> None:
		"""Mark matching queries stale and refetch the ones selected by `refetch_type`."""
		filters = filters or {}
		with self.notify_manager.batch():
			for query in self._query_cache.find_all(filters):
				query.invalidate()
			refetch_type = filters.get("refetch_type")
			if refetch_type == "none":
				return
			query_type = cast(QueryTypeFilter, refetch_type or filters.get("type") or "active")
			refetch = self._start_refetch(
				cast(QueryFilters, {**filters, "type": query_type}), fetch_options
			)
		await refetch

	async def refetch_queries(
		self, filters: QueryFilters | None = None, fetch_options: FetchOptions | None = None
	) -> None:
		with self.notify_manager.batch():
			refetch = self._start_refetch(filters, fetch_options)
		await refetch

	def _start_refetch(
		self, filters: QueryFilters | None, fetch_options: FetchOptions | None
	) -> "asyncio.Future[Any]":
		"""Start the fetches synchronously and return a future for all of them."""
		options = cast(
			FetchOptions,
			{**(fetch_options or {}), "cancel_refetch": (fetch_options or {}).get("cancel_refetch", True)},
		)
		throw_on_error = options.get("throw_on_error", False)
		futures: list[asyncio.Future[Any]] = []
		for query in self._query_cache.find_all(filters):
			if query.is_disabled() or query.is_static():
				continue
			future = query.fetch(None, options)
			# Paused fetches may never settle, don't wait on them
			if query.state.fetch_status == "paused":
				continue
			futures.append(future)
		return asyncio.gather(*futures, return_exceptions=not throw_on_error)

	async def resume_paused_mutations(self) -> None:
		if self.online_manager.is_online():
			await self._mutation_cache.resume_paused_mutations()


def _with_infinite_behavior(options: QueryOptions) -> QueryOptions:
	return cast(
		QueryOptions, {**options, "behavior": infinite_query_behavior(options.get("pages"))}
	)
