import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from querykit.helpers import Subscribable
from querykit.keys import hash_query_key_by_options, match_query
from querykit.notify import NotifyManager
from querykit.notify import notify_manager as default_notify_manager
from querykit.query import Query, QueryAction, QueryState
from querykit.types import QueryFilters, QueryOptions

if TYPE_CHECKING:
	from querykit.client import QueryClient
	from querykit.query_observer import QueryObserver

logger = logging.getLogger(__name__)

QueryCacheEventType = Literal[
	"added",
	"removed",
	"updated",
	"observerAdded",
	"observerRemoved",
	"observerResultsUpdated",
	"observerOptionsUpdated",
]


@dataclass(frozen=True, slots=True)
class QueryCacheEvent:
	type: QueryCacheEventType
	query: Query[Any]
	action: QueryAction | None = None
	observer: "QueryObserver[Any, Any] | None" = None


QueryCacheListener = Callable[[QueryCacheEvent], None]


@dataclass(slots=True)
class QueryCacheConfig:
	"""Hooks that run for every query in the cache, before any per-call hook."""

	on_error: Callable[[BaseException, Query[Any]], Any] | None = None
	on_success: Callable[[Any, Query[Any]], Any] | None = None
	on_settled: Callable[[Any, BaseException | None, Query[Any]], Any] | None = None


class QueryCache(Subscribable[QueryCacheListener]):
	config: QueryCacheConfig
	notify_manager: NotifyManager
	_queries: dict[str, Query[Any]]

	def __init__(
		self,
		config: QueryCacheConfig | None = None,
		notify_manager: NotifyManager | None = None,
	) -> None:
		super().__init__()
		self.config = config or QueryCacheConfig()
		self.notify_manager = notify_manager or default_notify_manager
		self._queries = {}

	def build(
		self,
		client: "QueryClient",
		options: QueryOptions,
		state: QueryState[Any] | None = None,
	) -> Query[Any]:
		query_key = options["query_key"]
		query_hash = options.get("query_hash") or hash_query_key_by_options(query_key, options)
		query = self.get(query_hash)
		if query is None:
			query = Query(
				client=client,
				cache=self,
				query_key=query_key,
				query_hash=query_hash,
				options=client.default_query_options(options),
				state=state,
				default_options=client.get_query_defaults(query_key),
			)
			self.add(query)
		return query

	def add(self, query: Query[Any]) -> None:
		if query.query_hash not in self._queries:
			self._queries[query.query_hash] = query
			logger.debug("query added: %s", query.query_hash)
			self.notify_event("added", query)

	def remove(self, query: Query[Any]) -> None:
		query_in_map = self._queries.get(query.query_hash)
		if query_in_map is None:
			return
		query.destroy()
		# A newer entity may own the hash by now, leave it in place
		if query_in_map is query:
			del self._queries[query.query_hash]
			logger.debug("query removed: %s", query.query_hash)
		self.notify_event("removed", query)

	def clear(self) -> None:
		with self.notify_manager.batch():
			for query in self.get_all():
				self.remove(query)

	def get(self, query_hash: str) -> Query[Any] | None:
		return self._queries.get(query_hash)

	def get_all(self) -> list[Query[Any]]:
		return list(self._queries.values())

	def find(self, filters: QueryFilters) -> Query[Any] | None:
		"""First query matching `filters`. Keys match exactly unless `exact=False`."""
		defaulted: QueryFilters = {"exact": True, **filters}
		return next((q for q in self.get_all() if match_query(defaulted, q)), None)

	def find_all(self, filters: QueryFilters | None = None) -> list[Query[Any]]:
		queries = self.get_all()
		if not filters:
			return queries
		return [q for q in queries if match_query(filters, q)]

	def notify(self, event: QueryCacheEvent) -> None:
		with self.notify_manager.batch():
			for listener in list(self.listeners):
				listener(event)

	def notify_event(
		self,
		type: QueryCacheEventType,
		query: Query[Any],
		*,
		action: QueryAction | None = None,
		observer: "QueryObserver[Any, Any] | None" = None,
	) -> None:
		self.notify(QueryCacheEvent(type=type, query=query, action=action, observer=observer))

	def on_focus(self) -> None:
		with self.notify_manager.batch():
			for query in self.get_all():
				query.on_focus()

	def on_online(self) -> None:
		with self.notify_manager.batch():
			for query in self.get_all():
				query.on_online()