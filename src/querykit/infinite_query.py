"""Paginated queries.

An infinite query stores `{"pages": [...], "page_params": [...]}` as its data.
`infinite_query_behavior` replaces the query's fetch function with one that
fetches pages sequentially, either a single page in a direction or a full
refetch of every page already loaded.
"""

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypedDict, TypeVar, cast, override

from querykit.errors import CancelledError
from querykit.helpers import call_flexible, maybe_await
from querykit.query import FetchContext, Query, QueryFunctionContext, ensure_query_fn
from querykit.query_observer import QueryObserver, QueryObserverResult
from querykit.retryer import CancellationSignal
from querykit.types import FetchDirection, FetchOptions, QueryOptions

if TYPE_CHECKING:
	from querykit.client import QueryClient

TPage = TypeVar("TPage")
TData = TypeVar("TData")


class InfiniteData(TypedDict, Generic[TPage]):
	pages: list[TPage]
	page_params: list[Any]


def _add_to_end(items: list[Any], item: Any, max_items: int = 0) -> list[Any]:
	new_items = [*items, item]
	return new_items[1:] if max_items and len(new_items) > max_items else new_items


def _add_to_start(items: list[Any], item: Any, max_items: int = 0) -> list[Any]:
	new_items = [item, *items]
	return new_items[:-1] if max_items and len(new_items) > max_items else new_items


def get_next_page_param(options: QueryOptions, data: InfiniteData[Any]) -> Any:
	pages = data["pages"]
	if not pages:
		return None
	page_params = data["page_params"]
	return call_flexible(
		options["get_next_page_param"], pages[-1], pages, page_params[-1], page_params
	)


def get_previous_page_param(options: QueryOptions, data: InfiniteData[Any]) -> Any:
	pages = data["pages"]
	get_previous = options.get("get_previous_page_param")
	if not pages or get_previous is None:
		return None
	page_params = data["page_params"]
	return call_flexible(get_previous, pages[0], pages, page_params[0], page_params)


def has_next_page(options: QueryOptions, data: InfiniteData[Any] | None) -> bool:
	if not data:
		return False
	return get_next_page_param(options, data) is not None


def has_previous_page(options: QueryOptions, data: InfiniteData[Any] | None) -> bool:
	if not data or options.get("get_previous_page_param") is None:
		return False
	return get_previous_page_param(options, data) is not None


class InfiniteQueryBehavior:
	"""Installs a page-by-page fetch function on every fetch of the query."""

	pages: int | None

	def __init__(self, pages: int | None = None) -> None:
		self.pages = pages

	def on_fetch(self, context: FetchContext[Any], query: Query[Any]) -> None:
		options = context.options
		fetch_more = (context.fetch_options.get("meta") or {}).get("fetch_more") or {}
		direction: FetchDirection | None = fetch_more.get("direction")
		state_data = cast(InfiniteData[Any] | None, context.state.data)
		old_pages = state_data["pages"] if state_data else []
		old_page_params = state_data["page_params"] if state_data else []
		remaining_pages = self.pages if self.pages is not None else len(old_pages)

		async def fetch_fn() -> InfiniteData[Any]:
			cancelled = False

			def on_abort() -> None:
				nonlocal cancelled
				cancelled = True

			def signal_getter() -> CancellationSignal:
				signal = context.signal
				signal.add_listener(on_abort)
				return signal

			query_fn = ensure_query_fn(options, context.fetch_options)

			async def fetch_page(
				data: InfiniteData[Any], param: Any, previous: bool = False
			) -> InfiniteData[Any]:
				if cancelled:
					raise CancelledError()
				if param is None and data["pages"]:
					return data
				fn_context = QueryFunctionContext(
					context.client,
					context.query_key,
					options.get("meta"),
					signal_getter,
					page_param=param,
					direction="backward" if previous else "forward",
				)
				page = await maybe_await(call_flexible(query_fn, fn_context))
				max_pages = options.get("max_pages", 0)
				add_to = _add_to_start if previous else _add_to_end
				return {
					"pages": add_to(data["pages"], page, max_pages),
					"page_params": add_to(data["page_params"], param, max_pages),
				}

			result: InfiniteData[Any] = {"pages": [], "page_params": []}
			if direction and old_pages:
				previous = direction == "backward"
				old_data: InfiniteData[Any] = {"pages": old_pages, "page_params": old_page_params}
				param = (
					get_previous_page_param(options, old_data)
					if previous
					else get_next_page_param(options, old_data)
				)
				return await fetch_page(old_data, param, previous)

			current_page = 0
			while True:
				if current_page == 0:
					param = (
						old_page_params[0]
						if old_page_params and old_page_params[0] is not None
						else options.get("initial_page_param")
					)
				else:
					param = get_next_page_param(options, result)
					if param is None:
						break
				result = await fetch_page(result, param)
				current_page += 1
				if current_page >= remaining_pages:
					break
			return result

		context.fetch_fn = fetch_fn


def infinite_query_behavior(pages: int | None = None) -> InfiniteQueryBehavior:
	return InfiniteQueryBehavior(pages)


_DEFAULT_BEHAVIOR = infinite_query_behavior()


@dataclass(frozen=True, slots=True, kw_only=True)
class InfiniteQueryObserverResult(QueryObserverResult[TData]):
	fetch_next_page: Any
	fetch_previous_page: Any
	has_next_page: bool
	has_previous_page: bool
	is_fetching_next_page: bool
	is_fetching_previous_page: bool
	is_fetch_next_page_error: bool
	is_fetch_previous_page_error: bool


class InfiniteQueryObserver(QueryObserver[InfiniteData[Any], TData]):
	def __init__(self, client: "QueryClient", options: QueryOptions) -> None:
		self.fetch_next_page = self.fetch_next_page
		self.fetch_previous_page = self.fetch_previous_page
		super().__init__(client, options)

	@override
	def set_options(self, options: QueryOptions) -> None:
		super().set_options({**options, "behavior": _DEFAULT_BEHAVIOR})

	@override
	def get_optimistic_result(self, options: QueryOptions) -> QueryObserverResult[TData]:
		return super().get_optimistic_result({**options, "behavior": _DEFAULT_BEHAVIOR})

	def fetch_next_page(
		self, **fetch_options: Any
	) -> "asyncio.Future[QueryObserverResult[TData]]":
		return self.fetch(
			cast(FetchOptions, {**fetch_options, "meta": {"fetch_more": {"direction": "forward"}}})
		)

	def fetch_previous_page(
		self, **fetch_options: Any
	) -> "asyncio.Future[QueryObserverResult[TData]]":
		return self.fetch(
			cast(FetchOptions, {**fetch_options, "meta": {"fetch_more": {"direction": "backward"}}})
		)

	@override
	def create_result(
		self, query: Query[InfiniteData[Any]], options: QueryOptions
	) -> InfiniteQueryObserverResult[TData]:
		fields = self._result_fields(query, options)
		state = query.state
		fetch_more = (state.fetch_meta or {}).get("fetch_more") or {}
		fetch_direction = fetch_more.get("direction")
		is_fetching = fields["is_fetching"]
		is_refetch_error = fields["is_refetch_error"]

		is_fetch_next_page_error = is_refetch_error and fetch_direction == "forward"
		is_fetching_next_page = is_fetching and fetch_direction == "forward"
		is_fetch_previous_page_error = is_refetch_error and fetch_direction == "backward"
		is_fetching_previous_page = is_fetching and fetch_direction == "backward"

		fields.update(
			fetch_next_page=self.fetch_next_page,
			fetch_previous_page=self.fetch_previous_page,
			has_next_page=has_next_page(options, state.data),
			has_previous_page=has_previous_page(options, state.data),
			is_fetch_next_page_error=is_fetch_next_page_error,
			is_fetching_next_page=is_fetching_next_page,
			is_fetch_previous_page_error=is_fetch_previous_page_error,
			is_fetching_previous_page=is_fetching_previous_page,
			is_refetch_error=(
				is_refetch_error and not is_fetch_next_page_error and not is_fetch_previous_page_error
			),
			is_refetching=(
				fields["is_refetching"] and not is_fetching_next_page and not is_fetching_previous_page
			),
		)
		return InfiniteQueryObserverResult(**fields)


__all__ = [
	"InfiniteData",
	"InfiniteQueryBehavior",
	"InfiniteQueryObserver",
	"InfiniteQueryObserverResult",
	"get_next_page_param",
	"get_previous_page_param",
	"has_next_page",
	"has_previous_page",
	"infinite_query_behavior",
]
