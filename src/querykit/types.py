from collections.abc import Callable, Sequence
from typing import (
	TYPE_CHECKING,
	Any,
	Literal,
	TypeAlias,
	TypedDict,
	TypeVar,
)

if TYPE_CHECKING:
	from querykit.mutation import Mutation
	from querykit.query import Query

T = TypeVar("T")

QueryKey: TypeAlias = Sequence[Any]
MutationKey: TypeAlias = Sequence[Any]
QueryStatus: TypeAlias = Literal["pending", "success", "error"]
FetchStatus: TypeAlias = Literal["idle", "fetching", "paused"]
MutationStatus: TypeAlias = Literal["idle", "pending", "success", "error"]
NetworkMode: TypeAlias = Literal["online", "always", "offlineFirst"]
QueryTypeFilter: TypeAlias = Literal["all", "active", "inactive"]
FetchDirection: TypeAlias = Literal["forward", "backward"]

# A stale duration in seconds, or "static" for data that never goes stale.
StaleTime: TypeAlias = "float | Literal['static'] | Callable[[Query[Any]], float | Literal['static']]"
Enabled: TypeAlias = "bool | Callable[[Query[Any]], bool]"
RetryValue: TypeAlias = bool | int | Callable[[int, BaseException], bool]
RetryDelayValue: TypeAlias = float | Callable[[int, BaseException], float]
RefetchOn: TypeAlias = "bool | Literal['always'] | Callable[[Query[Any]], bool | Literal['always']]"
ThrowOnError: TypeAlias = "bool | Callable[[BaseException, Query[Any]], bool]"
NotifyOnChangeProps: TypeAlias = (
	"Literal['all'] | list[str] | Callable[[], Literal['all'] | list[str] | None] | None"
)


class QueryOptions(TypedDict, total=False):
	query_key: QueryKey
	query_fn: Callable[..., Any]
	query_hash: str
	query_key_hash_fn: Callable[[QueryKey], str]
	enabled: Enabled
	stale_time: StaleTime
	gc_time: float
	retry: RetryValue
	retry_delay: RetryDelayValue
	retry_on_mount: bool
	network_mode: NetworkMode
	initial_data: Any
	initial_data_updated_at: float | Callable[[], float | None] | None
	placeholder_data: Any
	select: Callable[[Any], Any]
	structural_sharing: bool | Callable[[Any, Any], Any]
	refetch_interval: float | Literal[False] | Callable[["Query[Any]"], float | Literal[False] | None] | None
	refetch_interval_in_background: bool
	refetch_on_window_focus: RefetchOn
	refetch_on_reconnect: RefetchOn
	refetch_on_mount: RefetchOn
	notify_on_change_props: NotifyOnChangeProps
	throw_on_error: ThrowOnError
	meta: dict[str, Any] | None
	behavior: Any
	# Infinite queries
	initial_page_param: Any
	get_next_page_param: Callable[..., Any]
	get_previous_page_param: Callable[..., Any]
	max_pages: int
	pages: int
	# Internal bookkeeping
	_defaulted: bool
	_optimistic_results: Literal["optimistic", "isRestoring"]


class MutationOptions(TypedDict, total=False):
	mutation_key: MutationKey
	mutation_fn: Callable[..., Any]
	gc_time: float
	retry: RetryValue
	retry_delay: RetryDelayValue
	network_mode: NetworkMode
	scope: "MutationScope"
	meta: dict[str, Any] | None
	on_mutate: Callable[..., Any]
	on_success: Callable[..., Any]
	on_error: Callable[..., Any]
	on_settled: Callable[..., Any]
	throw_on_error: ThrowOnError
	_defaulted: bool


class MutationScope(TypedDict):
	id: str


class DefaultOptions(TypedDict, total=False):
	queries: QueryOptions
	mutations: MutationOptions


class QueryFilters(TypedDict, total=False):
	query_key: QueryKey
	exact: bool
	type: QueryTypeFilter
	stale: bool
	fetch_status: FetchStatus
	predicate: Callable[["Query[Any]"], bool]
	refetch_type: QueryTypeFilter | Literal["none"]


class MutationFilters(TypedDict, total=False):
	mutation_key: MutationKey
	exact: bool
	status: MutationStatus
	predicate: Callable[["Mutation[Any, Any, Any]"], bool]


class FetchOptions(TypedDict, total=False):
	cancel_refetch: bool
	throw_on_error: bool
	meta: dict[str, Any] | None
	initial_future: Any


class CancelOptions(TypedDict, total=False):
	revert: bool
	silent: bool


class SetDataOptions(TypedDict, total=False):
	updated_at: float | None
	manual: bool


class FetchMoreMeta(TypedDict):
	direction: FetchDirection


class FetchMeta(TypedDict, total=False):
	fetch_more: FetchMoreMeta
