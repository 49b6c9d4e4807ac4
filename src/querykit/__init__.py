"""Asynchronous query and mutation cache for asyncio applications."""

# Client
from querykit.client import QueryClient as QueryClient

# Environment
from querykit.environment import FocusManager as FocusManager
from querykit.environment import OnlineManager as OnlineManager
from querykit.environment import focus_manager as focus_manager
from querykit.environment import online_manager as online_manager

# Errors
from querykit.errors import CancelledError as CancelledError
from querykit.errors import InvalidEnabledError as InvalidEnabledError
from querykit.errors import MissingMutationFnError as MissingMutationFnError
from querykit.errors import MissingQueryFnError as MissingQueryFnError
from querykit.errors import QueryKitError as QueryKitError
from querykit.errors import UndefinedDataError as UndefinedDataError
from querykit.errors import is_cancelled_error as is_cancelled_error

# Garbage collection
from querykit.gc import GCManager as GCManager

# Infinite queries
from querykit.infinite_query import InfiniteData as InfiniteData
from querykit.infinite_query import InfiniteQueryObserver as InfiniteQueryObserver
from querykit.infinite_query import InfiniteQueryObserverResult as InfiniteQueryObserverResult
from querykit.infinite_query import infinite_query_behavior as infinite_query_behavior

# Keys
from querykit.keys import hash_key as hash_key
from querykit.keys import match_mutation as match_mutation
from querykit.keys import match_query as match_query
from querykit.keys import partial_match_key as partial_match_key
from querykit.keys import replace_equal_deep as replace_equal_deep

# Mutations
from querykit.mutation import Mutation as Mutation
from querykit.mutation import MutationFunctionContext as MutationFunctionContext
from querykit.mutation import MutationState as MutationState
from querykit.mutation_cache import MutationCache as MutationCache
from querykit.mutation_cache import MutationCacheConfig as MutationCacheConfig
from querykit.mutation_cache import MutationCacheEvent as MutationCacheEvent
from querykit.mutation_observer import MutationObserver as MutationObserver
from querykit.mutation_observer import MutationObserverResult as MutationObserverResult

# Notifications
from querykit.notify import NotifyManager as NotifyManager
from querykit.notify import notify_manager as notify_manager

# Queries
from querykit.query import Query as Query
from querykit.query import QueryFunctionContext as QueryFunctionContext
from querykit.query import QueryState as QueryState
from querykit.query_cache import QueryCache as QueryCache
from querykit.query_cache import QueryCacheConfig as QueryCacheConfig
from querykit.query_cache import QueryCacheEvent as QueryCacheEvent
from querykit.query_observer import QueryObserver as QueryObserver
from querykit.query_observer import QueryObserverResult as QueryObserverResult

# Timers
from querykit.scheduling import LoopTimeoutProvider as LoopTimeoutProvider
from querykit.scheduling import TimeoutManager as TimeoutManager
from querykit.scheduling import TimeoutProvider as TimeoutProvider
from querykit.scheduling import timeout_manager as timeout_manager

# Options
from querykit.types import DefaultOptions as DefaultOptions
from querykit.types import FetchOptions as FetchOptions
from querykit.types import MutationFilters as MutationFilters
from querykit.types import MutationOptions as MutationOptions
from querykit.types import QueryFilters as QueryFilters
from querykit.types import QueryKey as QueryKey
from querykit.types import QueryOptions as QueryOptions
