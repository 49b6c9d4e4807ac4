import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from querykit.helpers import Subscribable
from querykit.keys import match_mutation
from querykit.mutation import Mutation, MutationAction, MutationState
from querykit.notify import NotifyManager
from querykit.notify import notify_manager as default_notify_manager
from querykit.types import MutationFilters, MutationOptions

if TYPE_CHECKING:
	from querykit.client import QueryClient
	from querykit.mutation_observer import MutationObserver

logger = logging.getLogger(__name__)

MutationCacheEventType = Literal[
	"added",
	"removed",
	"updated",
	"observerAdded",
	"observerRemoved",
	"observerOptionsUpdated",
]


@dataclass(frozen=True, slots=True)
class MutationCacheEvent:
	type: MutationCacheEventType
	mutation: Mutation[Any, Any, Any] | None
	action: MutationAction | None = None
	observer: "MutationObserver[Any, Any, Any] | None" = None


MutationCacheListener = Callable[[MutationCacheEvent], None]


@dataclass(slots=True)
class MutationCacheConfig:
	"""Hooks that run for every mutation, always before the per-call hooks."""

	on_mutate: Callable[..., Any] | None = None
	on_success: Callable[..., Any] | None = None
	on_error: Callable[..., Any] | None = None
	on_settled: Callable[..., Any] | None = None


class MutationCache(Subscribable[MutationCacheListener]):
	config: MutationCacheConfig
	notify_manager: NotifyManager
	# dicts used as insertion-ordered sets
	_mutations: dict[Mutation[Any, Any, Any], None]
	_scopes: dict[str, list[Mutation[Any, Any, Any]]]
	_mutation_id: int

	def __init__(
		self,
		config: MutationCacheConfig | None = None,
		notify_manager: NotifyManager | None = None,
	) -> None:
		super().__init__()
		self.config = config or MutationCacheConfig()
		self.notify_manager = notify_manager or default_notify_manager
		self._mutations = {}
		self._scopes = {}
		self._mutation_id = 0

	def build(
		self,
		client: "QueryClient",
		options: MutationOptions,
		state: MutationState[Any, Any, Any] | None = None,
	) -> Mutation[Any, Any, Any]:
		self._mutation_id += 1
		mutation: Mutation[Any, Any, Any] = Mutation(
			client=client,
			mutation_cache=self,
			mutation_id=self._mutation_id,
			options=client.default_mutation_options(options),
			state=state,
		)
		self.add(mutation)
		return mutation

	def add(self, mutation: Mutation[Any, Any, Any]) -> None:
		self._mutations[mutation] = None
		scope = mutation.scope_id
		if scope is not None:
			self._scopes.setdefault(scope, []).append(mutation)
		self.notify_event("added", mutation)

	def remove(self, mutation: Mutation[Any, Any, Any]) -> None:
		if mutation in self._mutations:
			del self._mutations[mutation]
			scope = mutation.scope_id
			if scope is not None:
				scoped = self._scopes.get(scope)
				if scoped is not None:
					if len(scoped) > 1:
						if mutation in scoped:
							scoped.remove(mutation)
					elif scoped and scoped[0] is mutation:
						del self._scopes[scope]
		self.notify_event("removed", mutation)

	def can_run(self, mutation: Mutation[Any, Any, Any]) -> bool:
		"""A scoped mutation may run only if it is the first pending one in its scope."""
		scope = mutation.scope_id
		if scope is None:
			return True
		scoped = self._scopes.get(scope, [])
		first_pending = next((m for m in scoped if m.state.status == "pending"), None)
		return first_pending is None or first_pending is mutation

	def run_next(self, mutation: Mutation[Any, Any, Any]) -> "asyncio.Future[Any] | None":
		scope = mutation.scope_id
		if scope is None:
			return None
		found = next(
			(m for m in self._scopes.get(scope, []) if m is not mutation and m.state.is_paused),
			None,
		)
		if found is None:
			return None
		logger.debug("resuming %r after %r in scope %s", found, mutation, scope)
		return found.continue_()

	def clear(self) -> None:
		with self.notify_manager.batch():
			for mutation in list(self._mutations):
				self.notify_event("removed", mutation)
			self._mutations.clear()
			self._scopes.clear()

	def get_all(self) -> list[Mutation[Any, Any, Any]]:
		return list(self._mutations)

	def find(self, filters: MutationFilters) -> Mutation[Any, Any, Any] | None:
		defaulted: MutationFilters = {"exact": True, **filters}
		return next((m for m in self.get_all() if match_mutation(defaulted, m)), None)

	def find_all(self, filters: MutationFilters | None = None) -> list[Mutation[Any, Any, Any]]:
		return [m for m in self.get_all() if match_mutation(filters or {}, m)]

	def notify(self, event: MutationCacheEvent) -> None:
		with self.notify_manager.batch():
			for listener in list(self.listeners):
				listener(event)

	def notify_event(
		self,
		type: MutationCacheEventType,
		mutation: Mutation[Any, Any, Any] | None,
		*,
		action: MutationAction | None = None,
		observer: "MutationObserver[Any, Any, Any] | None" = None,
	) -> None:
		self.notify(
			MutationCacheEvent(type=type, mutation=mutation, action=action, observer=observer)
		)

	async def resume_paused_mutations(self) -> None:
		paused = [m for m in self.get_all() if m.state.is_paused]
		if not paused:
			return
		with self.notify_manager.batch():
			futures = [m.continue_() for m in paused]
		await asyncio.gather(*futures, return_exceptions=True)
