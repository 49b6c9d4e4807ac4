import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar, override

from querykit.helpers import Subscribable, call_flexible, consume_exception
from querykit.keys import hash_key, shallow_equal_objects
from querykit.mutation import (
	Mutation,
	MutationAction,
	MutationErrorAction,
	MutationFunctionContext,
	MutationState,
	MutationSuccessAction,
)
from querykit.types import MutationOptions, MutationStatus

if TYPE_CHECKING:
	from querykit.client import QueryClient

TData = TypeVar("TData")
TVariables = TypeVar("TVariables")
TContext = TypeVar("TContext")


@dataclass(frozen=True, slots=True, kw_only=True)
class MutationObserverResult(Generic[TData, TVariables, TContext]):
	context: TContext | None
	data: TData | None
	error: BaseException | None
	failure_count: int
	failure_reason: BaseException | None
	is_paused: bool
	status: MutationStatus
	variables: TVariables | None
	submitted_at: float
	is_idle: bool
	is_pending: bool
	is_success: bool
	is_error: bool
	mutate: Callable[..., "asyncio.Future[Any]"]
	reset: Callable[[], None]


@dataclass(frozen=True, slots=True)
class MutateOptions:
	"""Per-call callbacks. They run after the cache and option hooks, while subscribed."""

	on_success: Callable[..., Any] | None = None
	on_error: Callable[..., Any] | None = None
	on_settled: Callable[..., Any] | None = None


class MutationObserver(Subscribable[Callable[[Any], None]], Generic[TData, TVariables, TContext]):
	options: MutationOptions

	_client: "QueryClient"
	_current_result: MutationObserverResult[TData, TVariables, TContext]
	_current_mutation: Mutation[TData, TVariables, TContext] | None
	_mutate_options: MutateOptions | None

	def __init__(self, client: "QueryClient", options: MutationOptions) -> None:
		super().__init__()
		self._client = client
		self._current_mutation = None
		self._mutate_options = None
		self.options = {}
		self.set_options(options)
		self.mutate = self.mutate
		self.reset = self.reset
		self._update_result()

	def set_options(self, options: MutationOptions) -> None:
		prev_options = self.options
		self.options = self._client.default_mutation_options(options)
		if not shallow_equal_objects(self.options, prev_options):
			self._client.get_mutation_cache().notify_event(
				"observerOptionsUpdated", self._current_mutation, observer=self
			)

		prev_key = prev_options.get("mutation_key")
		next_key = self.options.get("mutation_key")
		if prev_key and next_key and hash_key(prev_key) != hash_key(next_key):
			self.reset()
		elif self._current_mutation is not None and self._current_mutation.state.status == "pending":
			self._current_mutation.set_options(self.options)

	@override
	def on_unsubscribe(self) -> None:
		if not self.has_listeners() and self._current_mutation is not None:
			self._current_mutation.remove_observer(self)

	def on_mutation_update(self, action: MutationAction) -> None:
		self._update_result()
		self._notify(action)

	def get_current_result(self) -> MutationObserverResult[TData, TVariables, TContext]:
		return self._current_result

	def reset(self) -> None:
		if self._current_mutation is not None:
			self._current_mutation.remove_observer(self)
		self._current_mutation = None
		self._update_result()
		self._notify(None)

	def mutate(
		self,
		variables: TVariables,
		*,
		on_success: Callable[..., Any] | None = None,
		on_error: Callable[..., Any] | None = None,
		on_settled: Callable[..., Any] | None = None,
	) -> "asyncio.Future[TData]":
		"""
		Run the mutation. The returned task resolves to the mutation result and
		raises its error; awaiting it is optional.
		"""
		self._mutate_options = MutateOptions(
			on_success=on_success, on_error=on_error, on_settled=on_settled
		)
		if self._current_mutation is not None:
			self._current_mutation.remove_observer(self)
		mutation = self._client.get_mutation_cache().build(self._client, self.options)
		self._current_mutation = mutation
		mutation.add_observer(self)
		task = asyncio.get_running_loop().create_task(mutation.execute(variables))
		task.add_done_callback(consume_exception)
		return task

	def _update_result(self) -> None:
		state = (
			self._current_mutation.state
			if self._current_mutation is not None
			else MutationState()
		)
		self._current_result = MutationObserverResult(
			context=state.context,
			data=state.data,
			error=state.error,
			failure_count=state.failure_count,
			failure_reason=state.failure_reason,
			is_paused=state.is_paused,
			status=state.status,
			variables=state.variables,
			submitted_at=state.submitted_at,
			is_idle=state.status == "idle",
			is_pending=state.status == "pending",
			is_success=state.status == "success",
			is_error=state.status == "error",
			mutate=self.mutate,
			reset=self.reset,
		)

	def _notify(self, action: MutationAction | None) -> None:
		notify_manager = self._client.notify_manager
		with notify_manager.batch():
			mutate_options = self._mutate_options
			if mutate_options is not None and self.has_listeners():
				result = self._current_result
				context = MutationFunctionContext(
					client=self._client,
					meta=self.options.get("meta"),
					mutation_key=self.options.get("mutation_key"),
				)
				if isinstance(action, MutationSuccessAction):
					data = action.data
					if mutate_options.on_success is not None:
						call_flexible(
							mutate_options.on_success, data, result.variables, result.context, context
						)
					if mutate_options.on_settled is not None:
						call_flexible(
							mutate_options.on_settled,
							data,
							None,
							result.variables,
							result.context,
							context,
						)
				elif isinstance(action, MutationErrorAction):
					error = action.error
					if mutate_options.on_error is not None:
						call_flexible(
							mutate_options.on_error, error, result.variables, result.context, context
						)
					if mutate_options.on_settled is not None:
						call_flexible(
							mutate_options.on_settled,
							None,
							error,
							result.variables,
							result.context,
							context,
						)

			result = self._current_result
			for listener in list(self.listeners):
				notify_manager.schedule(lambda listener=listener: listener(result))
