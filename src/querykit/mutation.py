import asyncio
import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Generic, Literal, TypeVar, override

from querykit.errors import MissingMutationFnError
from querykit.gc import GCManager, Removable
from querykit.helpers import call_flexible, maybe_await
from querykit.retryer import Retryer
from querykit.types import MutationKey, MutationOptions, MutationStatus

if TYPE_CHECKING:
	from querykit.client import QueryClient
	from querykit.mutation_cache import MutationCache
	from querykit.mutation_observer import MutationObserver

TData = TypeVar("TData")
TVariables = TypeVar("TVariables")
TContext = TypeVar("TContext")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MutationState(Generic[TData, TVariables, TContext]):
	context: TContext | None = None
	data: TData | None = None
	error: BaseException | None = None
	failure_count: int = 0
	failure_reason: BaseException | None = None
	is_paused: bool = False
	status: MutationStatus = "idle"
	variables: TVariables | None = None
	submitted_at: float = 0.0


@dataclass(frozen=True, slots=True)
class MutationFunctionContext:
	"""Passed to mutation functions and to every mutation hook."""

	client: "QueryClient"
	meta: dict[str, Any] | None
	mutation_key: MutationKey | None


@dataclass(frozen=True, slots=True)
class MutationFailedAction:
	failure_count: int
	error: BaseException
	type: Literal["failed"] = "failed"


@dataclass(frozen=True, slots=True)
class MutationPauseAction:
	type: Literal["pause"] = "pause"


@dataclass(frozen=True, slots=True)
class MutationContinueAction:
	type: Literal["continue"] = "continue"


@dataclass(frozen=True, slots=True)
class MutationPendingAction:
	variables: Any
	is_paused: bool
	context: Any = None
	type: Literal["pending"] = "pending"


@dataclass(frozen=True, slots=True)
class MutationSuccessAction:
	data: Any
	type: Literal["success"] = "success"


@dataclass(frozen=True, slots=True)
class MutationErrorAction:
	error: BaseException
	type: Literal["error"] = "error"


MutationAction = (
	MutationFailedAction
	| MutationPauseAction
	| MutationContinueAction
	| MutationPendingAction
	| MutationSuccessAction
	| MutationErrorAction
)


def reduce_mutation_state(
	state: MutationState[Any, Any, Any], action: MutationAction, *, now: float
) -> MutationState[Any, Any, Any]:
	if isinstance(action, MutationFailedAction):
		return replace(state, failure_count=action.failure_count, failure_reason=action.error)
	if isinstance(action, MutationPauseAction):
		return replace(state, is_paused=True)
	if isinstance(action, MutationContinueAction):
		return replace(state, is_paused=False)
	if isinstance(action, MutationPendingAction):
		return replace(
			state,
			context=action.context,
			data=None,
			failure_count=0,
			failure_reason=None,
			error=None,
			is_paused=action.is_paused,
			status="pending",
			variables=action.variables,
			submitted_at=now,
		)
	if isinstance(action, MutationSuccessAction):
		return replace(
			state,
			data=action.data,
			failure_count=0,
			failure_reason=None,
			error=None,
			status="success",
			is_paused=False,
		)
	if isinstance(action, MutationErrorAction):
		return replace(
			state,
			data=None,
			error=action.error,
			failure_count=state.failure_count + 1,
			failure_reason=action.error,
			is_paused=False,
			status="error",
		)
	raise TypeError(f"Unknown mutation action: {action!r}")


class Mutation(Removable, Generic[TData, TVariables, TContext]):
	"""One invocation of a write operation."""

	mutation_id: int
	options: MutationOptions
	state: MutationState[TData, TVariables, TContext]

	_observers: "list[MutationObserver[Any, Any, Any]]"
	_retryer: Retryer[TData] | None

	def __init__(
		self,
		*,
		client: "QueryClient",
		mutation_cache: "MutationCache",
		mutation_id: int,
		options: MutationOptions,
		state: MutationState[TData, TVariables, TContext] | None = None,
	) -> None:
		super().__init__()
		self._client = client
		self._mutation_cache = mutation_cache
		self._observers = []
		self._retryer = None
		self.mutation_id = mutation_id
		self.state = state or MutationState()
		self.set_options(options)
		self.mark_for_gc()

	@override
	def __repr__(self) -> str:
		return f"Mutation(id={self.mutation_id}, status={self.state.status})"

	def set_options(self, options: MutationOptions) -> None:
		self.options = options
		self.update_gc_time(self.options.get("gc_time"))

	@property
	def meta(self) -> dict[str, Any] | None:
		return self.options.get("meta")

	@property
	def scope_id(self) -> str | None:
		scope = self.options.get("scope")
		return scope["id"] if scope else None

	@override
	def get_gc_manager(self) -> GCManager:
		return self._client.get_gc_manager()

	def add_observer(self, observer: "MutationObserver[Any, Any, Any]") -> None:
		if observer in self._observers:
			return
		self._observers.append(observer)
		self.clear_gc_mark()
		self._mutation_cache.notify_event("observerAdded", self, observer=observer)

	def remove_observer(self, observer: "MutationObserver[Any, Any, Any]") -> None:
		self._observers = [x for x in self._observers if x is not observer]
		if self.is_safe_to_remove():
			self.mark_for_gc()
		self._mutation_cache.notify_event("observerRemoved", self, observer=observer)

	def is_safe_to_remove(self) -> bool:
		return self.state.status != "pending" and not self._observers

	@override
	def optional_remove(self) -> bool:
		if not self._observers:
			if self.state.status == "pending":
				self.mark_for_gc()
			else:
				self._mutation_cache.remove(self)
				return True
		return False

	def continue_(self) -> "asyncio.Future[Any]":
		"""Resume a paused run, or re-run with the stored variables."""
		if self._retryer is not None:
			return self._retryer.continue_()
		return asyncio.ensure_future(self.execute(self.state.variables))

	async def execute(self, variables: TVariables) -> TData:
		context = MutationFunctionContext(
			client=self._client,
			meta=self.options.get("meta"),
			mutation_key=self.options.get("mutation_key"),
		)

		def on_continue() -> None:
			self._dispatch(MutationContinueAction())

		def run() -> Any:
			mutation_fn = self.options.get("mutation_fn")
			if mutation_fn is None:
				raise MissingMutationFnError()
			return call_flexible(mutation_fn, variables, context)

		self._retryer = Retryer(
			run,
			on_fail=lambda count, error: self._dispatch(MutationFailedAction(count, error)),
			on_pause=lambda: self._dispatch(MutationPauseAction()),
			on_continue=on_continue,
			retry=self.options.get("retry", 0),
			retry_delay=self.options.get("retry_delay"),
			network_mode=self.options.get("network_mode"),
			can_run=lambda: self._mutation_cache.can_run(self),
			focus=self._client.focus_manager,
			online=self._client.online_manager,
			timeouts=self._client.timeout_manager,
		)

		config = self._mutation_cache.config
		restored = self.state.status == "pending"
		is_paused = not self._retryer.can_start()

		try:
			if restored:
				on_continue()
			else:
				self._dispatch(MutationPendingAction(variables=variables, is_paused=is_paused))
				if config.on_mutate is not None:
					await maybe_await(call_flexible(config.on_mutate, variables, self, context))
				on_mutate = self.options.get("on_mutate")
				if on_mutate is not None:
					mutate_context = await maybe_await(call_flexible(on_mutate, variables, context))
					if mutate_context is not self.state.context:
						self._dispatch(
							MutationPendingAction(
								variables=variables, is_paused=is_paused, context=mutate_context
							)
						)

			data = await self._retryer.start()

			if config.on_success is not None:
				await maybe_await(
					call_flexible(config.on_success, data, variables, self.state.context, self, context)
				)
			await self._call_hook("on_success", data, variables, self.state.context, context)
			if config.on_settled is not None:
				await maybe_await(
					call_flexible(
						config.on_settled,
						data,
						None,
						self.state.variables,
						self.state.context,
						self,
						context,
					)
				)
			await self._call_hook("on_settled", data, None, variables, self.state.context, context)
			self._dispatch(MutationSuccessAction(data=data))
			return data
		except Exception as error:
			try:
				if config.on_error is not None:
					await maybe_await(
						call_flexible(config.on_error, error, variables, self.state.context, self, context)
					)
				await self._call_hook("on_error", error, variables, self.state.context, context)
				if config.on_settled is not None:
					await maybe_await(
						call_flexible(
							config.on_settled,
							None,
							error,
							self.state.variables,
							self.state.context,
							self,
							context,
						)
					)
				await self._call_hook("on_settled", None, error, variables, self.state.context, context)
				raise error
			finally:
				self._dispatch(MutationErrorAction(error=error))
		finally:
			self._mutation_cache.run_next(self)

	async def _call_hook(self, name: str, *args: Any) -> None:
		hook = self.options.get(name)
		if hook is not None:
			await maybe_await(call_flexible(hook, *args))

	def _dispatch(self, action: MutationAction) -> None:
		self.state = reduce_mutation_state(self.state, action, now=self._client.timeout_manager.now())
		if self.is_safe_to_remove():
			self.mark_for_gc()

		with self._mutation_cache.notify_manager.batch():
			for observer in list(self._observers):
				observer.on_mutation_update(action)
			self._mutation_cache.notify_event("updated", self, action=action)


__all__ = [
	"Mutation",
	"MutationAction",
	"MutationFunctionContext",
	"MutationState",
	"reduce_mutation_state",
]
