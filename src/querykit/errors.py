from typing import Any


class QueryKitError(Exception):
	"""Base class for errors raised by the engine itself."""


class CancelledError(Exception):
	"""
	Raised when a fetch or mutation is cancelled. This is not an operation
	failure: `revert` asks the owner to restore its pre-fetch state and
	`silent` asks it not to surface the cancellation as an error.
	"""

	revert: bool
	silent: bool

	def __init__(self, revert: bool = False, silent: bool = False) -> None:
		super().__init__("CancelledError")
		self.revert = revert
		self.silent = silent

	def __repr__(self) -> str:
		return f"CancelledError(revert={self.revert}, silent={self.silent})"


class UndefinedDataError(QueryKitError):
	def __init__(self, query_hash: str) -> None:
		super().__init__(f"{query_hash} data is None")
		self.query_hash = query_hash


class MissingQueryFnError(QueryKitError):
	def __init__(self, query_hash: str) -> None:
		super().__init__(f"Missing query_fn: '{query_hash}'")
		self.query_hash = query_hash


class MissingMutationFnError(QueryKitError):
	def __init__(self) -> None:
		super().__init__("No mutation_fn found")


class InvalidEnabledError(QueryKitError, TypeError):
	def __init__(self, value: Any) -> None:
		super().__init__(
			f"Expected enabled to be a boolean or a callback that returns a boolean, got {type(value).__name__}"
		)


def is_cancelled_error(value: Any) -> bool:
	return isinstance(value, CancelledError)


# Errors that are raised immediately and never go through the retry policy
USAGE_ERRORS: tuple[type[Exception], ...] = (
	UndefinedDataError,
	MissingQueryFnError,
	MissingMutationFnError,
)
