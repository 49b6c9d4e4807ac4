"""Key hashing, key matching and structural sharing.

Keys are sequences of JSON-serializable segments. `hash_key` produces the
canonical string the caches index by; `partial_match_key` is the matcher used
by every filterable bulk operation.
"""

import json
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, TypeVar, cast

from querykit.types import MutationFilters, QueryFilters, QueryKey, QueryOptions

if TYPE_CHECKING:
	from querykit.mutation import Mutation
	from querykit.query import Query

T = TypeVar("T")

_PRIMITIVES = (str, int, float, bool, type(None))


def hash_key(key: QueryKey) -> str:
	"""Canonical hash: mapping fields are sorted so their order never matters."""
	return json.dumps(list(key), sort_keys=True, separators=(",", ":"))


def hash_query_key_by_options(key: QueryKey, options: QueryOptions | None = None) -> str:
	hash_fn = (options or {}).get("query_key_hash_fn") or hash_key
	return hash_fn(key)


def _is_sequence(value: Any) -> bool:
	return isinstance(value, (list, tuple))


def partial_match_key(a: Any, b: Any) -> bool:
	"""
	True if every entry present in `b` is deeply equal to the matching entry
	in `a`. Extra entries in `a` are ignored, so the filter ("todos",) matches
	("todos", 1) and {"a": 1} matches {"a": 1, "b": 2}.
	"""
	if a is b:
		return True
	if isinstance(a, Mapping) and isinstance(b, Mapping):
		return all(k in a and partial_match_key(a[k], v) for k, v in b.items())
	if _is_sequence(a) and _is_sequence(b):
		if len(b) > len(a):
			return False
		return all(partial_match_key(a[i], b[i]) for i in range(len(b)))
	if isinstance(a, _PRIMITIVES) and isinstance(b, _PRIMITIVES):
		return a == b and isinstance(a, bool) == isinstance(b, bool)
	return False


def is_same(a: Any, b: Any) -> bool:
	"""Identity for containers and objects, value equality for primitives."""
	if a is b:
		return True
	if isinstance(a, _PRIMITIVES) and isinstance(b, _PRIMITIVES):
		return type(a) is type(b) and a == b
	return False


def replace_equal_deep(a: Any, b: T) -> T:
	"""
	Return `b`, but reuse every branch of `a` that is deeply equal to the
	corresponding branch of `b`. If the whole value is equal, `a` itself is
	returned, so unchanged data keeps its identity across refetches.
	Only plain dicts and lists are traversed.
	"""
	if is_same(a, b):
		return cast(T, a)

	if type(a) is list and type(b) is list:
		a_list = cast(list[Any], a)
		b_list = cast(list[Any], b)
		copy: list[Any] = []
		equal_items = 0
		for i, b_item in enumerate(b_list):
			if i < len(a_list):
				value = replace_equal_deep(a_list[i], b_item)
				if value is a_list[i]:
					equal_items += 1
			else:
				value = b_item
			copy.append(value)
		if len(a_list) == len(b_list) and equal_items == len(a_list):
			return cast(T, a)
		return cast(T, copy)

	if type(a) is dict and type(b) is dict:
		a_dict = cast(dict[Any, Any], a)
		b_dict = cast(dict[Any, Any], b)
		result: dict[Any, Any] = {}
		equal_items = 0
		for key, b_item in b_dict.items():
			if key in a_dict:
				value = replace_equal_deep(a_dict[key], b_item)
				if value is a_dict[key]:
					equal_items += 1
			else:
				value = b_item
			result[key] = value
		if len(a_dict) == len(b_dict) and equal_items == len(a_dict):
			return cast(T, a)
		return cast(T, result)

	return b


def replace_data(prev_data: Any, data: T, options: Mapping[str, Any]) -> T:
	sharing = options.get("structural_sharing", True)
	if callable(sharing):
		return sharing(prev_data, data)
	if sharing is not False:
		return replace_equal_deep(prev_data, data)
	return data


def shallow_equal_objects(a: Any, b: Any) -> bool:
	"""Field-by-field identity comparison of two dataclass results or dicts."""
	if a is None or b is None:
		return a is b
	a_fields = _fields_of(a)
	b_fields = _fields_of(b)
	if a_fields.keys() != b_fields.keys():
		return False
	return all(is_same(value, b_fields[name]) for name, value in a_fields.items())


def _fields_of(value: Any) -> dict[str, Any]:
	if isinstance(value, Mapping):
		return dict(cast(Mapping[str, Any], value))
	fields = getattr(value, "__dataclass_fields__", None)
	if fields is not None:
		return {name: getattr(value, name) for name in fields}
	return dict(vars(value))


def functional_update(updater: T | Callable[[Any], T], value: Any) -> T:
	if callable(updater):
		return cast(Callable[[Any], T], updater)(value)
	return updater


def match_query(filters: QueryFilters, query: "Query[Any]") -> bool:
	query_type = filters.get("type", "all")
	exact = filters.get("exact", False)
	fetch_status = filters.get("fetch_status")
	predicate = filters.get("predicate")
	query_key = filters.get("query_key")
	stale = filters.get("stale")

	if query_key is not None:
		if exact:
			if query.query_hash != hash_query_key_by_options(query_key, query.options):
				return False
		elif not partial_match_key(query.query_key, query_key):
			return False

	if query_type != "all":
		is_active = query.is_active()
		if query_type == "active" and not is_active:
			return False
		if query_type == "inactive" and is_active:
			return False

	if isinstance(stale, bool) and query.is_stale() != stale:
		return False

	if fetch_status and fetch_status != query.state.fetch_status:
		return False

	if predicate is not None and not predicate(query):
		return False

	return True


def match_mutation(filters: MutationFilters, mutation: "Mutation[Any, Any, Any]") -> bool:
	exact = filters.get("exact", False)
	status = filters.get("status")
	predicate = filters.get("predicate")
	mutation_key = filters.get("mutation_key")

	if mutation_key is not None:
		own_key = mutation.options.get("mutation_key")
		if own_key is None:
			return False
		if exact:
			if hash_key(own_key) != hash_key(mutation_key):
				return False
		elif not partial_match_key(own_key, mutation_key):
			return False

	if status and mutation.state.status != status:
		return False

	if predicate is not None and not predicate(mutation):
		return False

	return True


__all__ = [
	"functional_update",
	"hash_key",
	"hash_query_key_by_options",
	"is_same",
	"match_mutation",
	"match_query",
	"partial_match_key",
	"replace_data",
	"replace_equal_deep",
	"shallow_equal_objects",
]
