from typing import Any

from querykit.keys import (
	functional_update,
	hash_key,
	is_same,
	partial_match_key,
	replace_equal_deep,
	shallow_equal_objects,
)

# ─────────────────────────────────────────────────────────────────────────────
# Hashing
# ─────────────────────────────────────────────────────────────────────────────


def test_hash_ignores_mapping_field_order():
	a = hash_key(["todos", {"status": "done", "page": 1}])
	b = hash_key(["todos", {"page": 1, "status": "done"}])
	assert a == b


def test_hash_respects_sequence_order():
	assert hash_key(["todos", 1, 2]) != hash_key(["todos", 2, 1])


def test_hash_treats_tuples_and_lists_alike():
	assert hash_key(("user", 1)) == hash_key(["user", 1])


def test_hash_nested_mappings_are_canonical():
	a = hash_key([{"outer": {"b": 2, "a": 1}}])
	b = hash_key([{"outer": {"a": 1, "b": 2}}])
	assert a == b


# ─────────────────────────────────────────────────────────────────────────────
# Partial matching
# ─────────────────────────────────────────────────────────────────────────────


def test_partial_match_prefix():
	assert partial_match_key(["todos", 1], ["todos"])
	assert not partial_match_key(["todos"], ["todos", 1])
	assert not partial_match_key(["posts", 1], ["todos"])


def test_partial_match_mapping_subset():
	assert partial_match_key(["todos", {"a": 1, "b": 2}], ["todos", {"a": 1}])
	assert not partial_match_key(["todos", {"a": 1}], ["todos", {"a": 1, "b": 2}])


def test_partial_match_does_not_confuse_bool_and_int():
	assert not partial_match_key([1], [True])
	assert partial_match_key([True], [True])


def test_partial_match_empty_filter_matches_everything():
	assert partial_match_key(["anything", 1], [])


# ─────────────────────────────────────────────────────────────────────────────
# Structural sharing
# ─────────────────────────────────────────────────────────────────────────────


def test_replace_equal_deep_returns_previous_when_equal():
	prev = {"user": {"id": 1, "tags": ["a", "b"]}}
	nxt = {"user": {"id": 1, "tags": ["a", "b"]}}
	assert replace_equal_deep(prev, nxt) is prev


def test_replace_equal_deep_keeps_unchanged_branches():
	prev: dict[str, Any] = {"a": {"x": 1}, "b": {"y": 2}}
	nxt: dict[str, Any] = {"a": {"x": 1}, "b": {"y": 3}}
	result = replace_equal_deep(prev, nxt)
	assert result == nxt
	assert result is not prev
	assert result["a"] is prev["a"]
	assert result["b"] == nxt["b"]
	assert result["b"] is not prev["b"]


def test_replace_equal_deep_lists():
	prev = [{"id": 1}, {"id": 2}]
	nxt = [{"id": 1}, {"id": 2}, {"id": 3}]
	result = replace_equal_deep(prev, nxt)
	assert result == nxt
	assert result[0] is prev[0]
	assert result[1] is prev[1]


def test_replace_equal_deep_does_not_traverse_other_types():
	prev = ({"id": 1},)
	nxt = ({"id": 1},)
	assert replace_equal_deep(prev, nxt) is nxt


def test_is_same_distinguishes_types():
	assert is_same(1.5, 1.5)
	assert not is_same(1, True)
	assert not is_same([], [])


def test_shallow_equal_objects():
	item = [1]
	assert shallow_equal_objects({"a": item, "b": 1}, {"a": item, "b": 1})
	assert not shallow_equal_objects({"a": [1]}, {"a": [1]})
	assert not shallow_equal_objects({"a": 1}, {"a": 1, "b": 2})
	assert shallow_equal_objects(None, None)


def test_functional_update():
	assert functional_update(lambda prev: prev + 1, 1) == 2
	assert functional_update("value", None) == "value"
