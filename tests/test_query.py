import asyncio
from typing import Any

import pytest
from conftest import FakeTimers, flush
from querykit import QueryClient, QueryFunctionContext
from querykit.errors import CancelledError, MissingQueryFnError, UndefinedDataError
from querykit.query import (
	ContinueAction,
	ErrorAction,
	FetchAction,
	PauseAction,
	QueryState,
	SuccessAction,
	reduce_query_state,
)
from querykit.query_cache import QueryCacheConfig


def build(client: QueryClient, key: Any, fn: Any = None, **options: Any):
	opts: dict[str, Any] = {"query_key": key, **options}
	if fn is not None:
		opts["query_fn"] = fn
	return client.get_query_cache().build(client, opts)  # pyright: ignore[reportArgumentType]


# ─────────────────────────────────────────────────────────────────────────────
# Reducer
# ─────────────────────────────────────────────────────────────────────────────


def test_reducer_fetch_from_empty_sets_pending_and_fetching():
	state = reduce_query_state(QueryState(), FetchAction(), options={}, now=5.0)
	assert state.status == "pending"
	assert state.fetch_status == "fetching"
	assert state.fetch_failure_count == 0


def test_reducer_success_and_error_counters():
	state = reduce_query_state(QueryState(), SuccessAction(data=1), options={}, now=5.0)
	assert state.data == 1
	assert state.data_update_count == 1
	assert state.data_updated_at == 5.0
	assert state.fetch_status == "idle"

	error = ValueError("x")
	state = reduce_query_state(state, ErrorAction(error=error), options={}, now=6.0)
	assert state.status == "error"
	assert state.data == 1
	assert state.error is error
	assert state.error_update_count == 1
	assert state.error_updated_at == 6.0


def test_reducer_manual_success_keeps_fetch_status():
	fetching = QueryState(fetch_status="fetching")
	state = reduce_query_state(
		fetching, SuccessAction(data="x", manual=True), options={}, now=1.0
	)
	assert state.fetch_status == "fetching"
	assert state.status == "success"


def test_reducer_pause_and_continue():
	state = reduce_query_state(QueryState(), PauseAction(), options={}, now=0.0)
	assert state.fetch_status == "paused"
	state = reduce_query_state(state, ContinueAction(), options={}, now=0.0)
	assert state.fetch_status == "fetching"


def test_reducer_never_mutates():
	state = QueryState()
	reduce_query_state(state, SuccessAction(data=1), options={}, now=0.0)
	assert state.data is None


# ─────────────────────────────────────────────────────────────────────────────
# Fetching
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_fetch_deduplicates_concurrent_calls(client: QueryClient):
	calls = 0
	gate = asyncio.Event()

	async def fetch_user():
		nonlocal calls
		calls += 1
		await gate.wait()
		return {"id": 1}

	query = build(client, ["user", 1], fetch_user)
	first = query.fetch()
	second = query.fetch()
	assert first is second
	assert query.state.fetch_status == "fetching"

	gate.set()
	assert await first == {"id": 1}
	assert calls == 1
	assert query.state.status == "success"
	assert query.state.fetch_status == "idle"


@pytest.mark.asyncio
async def test_query_fn_receives_context(client: QueryClient):
	seen: list[QueryFunctionContext] = []

	def fetch_todo(context: QueryFunctionContext):
		seen.append(context)
		return "todo"

	query = build(client, ["todo", 7], fetch_todo, meta={"source": "test"})
	await query.fetch()
	assert seen[0].query_key == ["todo", 7]
	assert seen[0].meta == {"source": "test"}
	assert seen[0].client is client


@pytest.mark.asyncio
async def test_none_result_is_rejected(client: QueryClient, caplog: pytest.LogCaptureFixture):
	query = build(client, ["empty"], lambda: None, retry=3)
	with pytest.raises(UndefinedDataError):
		await query.fetch()
	assert query.state.status == "error"
	assert "Query data cannot be None" in caplog.text


@pytest.mark.asyncio
async def test_missing_query_fn(client: QueryClient):
	query = build(client, ["nothing"])
	with pytest.raises(MissingQueryFnError):
		await query.fetch()
	assert query.state.fetch_failure_count == 1


@pytest.mark.asyncio
async def test_failed_fetch_keeps_previous_data(client: QueryClient):
	fail = False

	async def fetch():
		if fail:
			raise RuntimeError("down")
		return "v1"

	query = build(client, ["flaky"], fetch, retry=False)
	await query.fetch()
	fail = True
	with pytest.raises(RuntimeError):
		await query.fetch()
	assert query.state.status == "error"
	assert query.state.data == "v1"


@pytest.mark.asyncio
async def test_retry_counts_failures(client: QueryClient, timers: FakeTimers):
	calls = 0

	async def fetch():
		nonlocal calls
		calls += 1
		raise RuntimeError("nope")

	query = build(client, ["retry"], fetch, retry=2, retry_delay=0.5)
	task = query.fetch()
	await flush()
	assert query.state.fetch_failure_count == 1
	await timers.advance(0.5)
	assert query.state.fetch_failure_count == 2
	await timers.advance(0.5)
	with pytest.raises(RuntimeError):
		await task
	assert calls == 3
	assert query.state.fetch_failure_count == 3
	assert query.state.error_update_count == 1


@pytest.mark.asyncio
async def test_structural_sharing_preserves_identity(client: QueryClient):
	async def fetch():
		return {"items": [{"id": 1}, {"id": 2}]}

	query = build(client, ["list"], fetch)
	await query.fetch()
	first = query.state.data
	await query.fetch()
	assert query.state.data is first
	assert query.state.data_update_count == 2


@pytest.mark.asyncio
async def test_structural_sharing_can_be_disabled(client: QueryClient):
	async def fetch():
		return {"items": [1]}

	query = build(client, ["list"], fetch, structural_sharing=False)
	await query.fetch()
	first = query.state.data
	await query.fetch()
	assert query.state.data == first
	assert query.state.data is not first


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cancel_with_revert_restores_previous_state(client: QueryClient):
	async def fetch(context: QueryFunctionContext):
		await context.signal.wait()
		raise context.signal.reason or CancelledError()

	query = build(client, ["slow"], fetch)
	query.set_data("cached", manual=True)
	task = query.fetch()
	assert query.state.fetch_status == "fetching"

	await query.cancel(revert=True)
	assert query.state.fetch_status == "idle"
	assert query.state.data == "cached"
	assert await task == "cached"


@pytest.mark.asyncio
async def test_cancel_without_data_raises(client: QueryClient):
	async def fetch(context: QueryFunctionContext):
		await context.signal.wait()
		return "late"

	query = build(client, ["slow"], fetch)
	task = query.fetch()
	await query.cancel(revert=True)
	with pytest.raises(CancelledError):
		await task
	assert query.state.status == "pending"
	assert query.state.fetch_status == "idle"


@pytest.mark.asyncio
async def test_cancel_refetch_starts_new_fetch(client: QueryClient):
	calls = 0

	async def fetch():
		nonlocal calls
		calls += 1
		await asyncio.sleep(0)
		return calls

	query = build(client, ["counter"], fetch)
	await query.fetch()
	first = query.fetch()
	second = query.fetch(fetch_options={"cancel_refetch": True})
	assert first is not second
	assert await second == 2
	# The superseded fetch follows the newer one
	assert await first == 2
	assert calls == 2


# ─────────────────────────────────────────────────────────────────────────────
# Options and state
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_initial_data_seeds_state(client: QueryClient, timers: FakeTimers):
	query = build(
		client, ["seeded"], lambda: "fresh", initial_data=lambda: "seed", initial_data_updated_at=10.0
	)
	assert query.state.status == "success"
	assert query.state.data == "seed"
	assert query.state.data_updated_at == 10.0


@pytest.mark.asyncio
async def test_invalidate_marks_stale(client: QueryClient):
	query = build(client, ["inv"], lambda: 1)
	await query.fetch()
	assert not query.is_stale_by_time(60.0)
	query.invalidate()
	assert query.state.is_invalidated
	assert query.is_stale_by_time(60.0)
	assert not query.is_stale_by_time("static")


@pytest.mark.asyncio
async def test_stale_by_time(client: QueryClient, timers: FakeTimers):
	query = build(client, ["timed"], lambda: 1)
	await query.fetch()
	assert not query.is_stale_by_time(10.0)
	await timers.advance(10.0)
	assert query.is_stale_by_time(10.0)


@pytest.mark.asyncio
async def test_reset_returns_to_initial_state(client: QueryClient):
	query = build(client, ["resettable"], lambda: "x")
	await query.fetch()
	query.reset()
	assert query.state.status == "pending"
	assert query.state.data is None


@pytest.mark.asyncio
async def test_query_without_observers_is_disabled_until_fetched(client: QueryClient):
	query = build(client, ["lazy"], lambda: "x")
	assert query.is_disabled()
	await query.fetch()
	assert not query.is_disabled()
	assert not query.is_active()


@pytest.mark.asyncio
async def test_cache_config_hooks(client: QueryClient):
	events: list[tuple[str, Any]] = []
	client.get_query_cache().config = QueryCacheConfig(
		on_success=lambda data, query: events.append(("success", data)),
		on_error=lambda error, query: events.append(("error", str(error))),
		on_settled=lambda data, error, query: events.append(("settled", data)),
	)
	ok = build(client, ["ok"], lambda: "yes")
	await ok.fetch()

	def broken():
		raise ValueError("no")

	bad = build(client, ["bad"], broken, retry=False)
	with pytest.raises(ValueError):
		await bad.fetch()
	assert events == [
		("success", "yes"),
		("settled", "yes"),
		("error", "no"),
		("settled", None),
	]
