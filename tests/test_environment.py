import threading

import pytest
from conftest import flush
from querykit.environment import FocusManager, OnlineManager, _EnvironmentSignal  # pyright: ignore[reportPrivateUsage]


def test_focus_defaults_to_focused():
	manager = FocusManager()
	assert manager.is_focused()
	manager.set_focused(False)
	assert not manager.is_focused()
	manager.set_focused(None)
	assert manager.is_focused()


def test_focus_broadcasts_only_on_change():
	manager = FocusManager()
	seen: list[bool] = []
	manager.subscribe(seen.append)
	manager.set_focused(False)
	manager.set_focused(False)
	manager.set_focused(True)
	assert seen == [False, True]


def test_online_broadcasts_only_on_change():
	manager = OnlineManager()
	seen: list[bool] = []
	unsubscribe = manager.subscribe(seen.append)
	manager.set_online(True)
	manager.set_online(False)
	manager.set_online(True)
	unsubscribe()
	manager.set_online(False)
	assert seen == [False, True]


def test_probe_attaches_lazily_and_detaches_with_last_listener():
	manager = OnlineManager()
	state = {"attached": 0, "detached": 0}

	def setup(callback):
		state["attached"] += 1

		def cleanup():
			state["detached"] += 1

		return cleanup

	manager.set_event_listener(setup)
	assert state == {"attached": 1, "detached": 0}

	first = manager.subscribe(lambda _: None)
	second = manager.subscribe(lambda _: None)
	first()
	assert state["detached"] == 0
	second()
	assert state["detached"] == 1

	manager.subscribe(lambda _: None)
	assert state["attached"] == 2


@pytest.mark.asyncio
async def test_probe_callback_from_another_thread_runs_on_loop():
	manager = OnlineManager()
	captured = {}

	def setup(callback):
		captured["callback"] = callback
		return None

	seen: list[tuple[bool, int]] = []
	manager.subscribe(lambda online: seen.append((online, threading.get_ident())))
	manager.set_event_listener(setup)

	loop_thread = threading.get_ident()
	worker = threading.Thread(target=lambda: captured["callback"](False))
	worker.start()
	worker.join()
	await flush()

	assert seen == [(False, loop_thread)]
	assert not manager.is_online()


def test_focus_probe_without_value_rebroadcasts():
	manager = FocusManager()
	captured = {}

	def setup(callback):
		captured["callback"] = callback
		return None

	seen: list[bool] = []
	manager.subscribe(seen.append)
	manager.set_event_listener(setup)
	captured["callback"]()
	assert seen == [True]


def test_online_probe_without_value_rebroadcasts():
	manager = OnlineManager()
	captured = {}

	def setup(callback):
		captured["callback"] = callback
		return None

	seen: list[bool] = []
	manager.subscribe(seen.append)
	manager.set_event_listener(setup)
	manager.set_online(False)
	captured["callback"]()
	assert seen == [False, False]
	assert not manager.is_online()


def test_environment_signal_requires_a_probe_handler():
	with pytest.raises(TypeError):
		_EnvironmentSignal()  # pyright: ignore[reportAbstractUsage]
