"""Shared garbage collector for unobserved cache entries.

Entries mark themselves eligible when they lose their last observer and go
idle. A single `GCManager` keeps the eligible set and arms exactly one timer
for the nearest deadline, instead of one timer per entry.
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Any

from querykit.scheduling import TimeoutManager, call_soon, timeout_manager

logger = logging.getLogger(__name__)

GC_TIME_DEFAULT = 300.0


def is_valid_timeout(value: Any) -> bool:
	return (
		isinstance(value, (int, float))
		and not isinstance(value, bool)
		and value >= 0
		and value != math.inf
	)


class Removable(ABC):
	"""Base for cache entries that the collector can evict."""

	gc_time: float
	gc_marked_at: float | None

	def __init__(self) -> None:
		self.gc_time = 0.0
		self.gc_marked_at = None

	@abstractmethod
	def get_gc_manager(self) -> "GCManager": ...

	@abstractmethod
	def optional_remove(self) -> bool:
		"""Remove the entry if it is still safe to do so. Returns True if removed."""
		...

	def destroy(self) -> None:
		self.clear_gc_mark()

	def mark_for_gc(self) -> None:
		if is_valid_timeout(self.gc_time):
			manager = self.get_gc_manager()
			self.gc_marked_at = manager.now()
			manager.track_eligible_item(self)
		else:
			self.clear_gc_mark()

	def clear_gc_mark(self) -> None:
		self.gc_marked_at = None
		self.get_gc_manager().untrack_eligible_item(self)

	def is_eligible_for_gc(self) -> bool:
		if self.gc_marked_at is None or self.gc_time == math.inf:
			return False
		return self.get_gc_manager().now() >= self.gc_marked_at + self.gc_time

	def get_gc_at_timestamp(self) -> float | None:
		if self.gc_marked_at is None:
			return None
		if self.gc_time == math.inf:
			return math.inf
		return self.gc_marked_at + self.gc_time

	def update_gc_time(self, new_gc_time: float | None) -> None:
		"""Keep the largest gc_time ever applied to this entry."""
		self.gc_time = max(
			self.gc_time or 0.0, GC_TIME_DEFAULT if new_gc_time is None else new_gc_time
		)


class GCManager:
	_eligible: dict[Removable, None]
	_timer: Any
	_scan_scheduled: bool
	_scanning: bool
	_force_disable: bool

	def __init__(
		self, timeouts: TimeoutManager | None = None, force_disable: bool = False
	) -> None:
		self._timeouts = timeouts or timeout_manager
		self._force_disable = force_disable
		# dict as an insertion-ordered set
		self._eligible = {}
		self._timer = None
		self._scan_scheduled = False
		self._scanning = False

	@property
	def timeouts(self) -> TimeoutManager:
		return self._timeouts

	def set_timeout_manager(self, timeouts: TimeoutManager) -> None:
		self.stop_scanning()
		self._timeouts = timeouts
		if self._eligible:
			self._schedule_scan()

	def now(self) -> float:
		return self._timeouts.now()

	def is_scanning(self) -> bool:
		return self._scanning

	def get_eligible_item_count(self) -> int:
		return len(self._eligible)

	def track_eligible_item(self, item: Removable) -> None:
		if self._force_disable or item in self._eligible:
			return
		self._eligible[item] = None
		self._schedule_scan()

	def untrack_eligible_item(self, item: Removable) -> None:
		if self._force_disable or item not in self._eligible:
			return
		del self._eligible[item]
		if self._scanning:
			if not self._eligible:
				self.stop_scanning()
			else:
				self._schedule_scan()

	def stop_scanning(self) -> None:
		self._scanning = False
		self._scan_scheduled = False
		if self._timer is not None:
			self._timeouts.clear_timeout(self._timer)
			self._timer = None

	def clear(self) -> None:
		self._eligible.clear()
		self.stop_scanning()

	def _schedule_scan(self) -> None:
		if self._force_disable or self._scan_scheduled:
			return
		self._scan_scheduled = True
		call_soon(self._arm)

	def _arm(self) -> None:
		if not self._scan_scheduled:
			return
		self._scan_scheduled = False

		now = self.now()
		min_time_until_gc = math.inf
		for item in self._eligible:
			gc_at = item.get_gc_at_timestamp()
			if gc_at is None:
				continue
			min_time_until_gc = min(min_time_until_gc, max(0.0, gc_at - now))
		if min_time_until_gc == math.inf:
			return

		if self._timer is not None:
			self._timeouts.clear_timeout(self._timer)
			self._timer = None
		try:
			self._timer = self._timeouts.set_timeout(self._on_timer, min_time_until_gc)
		except RuntimeError:
			logger.debug("No event loop available, garbage collection scan not armed")
			return
		self._scanning = True

	def _on_timer(self) -> None:
		self._scanning = False
		self._timer = None
		self._perform_scan()
		if self._eligible:
			self._schedule_scan()

	def _perform_scan(self) -> None:
		for item in list(self._eligible):
			if item not in self._eligible:
				continue
			try:
				if item.is_eligible_for_gc() and item.optional_remove():
					self._eligible.pop(item, None)
					logger.debug("garbage collected %r", item)
			except Exception:
				logger.exception("Error during garbage collection of %r", item)
