#!/usr/bin/env python3
#
# certwarden/certs/events.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Best-effort fan-out of progress events to live observers.

Every subscriber gets its own bounded queue. Publishing never awaits: when a
subscriber falls behind, its oldest queued event is discarded and counted,
so one stalled browser tab cannot hold up an operation.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from ..utils.time import utcnow

_log = logging.getLogger(__name__)

__all__ = ["Event", "Subscription", "ProgressBroadcaster"]

_DEFAULT_QUEUE_SIZE = 256
_DEFAULT_HISTORY = 200

# Event types
OPERATION_START = "operation_start"
OPERATION_PROGRESS = "operation_progress"
OPERATION_COMPLETE = "operation_complete"
OPERATION_ERROR = "operation_error"
SCAN_PROGRESS = "scan_progress"
SCAN_COMPLETE = "scan_complete"
AUTORENEWAL_STARTED = "autorenewal_check_started"
AUTORENEWAL_COMPLETED = "autorenewal_check_completed"
AUTORENEWAL_TOGGLED = "autorenewal_domain_toggled"
LOCK_CLEANUP = "lock_cleanup"


@dataclass(frozen=True)
class Event:
	seq: int
	type: str
	timestamp: str
	data: dict[str, Any] = field(default_factory=dict)

	@property
	def domain(self) -> Optional[str]:
		return self.data.get("domain")

	def to_dict(self) -> dict[str, Any]:
		return {"seq": self.seq, "type": self.type, "timestamp": self.timestamp, **self.data}

	def to_sse(self) -> str:
		"""Server-Sent-Events frame."""
		payload = json.dumps(self.to_dict(), default=str)
		return f"id: {self.seq}\nevent: {self.type}\ndata: {payload}\n\n"


class Subscription:
	"""One observer's bounded mailbox."""

	def __init__(self, broadcaster: "ProgressBroadcaster", maxsize: int) -> None:
		self._broadcaster = broadcaster
		self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
		self.dropped = 0
		self.closed = False

	def offer(self, event: Event) -> None:
		if self.closed:
			return
		try:
			self._queue.put_nowait(event)
		except asyncio.QueueFull:
			try:
				self._queue.get_nowait()
			except asyncio.QueueEmpty:
				pass
			self.dropped += 1
			self._queue.put_nowait(event)

	async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
		"""Next event, or None when ``timeout`` elapses first."""
		if timeout is None:
			return await self._queue.get()
		try:
			return await asyncio.wait_for(self._queue.get(), timeout=timeout)
		except asyncio.TimeoutError:
			return None

	def drain(self) -> list[Event]:
		events: list[Event] = []
		while True:
			try:
				events.append(self._queue.get_nowait())
			except asyncio.QueueEmpty:
				return events

	def close(self) -> None:
		if not self.closed:
			self.closed = True
			self._broadcaster.unsubscribe(self)

	def __enter__(self) -> "Subscription":
		return self

	def __exit__(self, *exc: object) -> None:
		self.close()


class ProgressBroadcaster:
	"""Observer list with per-subscriber drop-oldest queues."""

	def __init__(self, *, queue_size: int = _DEFAULT_QUEUE_SIZE, history: int = _DEFAULT_HISTORY) -> None:
		self._queue_size = queue_size
		self._subscribers: list[Subscription] = []
		self._history: deque[Event] = deque(maxlen=history)
		self._seq = itertools.count(1)

	@property
	def subscriber_count(self) -> int:
		return len(self._subscribers)

	def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
		sub = Subscription(self, maxsize or self._queue_size)
		self._subscribers.append(sub)
		_log.debug("EVENTS subscriber added (total=%d)", len(self._subscribers))
		return sub

	def unsubscribe(self, sub: Subscription) -> None:
		try:
			self._subscribers.remove(sub)
		except ValueError:
			return
		if sub.dropped:
			_log.info("EVENTS subscriber removed after dropping %d events", sub.dropped)

	def publish(self, event_type: str, **data: Any) -> Event:
		event = Event(seq=next(self._seq), type=event_type, timestamp=utcnow().isoformat(), data=data)
		self._history.append(event)
		for sub in tuple(self._subscribers):
			sub.offer(event)
		return event

	def recent(self, limit: int = 50, *, domain: Optional[str] = None) -> list[Event]:
		events = [e for e in self._history if domain is None or e.domain == domain]
		return events[-limit:] if limit > 0 else []

	# -- operation events --------------------------------------------------

	def emit_start(self, domain: str, kind: str, method: Optional[str], **extra: Any) -> Event:
		return self.publish(OPERATION_START, domain=domain, kind=kind, method=method, **extra)

	def emit(self, domain: str, stage: str, message: str, **extra: Any) -> Event:
		return self.publish(OPERATION_PROGRESS, domain=domain, stage=stage, message=message, **extra)

	def emit_complete(self, domain: str, result: dict[str, Any], **extra: Any) -> Event:
		return self.publish(OPERATION_COMPLETE, domain=domain, result=result, **extra)

	def emit_error(self, domain: str, error: BaseException | str, *, category: Optional[str] = None, **extra: Any) -> Event:
		if category is None:
			category = getattr(error, "category", "error")
		message = getattr(error, "message", None) or str(error)
		return self.publish(OPERATION_ERROR, domain=domain, error=message, category=category, **extra)

	# -- scan / autorenewal events -----------------------------------------

	def emit_scan_progress(self, processed: int, total: int) -> Event:
		percentage = round(processed * 100 / total) if total else 100
		return self.publish(SCAN_PROGRESS, processed=processed, total=total, percentage=percentage)

	def emit_scan_complete(self, stats: dict[str, Any]) -> Event:
		return self.publish(SCAN_COMPLETE, stats=stats)

	def emit_autorenewal_started(self, **extra: Any) -> Event:
		return self.publish(AUTORENEWAL_STARTED, **extra)

	def emit_autorenewal_completed(self, summary: dict[str, Any]) -> Event:
		return self.publish(AUTORENEWAL_COMPLETED, **summary)
