#!/usr/bin/env python3
#
# certwarden/certs/lock.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""System-wide serialization of issuance tool runs.

Only one tool invocation may execute at a time. Besides its own in-memory
lease the manager also honours the tool's lock files and live processes
started outside this service, and clears lock files left behind by a
crashed run (lock file present, no process).
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from .errors import AlreadyRunningError, OperationTimeoutError, StaleLockError
from .tool import ToolAdapter
from ..utils.time import utcnow

_log = logging.getLogger(__name__)

__all__ = ["LockState", "LockLease", "ProcessLockManager"]

# Re-check interval while an external tool process blocks the lock
_POLL_INTERVAL = 2.0


class LockState(str, Enum):
	FREE = "free"
	HELD = "held"


@dataclass(frozen=True)
class LockLease:
	token: int
	owner: str
	acquired_at: datetime
	acquired_monotonic: float


class ProcessLockManager:
	"""Free -> Held -> Free state machine around the issuance tool."""

	def __init__(
		self,
		tool: ToolAdapter,
		*,
		poll_interval: float = _POLL_INTERVAL,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self._tool = tool
		self._poll_interval = poll_interval
		self._clock = clock
		self._cond = asyncio.Condition()
		self._lease: Optional[LockLease] = None
		self._generation = 0
		self._waiters = 0

	# -- state -------------------------------------------------------------

	@property
	def state(self) -> LockState:
		return LockState.HELD if self._lease is not None else LockState.FREE

	@property
	def lease(self) -> Optional[LockLease]:
		return self._lease

	async def is_running(self) -> bool:
		"""Side-effect-free probe: is a tool process alive right now?"""
		return await self._tool.is_running()

	async def has_stale_artifacts(self) -> bool:
		artifacts = await asyncio.to_thread(self._tool.lock_artifacts)
		if not artifacts:
			return False
		return not await self._tool.is_running()

	def status(self) -> dict[str, Any]:
		lease = self._lease
		return {
			"state": self.state.value,
			"holder": lease.owner if lease else None,
			"acquired_at": lease.acquired_at.isoformat() if lease else None,
			"held_seconds": round(self._clock() - lease.acquired_monotonic, 3) if lease else None,
			"waiters": self._waiters,
			"generation": self._generation,
		}

	# -- internals (caller holds self._cond) -------------------------------

	def _grant(self, owner: str) -> LockLease:
		self._generation += 1
		self._lease = LockLease(
			token=self._generation,
			owner=owner,
			acquired_at=utcnow(),
			acquired_monotonic=self._clock(),
		)
		_log.info("LOCK_ACQUIRED owner=%s token=%d", owner, self._generation)
		return self._lease

	async def _clear_stale(self) -> list[str]:
		"""Remove tool lock files when no tool process is alive."""
		artifacts = await asyncio.to_thread(self._tool.lock_artifacts)
		if not artifacts:
			return []
		if await self._tool.is_running():
			return []
		try:
			removed = await asyncio.to_thread(self._tool.remove_lock_artifacts)
		except OSError as exc:
			raise StaleLockError(
				f"Stale certbot lock file cannot be removed: {exc}",
				remediation="Delete the .certbot.lock files in the certbot config/work/logs directories manually.",
				details={"artifacts": [str(p) for p in artifacts]},
			) from exc
		_log.warning("LOCK_STALE cleared %d orphaned tool lock file(s): %s", len(removed), [str(p) for p in removed])
		return [str(p) for p in removed]

	# -- acquisition -------------------------------------------------------

	async def acquire(self, owner: str) -> LockLease:
		"""Take the lock without waiting.

		Raises:
			AlreadyRunningError: lock held, or a live tool process exists
		"""
		async with self._cond:
			if self._lease is not None:
				raise AlreadyRunningError(
					f"Certificate tool is busy (held by {self._lease.owner})",
					details={"holder": self._lease.owner},
				)
			await self._clear_stale()
			if await self._tool.is_running():
				raise AlreadyRunningError("A certbot process is already running on this host")
			return self._grant(owner)

	async def _acquire_waiting(self, owner: str, wait_timeout: Optional[float]) -> LockLease:
		deadline = None if wait_timeout is None else self._clock() + wait_timeout
		async with self._cond:
			self._waiters += 1
			try:
				logged = False
				while True:
					if self._lease is None:
						await self._clear_stale()
						if not await self._tool.is_running():
							return self._grant(owner)
						if not logged:
							_log.info("LOCK_WAIT owner=%s external certbot process running", owner)
							logged = True
					elif not logged:
						_log.info("LOCK_WAIT owner=%s holder=%s", owner, self._lease.owner)
						logged = True

					wait_for = self._poll_interval
					if deadline is not None:
						remaining = deadline - self._clock()
						if remaining <= 0:
							raise OperationTimeoutError(
								f"Timed out after {wait_timeout:.0f}s waiting for the certificate tool",
								details={"owner": owner},
							)
						wait_for = min(wait_for, remaining)
					try:
						await asyncio.wait_for(self._cond.wait(), timeout=wait_for)
					except asyncio.TimeoutError:
						pass
			finally:
				self._waiters -= 1

	@asynccontextmanager
	async def hold(self, owner: str, *, wait_timeout: Optional[float] = None) -> AsyncIterator[LockLease]:
		"""Wait for the lock, hold it for the block, always release."""
		lease = await self._acquire_waiting(owner, wait_timeout)
		try:
			yield lease
		finally:
			await self.release(lease.token)

	async def release(self, token: int) -> bool:
		"""Release a lease. A token that is no longer current is ignored."""
		async with self._cond:
			if self._lease is None or self._lease.token != token:
				_log.warning("LOCK_RELEASE_STALE token=%d ignored (current=%s)", token, self._lease.token if self._lease else None)
				return False
			_log.info("LOCK_RELEASED owner=%s token=%d", self._lease.owner, token)
			self._lease = None
			self._cond.notify_all()
			return True

	# -- recovery ----------------------------------------------------------

	async def force_cleanup(self, *, require_idle: bool = True) -> dict[str, Any]:
		"""Reset to Free and remove orphaned tool lock files.

		With ``require_idle`` the call refuses while a tool process lives.
		Without it the in-memory lease is dropped regardless; lock files
		are only removed when no process is alive.

		Raises:
			AlreadyRunningError: ``require_idle`` and a tool process is alive
		"""
		async with self._cond:
			running = await self._tool.is_running()
			if running and require_idle:
				raise AlreadyRunningError(
					"Refusing cleanup: a certbot process is still running",
					remediation="Wait for the running certbot to finish or terminate it manually, then retry.",
				)
			previous = self._lease
			self._lease = None
			self._generation += 1
			removed: list[str] = []
			if not running:
				removed = [str(p) for p in await asyncio.to_thread(self._tool.remove_lock_artifacts)]
			self._cond.notify_all()

		report = {
			"previous_holder": previous.owner if previous else None,
			"process_running": running,
			"artifacts_removed": removed,
			"state": LockState.FREE.value,
		}
		_log.warning(
			"LOCK_FORCE_CLEANUP previous=%s running=%s removed=%d",
			report["previous_holder"], running, len(removed),
		)
		return report
