#!/usr/bin/env python3
#
# certwarden/utils/scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lightweight async background scheduler for periodic tasks."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypedDict

_log = logging.getLogger(__name__)

__all__ = ["Scheduler", "JobStatus"]

# Minimum allowed interval to prevent CPU-pinning tight loops
_MIN_INTERVAL = 1.0
_MAX_BACKOFF = 300.0


class JobStatus(TypedDict):
	"""Status information for a scheduled job."""
	name: str
	interval_seconds: float
	last_success: str | None
	last_attempt: str | None
	is_running: bool
	run_count: int
	fail_count: int


@dataclass
class _Job:
	name: str
	interval_seconds: float
	func: Callable[[], Awaitable[None]]
	run_on_start: bool = False
	initial_delay: float = 0.0
	timeout: float | None = None
	jitter_pct: float = 0.0
	last_success: datetime | None = None
	last_attempt: datetime | None = None
	run_count: int = 0
	fail_count: int = 0

	def next_interval(self) -> float:
		"""Interval to the next slot, spread by +/- jitter_pct."""
		if self.jitter_pct <= 0:
			return self.interval_seconds
		spread = self.interval_seconds * self.jitter_pct
		return max(_MIN_INTERVAL, self.interval_seconds + random.uniform(-spread, spread))


class Scheduler:
	"""Simple async scheduler that runs jobs at fixed intervals.

	Usage::

		scheduler = Scheduler()
		scheduler.add("autorenewal-check", 86400, run_check, run_on_start=True)

		# In lifespan:
		await scheduler.start()
		await scheduler.stop_graceful()

	Jobs keep their counters across stop/start and across ``reschedule()``.
	"""

	def __init__(self) -> None:
		self._jobs: dict[str, _Job] = {}
		self._tasks: dict[str, asyncio.Task] = {}
		self._stop_event: asyncio.Event | None = None
		self._started = False

	@property
	def started(self) -> bool:
		return self._started

	def add(
		self,
		name: str,
		interval_seconds: float,
		func: Callable[[], Awaitable[None]],
		*,
		run_on_start: bool = False,
		initial_delay: float = 0.0,
		timeout: float | None = None,
		jitter_pct: float = 0.0,
	) -> None:
		"""Register a periodic job.

		Args:
			name: Unique identifier for the job
			interval_seconds: Seconds between executions (minimum 1.0)
			func: Async callable to execute
			run_on_start: Execute once on start (after initial_delay)
			initial_delay: Seconds to wait before first execution (requires run_on_start=True)
			timeout: Per-execution timeout in seconds (None = no limit)
			jitter_pct: Random spread applied to every interval, 0.1 = +/-10%

		Raises:
			RuntimeError: If scheduler is already running
			ValueError: If name is duplicate or an argument is out of range
		"""
		if self._started:
			raise RuntimeError(f"Cannot add job {name!r} while scheduler is running")
		if name in self._jobs:
			raise ValueError(f"Job {name!r} is already registered")
		self._check_interval(interval_seconds)
		if initial_delay < 0:
			raise ValueError(f"initial_delay must be >= 0, got {initial_delay}")
		if initial_delay > 0 and not run_on_start:
			raise ValueError("initial_delay requires run_on_start=True")
		if not 0.0 <= jitter_pct < 1.0:
			raise ValueError(f"jitter_pct must be in [0, 1), got {jitter_pct}")

		self._jobs[name] = _Job(
			name=name,
			interval_seconds=interval_seconds,
			func=func,
			run_on_start=run_on_start,
			initial_delay=initial_delay,
			timeout=timeout,
			jitter_pct=jitter_pct,
		)

	@staticmethod
	def _check_interval(interval_seconds: float) -> None:
		if interval_seconds < _MIN_INTERVAL:
			raise ValueError(
				f"interval_seconds must be >= {_MIN_INTERVAL}, got {interval_seconds}"
			)

	def reschedule(self, name: str, interval_seconds: float) -> None:
		"""Change a job's interval, restarting its loop when the scheduler runs.

		The next execution happens one full new interval from now.

		Raises:
			KeyError: If job does not exist
			ValueError: If the interval is below the minimum
		"""
		job = self._jobs.get(name)
		if job is None:
			raise KeyError(f"Job {name!r} not found")
		self._check_interval(interval_seconds)
		if job.interval_seconds == interval_seconds:
			return
		job.interval_seconds = interval_seconds
		_log.info("SCHEDULER job=%s rescheduled interval=%ds", name, interval_seconds)

		if not self._started:
			return
		task = self._tasks.get(name)
		if task is not None and not task.done():
			task.cancel()
		self._tasks[name] = asyncio.create_task(self._run_loop(job, first_run=False))

	async def start(self) -> None:
		"""Start all registered jobs as background tasks."""
		if self._started:
			return

		self._started = True
		self._stop_event = asyncio.Event()

		for job in self._jobs.values():
			self._tasks[job.name] = asyncio.create_task(self._run_loop(job, first_run=job.run_on_start))
			_log.info("SCHEDULER job=%s interval=%ds started", job.name, job.interval_seconds)

	async def stop_graceful(self, timeout: float = 5.0) -> None:
		"""Gracefully stop all jobs, waiting up to timeout for clean exit.

		Tasks still running after ``timeout`` are cancelled and awaited.
		"""
		if not self._started:
			return

		self._started = False
		if self._stop_event is not None:
			self._stop_event.set()

		pending = [t for t in self._tasks.values() if not t.done()]
		if pending:
			_log.info("SCHEDULER waiting for %d tasks to finish gracefully", len(pending))
			_, not_done = await asyncio.wait(pending, timeout=timeout)
			if not_done:
				_log.warning("SCHEDULER %d tasks did not stop gracefully, forcing cancel", len(not_done))
				for task in not_done:
					task.cancel()
				await asyncio.gather(*not_done, return_exceptions=True)

		self._tasks.clear()
		_log.info("SCHEDULER stopped")

	async def _sleep(self, delay: float) -> bool:
		"""Wait ``delay`` seconds; return False when stop was signalled."""
		assert self._stop_event is not None
		try:
			await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, delay))
			return False
		except asyncio.TimeoutError:
			return self._started and not self._stop_event.is_set()

	async def _run_loop(self, job: _Job, *, first_run: bool) -> None:
		"""Execute a job at its interval with exponential backoff on failure."""
		assert self._stop_event is not None, "Bug: _run_loop called without start()"
		loop = asyncio.get_running_loop()
		consecutive_failures = 0

		try:
			if first_run:
				if job.initial_delay > 0:
					_log.debug("SCHEDULER job=%s waiting %.1fs before first run", job.name, job.initial_delay)
				if not await self._sleep(job.initial_delay):
					return
				delay = job.next_interval()
				if not await self._execute(job):
					consecutive_failures = 1
					delay = max(delay, self._backoff(job, consecutive_failures))
			else:
				delay = job.next_interval()

			next_run = loop.time() + delay
			while True:
				if not await self._sleep(next_run - loop.time()):
					break

				success = await self._execute(job)
				now = loop.time()

				if success:
					consecutive_failures = 0
					if next_run <= now:
						# Skip missed intervals instead of bursting after a long run
						skipped = int((now - next_run) / job.interval_seconds)
						if skipped > 0:
							_log.warning("SCHEDULER job=%s skipped %d intervals", job.name, skipped)
						next_run += skipped * job.interval_seconds
					next_run += job.next_interval()
				else:
					consecutive_failures += 1
					backoff_until = now + self._backoff(job, consecutive_failures)
					while next_run < backoff_until:
						next_run += job.interval_seconds

		except asyncio.CancelledError:
			_log.debug("SCHEDULER job=%s cancelled", job.name)
		except Exception:
			_log.exception("SCHEDULER job=%s fatal error in run loop", job.name)

	@staticmethod
	def _backoff(job: _Job, consecutive_failures: int) -> float:
		backoff = min(2.0 ** consecutive_failures, _MAX_BACKOFF)
		_log.error(
			"SCHEDULER job=%s failed (%d consecutive), backing off %.0fs",
			job.name, consecutive_failures, backoff,
		)
		return backoff

	async def _execute(self, job: _Job) -> bool:
		"""Execute a single job with error handling and optional timeout."""
		try:
			_log.debug("SCHEDULER job=%s executing", job.name)
			if job.timeout is not None:
				await asyncio.wait_for(job.func(), timeout=job.timeout)
			else:
				await job.func()

			now = datetime.now(timezone.utc)
			job.last_success = now
			job.last_attempt = now
			job.run_count += 1
			_log.info("SCHEDULER job=%s completed (run #%d)", job.name, job.run_count)
			return True
		except asyncio.TimeoutError:
			job.last_attempt = datetime.now(timezone.utc)
			job.fail_count += 1
			_log.error("SCHEDULER job=%s timed out after %.1fs (fail #%d)", job.name, job.timeout, job.fail_count)
			return False
		except Exception:
			job.last_attempt = datetime.now(timezone.utc)
			job.fail_count += 1
			_log.exception("SCHEDULER job=%s failed (fail #%d)", job.name, job.fail_count)
			return False

	def get_status(self) -> list[JobStatus]:
		"""Return status of all jobs (for monitoring/API)."""
		return [
			{
				"name": job.name,
				"interval_seconds": job.interval_seconds,
				"last_success": job.last_success.isoformat() if job.last_success else None,
				"last_attempt": job.last_attempt.isoformat() if job.last_attempt else None,
				"is_running": job.name in self._tasks and not self._tasks[job.name].done(),
				"run_count": job.run_count,
				"fail_count": job.fail_count,
			}
			for job in self._jobs.values()
		]
