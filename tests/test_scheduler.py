#!/usr/bin/env python3
#
# tests/test_scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Background job scheduler."""

from __future__ import annotations

import asyncio

import pytest

from certwarden.utils.scheduler import Scheduler


async def _noop() -> None:
	return None


class TestRegistration:

	def test_duplicate_name_rejected(self):
		scheduler = Scheduler()
		scheduler.add("job", 60, _noop)
		with pytest.raises(ValueError):
			scheduler.add("job", 60, _noop)

	def test_interval_floor(self):
		with pytest.raises(ValueError):
			Scheduler().add("job", 0.5, _noop)

	def test_initial_delay_requires_run_on_start(self):
		with pytest.raises(ValueError):
			Scheduler().add("job", 60, _noop, initial_delay=5)

	def test_reschedule_unknown_job(self):
		with pytest.raises(KeyError):
			Scheduler().reschedule("missing", 60)

	def test_reschedule_updates_status(self):
		scheduler = Scheduler()
		scheduler.add("autorenewal-check", 86400, _noop)
		scheduler.reschedule("autorenewal-check", 3600)
		[status] = scheduler.get_status()
		assert status["interval_seconds"] == 3600
		assert status["is_running"] is False


class TestExecution:

	@pytest.mark.asyncio
	async def test_run_on_start_and_counters(self):
		ran = asyncio.Event()

		async def _job() -> None:
			ran.set()

		scheduler = Scheduler()
		scheduler.add("scan", 3600, _job, run_on_start=True)
		await scheduler.start()
		await asyncio.wait_for(ran.wait(), timeout=2)
		await asyncio.sleep(0)

		[status] = scheduler.get_status()
		assert status["run_count"] == 1
		assert status["is_running"] is True
		await scheduler.stop_graceful(timeout=1)
		assert scheduler.get_status()[0]["is_running"] is False

	@pytest.mark.asyncio
	async def test_failure_is_counted(self):
		failed = asyncio.Event()

		async def _job() -> None:
			failed.set()
			raise RuntimeError("boom")

		scheduler = Scheduler()
		scheduler.add("watchdog", 3600, _job, run_on_start=True)
		await scheduler.start()
		await asyncio.wait_for(failed.wait(), timeout=2)
		await asyncio.sleep(0)

		assert scheduler.get_status()[0]["fail_count"] == 1
		await scheduler.stop_graceful(timeout=1)

	@pytest.mark.asyncio
	async def test_reschedule_while_running_restarts_loop(self):
		scheduler = Scheduler()
		scheduler.add("autorenewal-check", 86400, _noop)
		await scheduler.start()
		scheduler.reschedule("autorenewal-check", 3600)
		assert scheduler.get_status()[0]["is_running"] is True
		await scheduler.stop_graceful(timeout=1)
