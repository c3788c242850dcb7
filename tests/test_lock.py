#!/usr/bin/env python3
#
# tests/test_lock.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Process lock manager: exclusivity, waiting, stale lock recovery."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from certwarden.certs.errors import AlreadyRunningError, OperationTimeoutError, StaleLockError
from certwarden.certs.lock import LockState, ProcessLockManager

from fakes import FakeTool


class TestAcquire:

	@pytest.mark.asyncio
	async def test_acquire_and_release(self):
		lock = ProcessLockManager(FakeTool())
		lease = await lock.acquire("install:example.com")
		assert lock.state is LockState.HELD
		assert lock.status()["holder"] == "install:example.com"
		assert await lock.release(lease.token) is True
		assert lock.state is LockState.FREE

	@pytest.mark.asyncio
	async def test_second_acquire_is_rejected(self):
		lock = ProcessLockManager(FakeTool())
		await lock.acquire("a")
		with pytest.raises(AlreadyRunningError):
			await lock.acquire("b")

	@pytest.mark.asyncio
	async def test_live_external_process_blocks_acquire(self):
		tool = FakeTool()
		tool.process_running = True
		lock = ProcessLockManager(tool)
		with pytest.raises(AlreadyRunningError):
			await lock.acquire("a")
		assert lock.state is LockState.FREE

	@pytest.mark.asyncio
	async def test_stale_artifacts_are_cleared_on_acquire(self):
		tool = FakeTool()
		tool.artifacts = [Path("/etc/letsencrypt/.certbot.lock")]
		lock = ProcessLockManager(tool)
		await lock.acquire("a")
		assert tool.removed == [Path("/etc/letsencrypt/.certbot.lock")]

	@pytest.mark.asyncio
	async def test_unremovable_stale_artifact_raises_stale_lock(self):
		tool = FakeTool()
		tool.artifacts = [Path("/etc/letsencrypt/.certbot.lock")]

		def _denied():
			raise PermissionError("permission denied")

		tool.remove_lock_artifacts = _denied
		lock = ProcessLockManager(tool)
		with pytest.raises(StaleLockError) as exc_info:
			await lock.acquire("a")
		assert exc_info.value.remediation

	@pytest.mark.asyncio
	async def test_release_with_stale_token_is_ignored(self):
		lock = ProcessLockManager(FakeTool())
		old = await lock.acquire("a")
		await lock.force_cleanup(require_idle=False)
		new = await lock.acquire("b")
		assert await lock.release(old.token) is False
		assert lock.lease == new


class TestHold:

	@pytest.mark.asyncio
	async def test_waiters_run_one_at_a_time(self):
		lock = ProcessLockManager(FakeTool(), poll_interval=0.01)
		active = 0
		peak = 0
		order: list[str] = []

		async def _worker(name: str) -> None:
			nonlocal active, peak
			async with lock.hold(name):
				active += 1
				peak = max(peak, active)
				order.append(name)
				await asyncio.sleep(0.01)
				active -= 1

		await asyncio.gather(*(_worker(f"op-{i}") for i in range(4)))
		assert peak == 1
		assert sorted(order) == ["op-0", "op-1", "op-2", "op-3"]
		assert lock.state is LockState.FREE

	@pytest.mark.asyncio
	async def test_wait_timeout_raises(self):
		lock = ProcessLockManager(FakeTool(), poll_interval=0.01)
		await lock.acquire("holder")
		with pytest.raises(OperationTimeoutError):
			async with lock.hold("waiter", wait_timeout=0.05):
				pass
		assert lock.status()["waiters"] == 0

	@pytest.mark.asyncio
	async def test_hold_waits_for_external_process(self):
		tool = FakeTool()
		tool.process_running = True
		lock = ProcessLockManager(tool, poll_interval=0.01)

		async def _finish_external() -> None:
			await asyncio.sleep(0.05)
			tool.process_running = False

		finisher = asyncio.create_task(_finish_external())
		async with lock.hold("waiter", wait_timeout=2.0) as lease:
			assert lease.owner == "waiter"
		await finisher


class TestForceCleanup:

	@pytest.mark.asyncio
	async def test_refuses_while_process_alive(self):
		tool = FakeTool()
		lock = ProcessLockManager(tool)
		await lock.acquire("a")
		tool.process_running = True
		with pytest.raises(AlreadyRunningError):
			await lock.force_cleanup(require_idle=True)
		assert lock.state is LockState.HELD

	@pytest.mark.asyncio
	async def test_resets_state_and_removes_artifacts(self):
		tool = FakeTool()
		lock = ProcessLockManager(tool)
		await lock.acquire("stuck")
		tool.artifacts = [Path("/var/lib/letsencrypt/.certbot.lock")]

		report = await lock.force_cleanup()

		assert report["previous_holder"] == "stuck"
		assert report["artifacts_removed"] == ["/var/lib/letsencrypt/.certbot.lock"]
		assert report["state"] == "free"
		assert lock.state is LockState.FREE

	@pytest.mark.asyncio
	async def test_watchdog_mode_keeps_artifacts_of_live_process(self):
		tool = FakeTool()
		lock = ProcessLockManager(tool)
		await lock.acquire("stuck")
		tool.process_running = True
		tool.artifacts = [Path("/etc/letsencrypt/.certbot.lock")]

		report = await lock.force_cleanup(require_idle=False)

		assert lock.state is LockState.FREE
		assert report["process_running"] is True
		assert report["artifacts_removed"] == []
		assert tool.artifacts

	@pytest.mark.asyncio
	async def test_is_running_has_no_side_effects(self):
		tool = FakeTool()
		tool.artifacts = [Path("/etc/letsencrypt/.certbot.lock")]
		lock = ProcessLockManager(tool)
		assert await lock.is_running() is False
		assert await lock.has_stale_artifacts() is True
		assert tool.artifacts
