#!/usr/bin/env python3
#
# certwarden/utils/process.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Subprocess and process-table helpers."""

from __future__ import annotations

import asyncio
import contextlib
import logging

_log = logging.getLogger(__name__)

# Exec timeout for short probe commands
EXEC_TIMEOUT = 5  # seconds


async def run_exec(*cmd: str, timeout: float = EXEC_TIMEOUT) -> tuple[int, str, str]:
	"""Run a command and return (code, stdout, stderr). Uses exec, not shell.

	Failures to spawn and timeouts are reported as code -1 so that probes
	never raise into the event loop.
	"""
	proc: asyncio.subprocess.Process | None = None
	try:
		proc = await asyncio.create_subprocess_exec(
			*cmd,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.PIPE,
		)
		stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
		code = proc.returncode
		assert code is not None, "returncode should be set after communicate()"
		return code, stdout.decode(errors="replace"), stderr.decode(errors="replace")
	except asyncio.TimeoutError:
		_log.warning("EXEC_TIMEOUT command timed out after %.1fs: %s", timeout, cmd)
		return -1, "", f"Command timed out after {timeout}s"
	except Exception as exc:
		_log.warning("EXEC_ERROR command failed: %s - %s", cmd, exc)
		return -1, "", str(exc)
	finally:
		if proc is not None and proc.returncode is None:
			with contextlib.suppress(Exception):
				proc.kill()
				await proc.wait()


async def kill_process(proc: asyncio.subprocess.Process, *, grace: float = 5.0) -> None:
	"""SIGTERM then SIGKILL a child process and reap it."""
	if proc.returncode is not None:
		return
	with contextlib.suppress(ProcessLookupError):
		proc.terminate()
	try:
		await asyncio.wait_for(proc.wait(), timeout=grace)
		return
	except asyncio.TimeoutError:
		pass
	with contextlib.suppress(ProcessLookupError):
		proc.kill()
	await proc.wait()
