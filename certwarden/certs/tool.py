#!/usr/bin/env python3
#
# certwarden/certs/tool.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Adapter around the certbot CLI.

All subprocess work for issuance goes through a ``ToolAdapter`` so the
orchestration logic can run against a fake in tests.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

from .errors import ConfigurationError, OperationTimeoutError
from .types import Method
from ..utils.process import kill_process, run_exec

_log = logging.getLogger(__name__)

__all__ = [
	"OutputCallback",
	"ToolResult",
	"ToolAdapter",
	"CertbotAdapter",
	"build_install_args",
	"build_renew_args",
	"build_renew_all_args",
]

# (stream, line) where stream is "stdout" or "stderr"
OutputCallback = Callable[[str, str], None]

_LOCK_FILE_NAME = ".certbot.lock"
_MAX_CAPTURE_BYTES = 256 * 1024


@dataclass(frozen=True)
class ToolResult:
	"""Outcome of one tool invocation."""
	args: tuple[str, ...]
	returncode: int
	stdout: str = ""
	stderr: str = ""
	duration: float = 0.0

	@property
	def ok(self) -> bool:
		return self.returncode == 0


class ToolAdapter(Protocol):
	"""Interface the orchestrator needs from the issuance tool."""

	async def invoke(
		self,
		args: Sequence[str],
		*,
		timeout: float,
		on_output: Optional[OutputCallback] = None,
	) -> ToolResult: ...

	async def is_running(self) -> bool: ...

	def lock_artifacts(self) -> list[Path]: ...

	def remove_lock_artifacts(self) -> list[Path]: ...


# ---------------------------------------------------------------------------
# Argument builders
# ---------------------------------------------------------------------------

def _domain_flags(domain: str, aliases: Sequence[str]) -> list[str]:
	flags = ["-d", domain]
	for alias in aliases:
		if alias and alias != domain:
			flags += ["-d", alias]
	return flags


def build_install_args(
	domain: str,
	email: str,
	method: Method,
	*,
	aliases: Sequence[str] = (),
	webroot: Optional[Path] = None,
	dns_hook: Optional[Path] = None,
) -> list[str]:
	"""certbot arguments for a first-time issuance."""
	args = ["certonly"]
	if method == "dns-challenge":
		if dns_hook is None:
			raise ConfigurationError(
				"DNS challenge hook is not configured",
				remediation="Set CERTWARDEN_DNS_HOOK to an executable auth/cleanup hook script.",
			)
		args += [
			"--manual",
			"--preferred-challenges=dns",
			"--manual-auth-hook", f"{dns_hook} auth",
			"--manual-cleanup-hook", f"{dns_hook} cleanup",
		]
	elif webroot is not None:
		args += ["--webroot", "-w", str(webroot)]
	else:
		args += ["--nginx"]
	args += _domain_flags(domain, aliases)
	args += [
		"--email", email,
		"--agree-tos",
		"--no-eff-email",
		"--non-interactive",
	]
	return args


def build_renew_args(domain: str) -> list[str]:
	return ["renew", "--cert-name", domain, "--non-interactive"]


def build_renew_all_args() -> list[str]:
	return ["renew", "--non-interactive"]


# ---------------------------------------------------------------------------
# certbot subprocess adapter
# ---------------------------------------------------------------------------

@dataclass
class CertbotAdapter:
	"""Runs certbot as a child process and inspects its lock files."""
	binary: str = "certbot"
	config_dir: Path = Path("/etc/letsencrypt")
	work_dir: Path = Path("/var/lib/letsencrypt")
	logs_dir: Path = Path("/var/log/letsencrypt")
	extra_env: dict[str, str] = field(default_factory=dict)

	async def invoke(
		self,
		args: Sequence[str],
		*,
		timeout: float,
		on_output: Optional[OutputCallback] = None,
	) -> ToolResult:
		"""Run certbot, streaming output lines to ``on_output``.

		Raises:
			ConfigurationError: certbot binary is not installed
			OperationTimeoutError: the run exceeded ``timeout`` (process is killed)
		"""
		cmd = (self.binary, *args)
		started = time.monotonic()
		env = None
		if self.extra_env:
			env = {**os.environ, **self.extra_env}
		try:
			proc = await asyncio.create_subprocess_exec(
				*cmd,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
				env=env,
			)
		except FileNotFoundError as exc:
			raise ConfigurationError(
				f"certbot binary not found: {self.binary}",
				remediation="Install certbot (e.g. 'apt install certbot python3-certbot-nginx') or set CERTWARDEN_CERTBOT_BIN.",
			) from exc

		_log.info("CERTBOT_EXEC pid=%s args=%s", proc.pid, " ".join(args))
		stdout_lines: list[str] = []
		stderr_lines: list[str] = []

		async def _pump(stream: Optional[asyncio.StreamReader], name: str, sink: list[str]) -> None:
			if stream is None:
				return
			size = 0
			while True:
				raw = await stream.readline()
				if not raw:
					break
				line = raw.decode("utf-8", errors="replace").rstrip()
				size += len(raw)
				if size <= _MAX_CAPTURE_BYTES:
					sink.append(line)
				if line and on_output is not None:
					on_output(name, line)

		pumps = asyncio.gather(
			_pump(proc.stdout, "stdout", stdout_lines),
			_pump(proc.stderr, "stderr", stderr_lines),
		)
		try:
			await asyncio.wait_for(asyncio.shield(pumps), timeout=timeout)
			returncode = await asyncio.wait_for(proc.wait(), timeout=max(1.0, timeout - (time.monotonic() - started)))
		except asyncio.TimeoutError:
			_log.error("CERTBOT_TIMEOUT pid=%s after %.0fs, killing", proc.pid, timeout)
			await kill_process(proc)
			pumps.cancel()
			await asyncio.gather(pumps, return_exceptions=True)
			raise OperationTimeoutError(
				f"certbot did not finish within {timeout:.0f}s",
				details={"args": list(args), "stderr": "\n".join(stderr_lines[-20:])},
			)
		except asyncio.CancelledError:
			await kill_process(proc)
			pumps.cancel()
			raise

		duration = time.monotonic() - started
		_log.info("CERTBOT_EXIT pid=%s code=%s duration=%.1fs", proc.pid, returncode, duration)
		return ToolResult(
			args=tuple(args),
			returncode=returncode,
			stdout="\n".join(stdout_lines),
			stderr="\n".join(stderr_lines),
			duration=duration,
		)

	async def is_running(self) -> bool:
		"""Process-table probe for a live certbot; never modifies state."""
		code, stdout, _ = await run_exec("pgrep", "-x", Path(self.binary).name)
		if code == -1:
			_log.debug("CERTBOT_PROBE pgrep unavailable, assuming not running")
		return code == 0 and bool(stdout.strip())

	def lock_artifacts(self) -> list[Path]:
		"""Existing certbot lock files across its config/work/logs dirs."""
		candidates = [d / _LOCK_FILE_NAME for d in (self.config_dir, self.work_dir, self.logs_dir)]
		return [p for p in candidates if p.exists()]

	def remove_lock_artifacts(self) -> list[Path]:
		removed: list[Path] = []
		for path in self.lock_artifacts():
			try:
				path.unlink()
				removed.append(path)
				_log.warning("CERTBOT_LOCK removed stale lock file %s", path)
			except FileNotFoundError:
				continue
		return removed
