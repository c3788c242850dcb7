#!/usr/bin/env python3
#
# certwarden/certs/orchestrator.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate operation orchestrator.

Owns the operation queue, the tool lock, the status cache and the event
broadcaster, and exposes the install / renew / scan command set on top.

Every issuance follows the same sequence::

	validate -> queue.begin -> emit start -> lock.hold -> tool.invoke
	  -> settle -> forced refresh -> emit complete -> queue.end

Same-domain requests are rejected by the queue; different domains wait for
the lock one after the other.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from pydantic import EmailStr, TypeAdapter, ValidationError

from .activity import ActivityLog
from .autorenewal import AutorenewalConfigStore, AutorenewalScheduler
from .cache import StatusCache
from .dns_provider import DnsProvider
from .errors import CertError, ConfigurationError, OperationTimeoutError, ToolError, ToolExecutionError
from .events import LOCK_CLEANUP, AUTORENEWAL_TOGGLED, ProgressBroadcaster
from .lock import LockState, ProcessLockManager
from .operations import OperationQueue
from .scanner import BatchScanner, ScanResult
from .store import CertificateStore
from .tool import (
	CertbotAdapter,
	ToolAdapter,
	build_install_args,
	build_renew_all_args,
	build_renew_args,
)
from .types import (
	METHODS,
	RENEW_ALL_KEY,
	Certificate,
	Domain,
	Method,
	OperationKind,
	OperationRecord,
	Trigger,
	is_valid_domain,
)
from .vhosts import VirtualHostRegistry
from ..utils.config import Config

_log = logging.getLogger(__name__)

__all__ = ["OrchestratorSettings", "CertificateOrchestrator"]

_EMAIL = TypeAdapter(EmailStr)


@dataclass(frozen=True)
class OrchestratorSettings:
	webroot_timeout: float = 300.0
	dns_timeout: float = 900.0
	operation_grace: float = 120.0
	settle_delay: float = 2.0
	# Longest wait for the tool lock; None waits as long as the queue ahead needs
	queue_wait_limit: Optional[float] = 1800.0

	def tool_timeout(self, kind: OperationKind, method: Optional[Method]) -> float:
		if kind == "renew_all" or method == "dns-challenge":
			return self.dns_timeout
		return self.webroot_timeout

	def max_duration(self, record: OperationRecord) -> float:
		return self.tool_timeout(record.kind, record.method) + self.operation_grace


def _validate_domain(domain: str) -> str:
	domain = (domain or "").strip().lower().rstrip(".")
	if not is_valid_domain(domain):
		raise ValueError(f"Invalid domain name: {domain!r}")
	return domain


def _validate_email(email: str) -> str:
	try:
		return _EMAIL.validate_python((email or "").strip())
	except ValidationError as exc:
		raise ValueError(f"Invalid contact email: {email!r}") from exc


class CertificateOrchestrator:
	"""Single owner of all mutable lifecycle state."""

	def __init__(
		self,
		*,
		tool: ToolAdapter,
		store: CertificateStore,
		registry: VirtualHostRegistry,
		autorenewal_store: AutorenewalConfigStore,
		dns: DnsProvider,
		broadcaster: Optional[ProgressBroadcaster] = None,
		activity: Optional[ActivityLog] = None,
		settings: OrchestratorSettings = OrchestratorSettings(),
		cache_ttl: float = 300.0,
		scan_batch_size: int = 25,
		scan_pacing: float = 0.05,
		scan_progress_every: int = 100,
		queue: Optional[OperationQueue] = None,
		cache: Optional[StatusCache] = None,
		lock: Optional[ProcessLockManager] = None,
	) -> None:
		self._tool = tool
		self._store = store
		self._registry = registry
		self._autorenewal_store = autorenewal_store
		self._dns = dns
		self._settings = settings
		self._activity = activity
		self.broadcaster = broadcaster or ProgressBroadcaster()
		self.queue = queue or OperationQueue()
		self.lock = lock or ProcessLockManager(tool)
		self.cache = cache or StatusCache(store.read, ttl=cache_ttl)
		self.scanner = BatchScanner(
			self.cache,
			self.broadcaster,
			batch_size=scan_batch_size,
			pacing=scan_pacing,
			progress_every=scan_progress_every,
		)
		self.autorenewal = AutorenewalScheduler(
			autorenewal_store,
			self.cache,
			self._renew_for_sweep,
			self.broadcaster,
			activity,
		)

	@classmethod
	def from_config(cls, cfg: Config) -> "CertificateOrchestrator":
		tool = CertbotAdapter(
			binary=cfg.certbot_bin,
			config_dir=cfg.certbot_config_dir,
			work_dir=cfg.certbot_work_dir,
			logs_dir=cfg.certbot_logs_dir,
		)
		lock = ProcessLockManager(tool)
		registry = VirtualHostRegistry(cfg.sites_available, cfg.sites_enabled)
		store = CertificateStore(
			live_dir=cfg.live_dir,
			acme_sh_home=cfg.acme_sh_home,
			registry=registry,
			tool=tool,
			lock=lock,
		)
		return cls(
			tool=tool,
			store=store,
			registry=registry,
			autorenewal_store=AutorenewalConfigStore(cfg.autorenewal_path),
			dns=DnsProvider(cfg.dns_credentials, cfg.dns_hook),
			activity=ActivityLog(cfg.activity_log_path),
			settings=OrchestratorSettings(
				webroot_timeout=cfg.webroot_timeout,
				dns_timeout=cfg.dns_timeout,
				operation_grace=cfg.operation_grace,
				settle_delay=cfg.settle_delay,
				queue_wait_limit=cfg.queue_wait_limit,
			),
			cache_ttl=cfg.cache_ttl,
			scan_batch_size=cfg.scan_batch_size,
			scan_pacing=cfg.scan_pacing,
			scan_progress_every=cfg.scan_progress_every,
			lock=lock,
		)

	@property
	def settings(self) -> OrchestratorSettings:
		return self._settings

	@property
	def dns(self) -> DnsProvider:
		return self._dns

	@property
	def autorenewal_store(self) -> AutorenewalConfigStore:
		return self._autorenewal_store

	@property
	def activity(self) -> Optional[ActivityLog]:
		return self._activity

	# ------------------------------------------------------------------
	# Domain discovery
	# ------------------------------------------------------------------

	async def list_vhosts(self) -> list[Domain]:
		return await asyncio.to_thread(self._registry.scan)

	async def known_domains(self) -> list[str]:
		"""Vhost names plus every domain with autorenewal settings."""
		names = {d.name for d in await self.list_vhosts()}
		config = await self._autorenewal_store.load()
		names.update(config.domains)
		return sorted(names)

	# ------------------------------------------------------------------
	# Core operation sequence
	# ------------------------------------------------------------------

	def _on_output(self, domain: str, op_id: str) -> Any:
		def _forward(stream: str, line: str) -> None:
			if not self.queue.owns(domain, op_id):
				return
			stage = "progress" if stream == "stdout" else "warning"
			self.broadcaster.emit(domain, stage, line, op_id=op_id)
		return _forward

	async def _run_operation(
		self,
		domain: str,
		kind: OperationKind,
		method: Optional[Method],
		args: Sequence[str],
		*,
		trigger: Trigger,
		verify_certificate: bool,
	) -> dict[str, Any]:
		record = self.queue.begin(domain, kind, method, trigger=trigger)
		op_id = record.op_id
		timeout = self._settings.tool_timeout(kind, method)
		self.broadcaster.emit_start(domain, kind, method, op_id=op_id, trigger=trigger)
		_log.info("OPERATION_START domain=%s kind=%s method=%s trigger=%s op=%s", domain, kind, method, trigger, op_id[:8])

		try:
			if self.lock.state is LockState.HELD:
				self.broadcaster.emit(domain, "queued", "Waiting for the certificate tool to become free", op_id=op_id)

			async with self.lock.hold(f"{kind}:{domain}", wait_timeout=self._settings.queue_wait_limit):
				if not self.queue.mark_running(domain, op_id):
					raise OperationTimeoutError(
						f"Operation for {domain} was cleared before the tool started",
						details={"op_id": op_id},
					)
				self.broadcaster.emit(domain, "running", f"Running certbot {args[0]}", op_id=op_id)
				result = await self._tool.invoke(args, timeout=timeout, on_output=self._on_output(domain, op_id))

			if not result.ok:
				raise ToolExecutionError(
					f"certbot {args[0]} failed for {domain} (exit code {result.returncode})",
					returncode=result.returncode,
					stdout=result.stdout,
					stderr=result.stderr,
				)

			payload: dict[str, Any] = {
				"op_id": op_id,
				"domain": domain,
				"kind": kind,
				"method": method,
				"trigger": trigger,
				"duration": round(result.duration, 3),
			}

			# Certificate files can lag behind certbot's exit
			if self._settings.settle_delay > 0:
				self.broadcaster.emit(domain, "verifying", "Waiting for certificate files to settle", op_id=op_id)
				await asyncio.sleep(self._settings.settle_delay)

			self._store.invalidate()
			if kind == "renew_all":
				self.cache.invalidate_all()
			else:
				self.cache.invalidate(domain)
				cert = await self.cache.get(domain, force_refresh=True)
				if verify_certificate and not cert.has_certificate:
					raise ToolError(
						f"certbot reported success but no certificate was found for {domain}",
						details={"stdout": result.stdout[-2000:]},
					)
				payload["certificate"] = cert.to_dict()

			if self.queue.owns(domain, op_id):
				self.broadcaster.emit_complete(domain, payload, op_id=op_id)
				_log.info("OPERATION_COMPLETE domain=%s kind=%s op=%s duration=%.1fs", domain, kind, op_id[:8], result.duration)
			else:
				_log.warning("OPERATION_STALE_COMPLETE domain=%s op=%s ignored (record cleared by watchdog)", domain, op_id[:8])
			return payload

		except CertError as exc:
			if self.queue.owns(domain, op_id):
				self.broadcaster.emit_error(domain, exc, op_id=op_id)
			else:
				_log.warning("OPERATION_STALE_ERROR domain=%s op=%s ignored: %s", domain, op_id[:8], exc.message)
			_log.error("OPERATION_FAILED domain=%s kind=%s category=%s: %s", domain, kind, exc.category, exc.message)
			raise
		finally:
			self.queue.end(domain, op_id)

	# ------------------------------------------------------------------
	# Commands
	# ------------------------------------------------------------------

	def _require_dns(self, domain: str, kind: OperationKind) -> None:
		"""DNS credentials check, reported as an operation error when it fails.

		Runs before any queue record exists, so the failure is emitted here
		instead of by _run_operation.
		"""
		try:
			self._dns.require_ready()
		except ConfigurationError as exc:
			_log.error("OPERATION_REJECTED domain=%s kind=%s category=%s: %s", domain, kind, exc.category, exc.message)
			self.broadcaster.emit_error(domain, exc, kind=kind)
			raise

	async def install(
		self,
		domain: str,
		email: str,
		method: Method = "webroot",
		*,
		trigger: Trigger = "manual",
	) -> dict[str, Any]:
		"""Issue a certificate for ``domain`` with the given challenge method."""
		domain = _validate_domain(domain)
		email = _validate_email(email)
		if method not in METHODS:
			raise ValueError(f"Unsupported method: {method!r}")

		vhost = await asyncio.to_thread(self._registry.find, domain)
		aliases = tuple(a for a in vhost.aliases if is_valid_domain(a)) if vhost else ()
		if method == "dns-challenge":
			self._require_dns(domain, "install")
			args = build_install_args(domain, email, method, aliases=aliases, dns_hook=self._dns.hook)
		else:
			webroot = vhost.document_root if vhost else None
			args = build_install_args(domain, email, method, aliases=aliases, webroot=webroot)

		payload = await self._run_operation(domain, "install", method, args, trigger=trigger, verify_certificate=True)
		await self._autorenewal_store.record_method(domain, method)
		return payload

	async def renew(
		self,
		domain: str,
		*,
		method: Optional[Method] = None,
		trigger: Trigger = "manual",
	) -> dict[str, Any]:
		"""Renew one certificate, reusing the method it was issued with."""
		domain = _validate_domain(domain)
		if method is None:
			config = await self._autorenewal_store.load()
			settings = config.domains.get(domain)
			method = settings.method if settings else "webroot"
		if method == "dns-challenge":
			self._require_dns(domain, "renew")
		return await self._run_operation(
			domain, "renew", method, build_renew_args(domain),
			trigger=trigger, verify_certificate=True,
		)

	async def _renew_for_sweep(self, domain: str, method: Method) -> dict[str, Any]:
		return await self.renew(domain, method=method, trigger="autorenewal")

	async def renew_all(self, *, trigger: Trigger = "manual") -> dict[str, Any]:
		"""``certbot renew`` for every managed certificate."""
		return await self._run_operation(
			RENEW_ALL_KEY, "renew_all", None, build_renew_all_args(),
			trigger=trigger, verify_certificate=False,
		)

	async def refresh_status(self, domain: str, force_refresh: bool = False) -> Certificate:
		domain = _validate_domain(domain)
		return await self.cache.get(domain, force_refresh=force_refresh)

	async def scan_all(self, force_refresh: bool = False, domains: Optional[Sequence[str]] = None) -> ScanResult:
		if domains is None:
			domains = await self.known_domains()
		return await self.scanner.scan_all(domains, force_refresh=force_refresh)

	async def set_autorenewal(self, domain: str, enabled: bool, method: Optional[Method] = None) -> dict[str, Any]:
		domain = _validate_domain(domain)
		if method is not None and method not in METHODS:
			raise ValueError(f"Unsupported method: {method!r}")
		settings = await self._autorenewal_store.set_domain(domain, enabled, method)
		self.broadcaster.publish(AUTORENEWAL_TOGGLED, domain=domain, enabled=enabled)
		if self._activity is not None:
			await self._activity.record(domain, "settings", f"Autorenewal {'enabled' if enabled else 'disabled'}")
		return {"domain": domain, **settings.model_dump(mode="json")}

	async def run_autorenewal(self, trigger: str = "scheduled") -> dict[str, Any]:
		return await self.autorenewal.run_check(trigger)

	async def queue_status(self) -> dict[str, Any]:
		tool_running = await self.lock.is_running()
		return {
			"in_flight": self.queue.list_in_flight(),
			"lock": self.lock.status(),
			"tool_running": tool_running,
			"stale_lock": await self.lock.has_stale_artifacts(),
			"scan_running": self.scanner.running,
			"autorenewal_state": self.autorenewal.state.value,
		}

	async def force_cleanup(self) -> dict[str, Any]:
		"""Manual escape hatch: clear the tool lock when no certbot is alive.

		Raises:
			AlreadyRunningError: a certbot process is still running
		"""
		report = await self.lock.force_cleanup(require_idle=True)
		self.broadcaster.publish(LOCK_CLEANUP, trigger="manual", **report)
		return report

	async def watchdog_sweep(self) -> list[dict[str, Any]]:
		"""Force-end operations stuck past their maximum duration."""
		cleared: list[dict[str, Any]] = []
		stuck_run = False
		for record in self.queue.expired(self._settings.max_duration, self._settings.queue_wait_limit):
			if self.queue.end(record.domain, record.op_id) is None:
				continue
			if record.state == "running":
				stuck_run = True
				limit = self._settings.max_duration(record)
				message = f"Operation exceeded {limit:.0f}s and was cleared"
			else:
				# queued behind a tool run that never frees the lock
				limit = self._settings.queue_wait_limit or 0.0
				message = f"Operation waited more than {limit:.0f}s for the certificate tool and was cleared"
			_log.error(
				"WATCHDOG_STUCK domain=%s kind=%s state=%s op=%s exceeded %.0fs, clearing",
				record.domain, record.kind, record.state, record.op_id[:8], limit,
			)
			self.broadcaster.emit_error(record.domain, OperationTimeoutError(message), op_id=record.op_id)
			cleared.append({
				"domain": record.domain,
				"op_id": record.op_id,
				"kind": record.kind,
				"state": record.state,
				"limit": limit,
			})

		# Only a stuck run owns the lease; a cleared waiter never held it
		if stuck_run:
			report = await self.lock.force_cleanup(require_idle=False)
			self.broadcaster.publish(LOCK_CLEANUP, trigger="watchdog", **report)
		return cleared

	async def certificate_overview(self) -> list[dict[str, Any]]:
		"""Cached statuses (stale entries included) for every known domain."""
		entries = self.cache.snapshot(allow_stale=True)
		out: list[dict[str, Any]] = []
		for name in await self.known_domains():
			entry = entries.get(name)
			item: dict[str, Any] = {"domain": name, "cached": entry is not None}
			if entry is not None:
				item.update(entry.certificate.to_dict())
				item["captured_at"] = entry.captured_at.isoformat()
			out.append(item)
		return out
