#!/usr/bin/env python3
#
# certwarden/certs/autorenewal.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Persisted autorenewal settings and the threshold sweep."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal, Optional, TypeVar

from pydantic import BaseModel, Field, ValidationError

from .activity import ActivityLog
from .cache import StatusCache
from .errors import CertError, ConflictError
from .events import ProgressBroadcaster
from .types import Method
from ..utils.fs import atomic_write_json
from ..utils.time import ensure_utc, utcnow

_log = logging.getLogger(__name__)

__all__ = [
	"CheckFrequency",
	"FREQUENCY_SECONDS",
	"DomainRenewalSettings",
	"RenewalStatistics",
	"AutorenewalConfig",
	"AutorenewalConfigStore",
	"SweepState",
	"AutorenewalScheduler",
]

T = TypeVar("T")

CheckFrequency = Literal["hourly", "twice-daily", "daily", "weekly"]

FREQUENCY_SECONDS: dict[str, float] = {
	"hourly": 3600.0,
	"twice-daily": 43200.0,
	"daily": 86400.0,
	"weekly": 604800.0,
}

DomainStatus = Literal["idle", "success", "failed", "deferred", "error"]


# ---------------------------------------------------------------------------
# Persisted document
# ---------------------------------------------------------------------------

class DomainRenewalSettings(BaseModel):
	"""Per-domain autorenewal override."""
	enabled: bool = False
	method: Method = "webroot"
	status: DomainStatus = "idle"
	last_renewal: Optional[datetime] = None
	last_success: Optional[datetime] = None
	last_failure: Optional[datetime] = None
	last_error: Optional[str] = None
	last_modified: Optional[datetime] = None


class RenewalStatistics(BaseModel):
	total_checks: int = 0
	total_renewals: int = 0
	successful_renewals: int = 0
	failed_renewals: int = 0
	last_run: Optional[datetime] = None
	last_renewal_date: Optional[datetime] = None


class AutorenewalConfig(BaseModel):
	global_enabled: bool = True
	renewal_days: int = Field(default=30, ge=1, le=89)
	check_frequency: CheckFrequency = "daily"
	retry_failed_after_hours: int = Field(default=24, ge=0, le=720)
	domains: dict[str, DomainRenewalSettings] = Field(default_factory=dict)
	statistics: RenewalStatistics = Field(default_factory=RenewalStatistics)

	def domain(self, name: str) -> DomainRenewalSettings:
		"""Settings for ``name``, created (disabled) when missing."""
		settings = self.domains.get(name)
		if settings is None:
			settings = self.domains[name] = DomainRenewalSettings()
		return settings


class AutorenewalConfigStore:
	"""Whole-document read-modify-write of the autorenewal JSON file.

	Updates are serialized by one lock and land via atomic replace, so a
	reader sees either the previous or the next document, never a mix.
	"""

	def __init__(self, path: Path) -> None:
		self._path = path
		self._lock = asyncio.Lock()

	@property
	def path(self) -> Path:
		return self._path

	def _read(self) -> AutorenewalConfig:
		if not self._path.exists():
			return AutorenewalConfig()
		try:
			raw = json.loads(self._path.read_text(encoding="utf-8"))
			return AutorenewalConfig.model_validate(raw)
		except (OSError, ValueError, ValidationError) as exc:
			backup = self._path.with_name(self._path.name + ".corrupt")
			_log.error("AUTORENEWAL_CONFIG unreadable (%s), moving to %s and using defaults", exc, backup)
			try:
				self._path.replace(backup)
			except OSError as move_exc:
				_log.error("AUTORENEWAL_CONFIG cannot move corrupt file: %s", move_exc)
			return AutorenewalConfig()

	def _write(self, config: AutorenewalConfig) -> None:
		atomic_write_json(self._path, config.model_dump(mode="json"))

	async def load(self) -> AutorenewalConfig:
		return await asyncio.to_thread(self._read)

	async def update(self, mutate: Callable[[AutorenewalConfig], T]) -> tuple[AutorenewalConfig, T]:
		"""Apply ``mutate`` to a fresh copy and persist it. Returns (config, result)."""
		async with self._lock:
			config = await asyncio.to_thread(self._read)
			result = mutate(config)
			# Re-validate so a mutator cannot persist out-of-range values
			config = AutorenewalConfig.model_validate(config.model_dump())
			await asyncio.to_thread(self._write, config)
			return config, result

	async def set_domain(self, domain: str, enabled: bool, method: Optional[Method] = None) -> DomainRenewalSettings:
		def _apply(config: AutorenewalConfig) -> None:
			settings = config.domain(domain)
			settings.enabled = enabled
			if method is not None:
				settings.method = method
			settings.last_modified = utcnow()

		config, _ = await self.update(_apply)
		_log.info("AUTORENEWAL_DOMAIN domain=%s enabled=%s", domain, enabled)
		return config.domains[domain]

	async def record_method(self, domain: str, method: Method) -> None:
		"""Remember how ``domain`` was issued so renewals reuse it."""
		def _apply(config: AutorenewalConfig) -> None:
			settings = config.domain(domain)
			settings.method = method
			settings.last_modified = utcnow()

		await self.update(_apply)

	async def update_settings(self, **changes: Any) -> AutorenewalConfig:
		allowed = {"global_enabled", "renewal_days", "check_frequency", "retry_failed_after_hours"}
		unknown = set(changes) - allowed
		if unknown:
			raise ValueError(f"Unknown autorenewal settings: {sorted(unknown)}")

		def _apply(config: AutorenewalConfig) -> None:
			for key, value in changes.items():
				if value is not None:
					setattr(config, key, value)

		config, _ = await self.update(_apply)
		_log.info("AUTORENEWAL_SETTINGS updated %s", {k: v for k, v in changes.items() if v is not None})
		return config


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------

class SweepState(str, Enum):
	IDLE = "idle"
	CHECKING = "checking"


RenewFunc = Callable[[str, Method], Awaitable[Any]]


class AutorenewalScheduler:
	"""Idle -> Checking -> Idle sweep over domains with autorenewal enabled.

	Due domains (``days_until_expiry <= renewal_days``) are renewed most
	urgent first. A conflict means the domain is already being worked on;
	it is deferred to the next tick rather than counted as a failure.
	"""

	def __init__(
		self,
		store: AutorenewalConfigStore,
		cache: StatusCache,
		renew: RenewFunc,
		broadcaster: ProgressBroadcaster,
		activity: Optional[ActivityLog] = None,
		*,
		clock: Callable[[], datetime] = utcnow,
	) -> None:
		self._store = store
		self._cache = cache
		self._renew = renew
		self._broadcaster = broadcaster
		self._activity = activity
		self._clock = clock
		self._state = SweepState.IDLE
		self.last_summary: Optional[dict[str, Any]] = None

	@property
	def state(self) -> SweepState:
		return self._state

	async def _log_activity(self, domain: str, status: str, message: str, details: Optional[dict[str, Any]] = None) -> None:
		if self._activity is not None:
			await self._activity.record(domain, status, message, details)

	def _recently_failed(self, settings: DomainRenewalSettings, config: AutorenewalConfig, now: datetime) -> bool:
		if settings.status not in ("failed", "error") or settings.last_failure is None:
			return False
		retry_after = timedelta(hours=config.retry_failed_after_hours)
		return now - ensure_utc(settings.last_failure) < retry_after

	async def run_check(self, trigger: str = "scheduled") -> dict[str, Any]:
		"""One sweep. A tick that arrives mid-sweep is skipped."""
		if self._state is SweepState.CHECKING:
			_log.info("AUTORENEWAL_CHECK skipped, previous sweep still running")
			return {"status": "skipped", "reason": "already_checking"}

		self._state = SweepState.CHECKING
		try:
			return await self._sweep(trigger)
		finally:
			self._state = SweepState.IDLE

	async def _sweep(self, trigger: str) -> dict[str, Any]:
		config = await self._store.load()
		if not config.global_enabled:
			_log.info("AUTORENEWAL_CHECK global autorenewal disabled, nothing to do")
			return {"status": "disabled"}

		now = self._clock()
		_log.info("AUTORENEWAL_CHECK_START trigger=%s domains=%d threshold=%dd", trigger, len(config.domains), config.renewal_days)
		self._broadcaster.emit_autorenewal_started(trigger=trigger)

		checked = renewed = failed = deferred = skipped = errors = 0
		due: list[tuple[int, str, Method]] = []

		for domain, settings in sorted(config.domains.items()):
			if not settings.enabled:
				skipped += 1
				continue
			if self._recently_failed(settings, config, now):
				skipped += 1
				await self._log_activity(domain, "skipped", "Recent failure, waiting before retry", {
					"last_failure": settings.last_failure.isoformat() if settings.last_failure else None,
				})
				continue
			try:
				cert = await self._cache.get(domain, force_refresh=True)
			except CertError as exc:
				errors += 1
				_log.warning("AUTORENEWAL_STATUS_FAILED domain=%s: %s", domain, exc)
				self._broadcaster.emit_error(domain, exc)
				await self._log_activity(domain, "error", f"Status check failed: {exc.message}")
				continue
			checked += 1

			days = cert.days_until_expiry(now)
			if not cert.has_certificate or days is None:
				skipped += 1
				await self._log_activity(domain, "skipped", "No certificate found")
				continue
			if days > config.renewal_days:
				skipped += 1
				_log.debug("AUTORENEWAL_NOT_DUE domain=%s days=%d", domain, days)
				continue
			due.append((days, domain, settings.method))

		due.sort()
		outcomes: dict[str, tuple[DomainStatus, Optional[str]]] = {}
		for days, domain, method in due:
			_log.info("AUTORENEWAL_RENEW domain=%s days=%d method=%s", domain, days, method)
			try:
				await self._renew(domain, method)
			except ConflictError as exc:
				deferred += 1
				outcomes[domain] = ("deferred", exc.message)
				await self._log_activity(domain, "deferred", "Operation already in progress, retrying next check")
				continue
			except CertError as exc:
				failed += 1
				outcomes[domain] = ("failed", exc.message)
				await self._log_activity(domain, "failed", exc.message, {"category": exc.category, "days": days})
				continue
			except Exception as exc:
				failed += 1
				_log.exception("AUTORENEWAL_RENEW unexpected failure domain=%s", domain)
				self._broadcaster.emit_error(domain, exc, category="internal")
				outcomes[domain] = ("error", str(exc))
				await self._log_activity(domain, "error", str(exc))
				continue
			renewed += 1
			outcomes[domain] = ("success", None)
			await self._log_activity(domain, "success", "Certificate renewed", {"days_before": days, "method": method})

		finished = self._clock()

		def _apply(cfg: AutorenewalConfig) -> None:
			stats = cfg.statistics
			stats.total_checks += 1
			stats.total_renewals += renewed + failed
			stats.successful_renewals += renewed
			stats.failed_renewals += failed
			stats.last_run = finished
			if renewed:
				stats.last_renewal_date = finished
			for name, (status, error) in outcomes.items():
				settings = cfg.domains.get(name)
				if settings is None:
					continue
				settings.status = status
				if status == "success":
					settings.last_renewal = finished
					settings.last_success = finished
					settings.last_failure = None
					settings.last_error = None
				elif status in ("failed", "error"):
					settings.last_renewal = finished
					settings.last_failure = finished
					settings.last_error = error

		await self._store.update(_apply)

		summary = {
			"status": "completed",
			"trigger": trigger,
			"checked": checked,
			"due": len(due),
			"renewed": renewed,
			"failed": failed,
			"deferred": deferred,
			"skipped": skipped,
			"errors": errors,
		}
		self.last_summary = summary
		self._broadcaster.emit_autorenewal_completed(summary)
		_log.info(
			"AUTORENEWAL_CHECK_COMPLETE checked=%d renewed=%d failed=%d deferred=%d skipped=%d errors=%d",
			checked, renewed, failed, deferred, skipped, errors,
		)
		return summary
