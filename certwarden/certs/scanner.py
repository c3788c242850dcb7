#!/usr/bin/env python3
#
# certwarden/certs/scanner.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Paced, batched status re-scan of the whole domain fleet."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from .cache import StatusCache
from .errors import ConflictError
from .events import ProgressBroadcaster
from .types import Certificate
from ..utils.time import utcnow

_log = logging.getLogger(__name__)

__all__ = ["ScanStats", "ScanResult", "BatchScanner", "partition", "summarize"]


@dataclass
class ScanStats:
	total: int = 0
	with_certificate: int = 0
	expiring_soon: int = 0
	expired: int = 0
	errors: int = 0
	batches: int = 0

	def to_dict(self) -> dict[str, int]:
		return asdict(self)


@dataclass
class ScanResult:
	stats: ScanStats
	certificates: dict[str, Certificate] = field(default_factory=dict)
	duration: float = 0.0
	batch_sizes: list[int] = field(default_factory=list)


def partition(items: Sequence[str], size: int) -> list[list[str]]:
	"""Split ``items`` into consecutive chunks of at most ``size``."""
	if size < 1:
		raise ValueError(f"batch size must be >= 1, got {size}")
	return [list(items[i:i + size]) for i in range(0, len(items), size)]


def summarize(certificates: Sequence[Certificate], now: Optional[datetime] = None) -> ScanStats:
	"""Fleet counters. Expired and expiring-soon never overlap."""
	now = now or utcnow()
	stats = ScanStats(total=len(certificates))
	for cert in certificates:
		if cert.error and not cert.has_certificate:
			stats.errors += 1
		if not cert.has_certificate:
			continue
		stats.with_certificate += 1
		if cert.is_expired(now):
			stats.expired += 1
		elif cert.is_expiring_soon(now):
			stats.expiring_soon += 1
	return stats


class BatchScanner:
	"""Refresh many domains through the cache in bounded batches.

	A lookup failure for one domain is recorded as an error status for that
	domain and never aborts the scan.
	"""

	def __init__(
		self,
		cache: StatusCache,
		broadcaster: ProgressBroadcaster,
		*,
		batch_size: int = 25,
		pacing: float = 0.05,
		progress_every: int = 100,
	) -> None:
		if batch_size < 1:
			raise ValueError(f"batch_size must be >= 1, got {batch_size}")
		self._cache = cache
		self._broadcaster = broadcaster
		self._batch_size = batch_size
		self._pacing = pacing
		self._progress_every = max(1, progress_every)
		self._running = False
		self.last_result: Optional[ScanResult] = None

	@property
	def running(self) -> bool:
		return self._running

	async def _lookup(self, domain: str, force_refresh: bool) -> Certificate:
		try:
			return await self._cache.get(domain, force_refresh=force_refresh)
		except Exception as exc:
			_log.warning("SCAN_DOMAIN_FAILED domain=%s: %s", domain, exc)
			return Certificate.missing(domain, error=getattr(exc, "message", None) or str(exc))

	async def scan_all(self, domains: Sequence[str], force_refresh: bool = False) -> ScanResult:
		"""Scan ``domains`` and emit progress plus a final summary.

		Raises:
			ConflictError: another scan is already running
		"""
		if self._running:
			raise ConflictError("A certificate scan is already running", details={"domain": "scan"})
		self._running = True
		try:
			return await self._scan(list(dict.fromkeys(domains)), force_refresh)
		finally:
			self._running = False

	async def _scan(self, domains: list[str], force_refresh: bool) -> ScanResult:
		started = time.monotonic()
		total = len(domains)
		batches = partition(domains, self._batch_size)
		_log.info("SCAN_START domains=%d batches=%d forced=%s", total, len(batches), force_refresh)

		results: dict[str, Certificate] = {}
		processed = 0
		next_progress = self._progress_every

		for index, batch in enumerate(batches):
			certs = await asyncio.gather(*(self._lookup(d, force_refresh) for d in batch))
			for domain, cert in zip(batch, certs):
				results[domain] = cert
			processed += len(batch)

			if processed >= next_progress and processed < total:
				self._broadcaster.emit_scan_progress(processed, total)
				while next_progress <= processed:
					next_progress += self._progress_every

			if index < len(batches) - 1 and self._pacing > 0:
				await asyncio.sleep(self._pacing)

		stats = summarize(list(results.values()))
		stats.total = total
		stats.batches = len(batches)
		result = ScanResult(
			stats=stats,
			certificates=results,
			duration=time.monotonic() - started,
			batch_sizes=[len(b) for b in batches],
		)
		self.last_result = result
		self._broadcaster.emit_scan_complete(stats.to_dict())
		_log.info(
			"SCAN_COMPLETE total=%d with_cert=%d expiring=%d expired=%d errors=%d duration=%.2fs",
			stats.total, stats.with_certificate, stats.expiring_soon, stats.expired, stats.errors, result.duration,
		)
		return result
