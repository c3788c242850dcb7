#!/usr/bin/env python3
#
# certwarden/certs/cache.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Per-domain TTL cache in front of the certificate store."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from .errors import NotFoundError
from .types import Certificate
from ..utils.time import utcnow

_log = logging.getLogger(__name__)

__all__ = ["CacheEntry", "StatusCache"]

Reader = Callable[[str], Awaitable[Certificate]]


@dataclass(frozen=True)
class CacheEntry:
	certificate: Certificate
	captured_at: datetime
	captured_monotonic: float


class StatusCache:
	"""Time-boxed memoization of store lookups.

	A refresh of one domain is serialized by that domain's lock, so two
	concurrent refreshes never interleave their read and write. Different
	domains never wait on each other.

	``NotFoundError`` is cached as a ``has_certificate=False`` status;
	``ToolError`` propagates and leaves the previous entry untouched.
	"""

	def __init__(
		self,
		reader: Reader,
		*,
		ttl: float = 300.0,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self._reader = reader
		self._ttl = ttl
		self._clock = clock
		self._entries: dict[str, CacheEntry] = {}
		self._locks: dict[str, asyncio.Lock] = {}

	@property
	def ttl(self) -> float:
		return self._ttl

	def _lock_for(self, domain: str) -> asyncio.Lock:
		lock = self._locks.get(domain)
		if lock is None:
			lock = self._locks[domain] = asyncio.Lock()
		return lock

	def _is_fresh(self, entry: CacheEntry) -> bool:
		return self._clock() - entry.captured_monotonic < self._ttl

	async def get(self, domain: str, force_refresh: bool = False) -> Certificate:
		"""Cached status for ``domain``, re-reading when stale or forced."""
		entry = self._entries.get(domain)
		if not force_refresh and entry is not None and self._is_fresh(entry):
			return entry.certificate

		async with self._lock_for(domain):
			# Another caller may have refreshed while we waited
			entry = self._entries.get(domain)
			if not force_refresh and entry is not None and self._is_fresh(entry):
				return entry.certificate
			previous = entry.captured_at if entry is not None else None

			try:
				cert = await self._reader(domain)
			except NotFoundError:
				cert = Certificate.missing(domain)

			captured_at = utcnow()
			if previous is not None and captured_at <= previous:
				captured_at = previous + timedelta(microseconds=1)
			self._entries[domain] = CacheEntry(cert, captured_at, self._clock())
			_log.debug("CACHE_STORE domain=%s has_cert=%s forced=%s", domain, cert.has_certificate, force_refresh)
			return cert

	def peek(self, domain: str, *, allow_stale: bool = False) -> Optional[CacheEntry]:
		"""Current entry without triggering a lookup."""
		entry = self._entries.get(domain)
		if entry is None:
			return None
		if not allow_stale and not self._is_fresh(entry):
			return None
		return entry

	def invalidate(self, domain: str) -> None:
		if self._entries.pop(domain, None) is not None:
			_log.debug("CACHE_INVALIDATE domain=%s", domain)

	def invalidate_all(self) -> None:
		count = len(self._entries)
		self._entries.clear()
		_log.info("CACHE_INVALIDATE_ALL entries=%d", count)

	def snapshot(self, *, allow_stale: bool = True) -> dict[str, CacheEntry]:
		return {
			domain: entry
			for domain, entry in self._entries.items()
			if allow_stale or self._is_fresh(entry)
		}

	def __len__(self) -> int:
		return len(self._entries)
