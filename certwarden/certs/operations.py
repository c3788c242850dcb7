#!/usr/bin/env python3
#
# certwarden/certs/operations.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""In-flight operation registry, at most one record per domain."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import replace
from typing import Callable, Optional

from .errors import ConflictError
from .types import Method, OperationKind, OperationRecord, Trigger
from ..utils.time import utcnow

_log = logging.getLogger(__name__)

__all__ = ["OperationQueue"]


class OperationQueue:
	"""Domain-keyed map of running operations.

	``begin`` rejects a second operation for the same domain instead of
	queueing it. Waiting for the tool happens in the process lock, not here.
	"""

	def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
		self._clock = clock
		self._records: dict[str, OperationRecord] = {}
		self._lock = threading.Lock()

	def begin(
		self,
		domain: str,
		kind: OperationKind,
		method: Optional[Method] = None,
		*,
		trigger: Trigger = "manual",
	) -> OperationRecord:
		"""Register an operation for ``domain``.

		Raises:
			ConflictError: an operation for ``domain`` is already in flight
		"""
		with self._lock:
			existing = self._records.get(domain)
			if existing is not None:
				raise ConflictError(
					f"A {existing.kind} operation for '{domain}' is already in progress",
					details={"domain": domain, "op_id": existing.op_id, "kind": existing.kind},
				)
			record = OperationRecord(
				op_id=uuid.uuid4().hex,
				domain=domain,
				kind=kind,
				method=method,
				trigger=trigger,
				started_at=utcnow(),
				started_monotonic=self._clock(),
			)
			self._records[domain] = record
		_log.info("OPERATION_BEGIN domain=%s kind=%s method=%s op=%s", domain, kind, method, record.op_id[:8])
		return record

	def end(self, domain: str, op_id: Optional[str] = None) -> Optional[OperationRecord]:
		"""Remove the record for ``domain``. No-op when absent.

		With ``op_id`` only a matching record is removed, so a late finisher
		cannot end an operation that replaced it.
		"""
		with self._lock:
			record = self._records.get(domain)
			if record is None:
				return None
			if op_id is not None and record.op_id != op_id:
				return None
			del self._records[domain]
		_log.info(
			"OPERATION_END domain=%s kind=%s op=%s elapsed=%.1fs",
			domain, record.kind, record.op_id[:8], record.elapsed(self._clock()),
		)
		return record

	def mark_running(self, domain: str, op_id: str) -> bool:
		"""Flag the record as executing. False when it is no longer ours."""
		with self._lock:
			record = self._records.get(domain)
			if record is None or record.op_id != op_id:
				return False
			self._records[domain] = replace(record, running_monotonic=self._clock())
		return True

	def owns(self, domain: str, op_id: str) -> bool:
		with self._lock:
			record = self._records.get(domain)
			return record is not None and record.op_id == op_id

	def get(self, domain: str) -> Optional[OperationRecord]:
		with self._lock:
			return self._records.get(domain)

	def list_in_flight(self) -> list[dict]:
		now = self._clock()
		with self._lock:
			records = list(self._records.values())
		return [r.to_dict(now) for r in sorted(records, key=lambda r: r.started_monotonic)]

	def expired(
		self,
		max_duration: Callable[[OperationRecord], float],
		max_wait: Optional[float] = None,
	) -> list[OperationRecord]:
		"""Records past their limit.

		A running record is measured from the start of its tool run against
		``max_duration(record)``. A record still waiting for the tool lock is
		measured from ``begin`` against ``max_wait``; without one it never
		expires here.
		"""
		now = self._clock()
		with self._lock:
			records = list(self._records.values())
		expired = []
		for record in records:
			run = record.run_elapsed(now)
			if run is not None:
				if run > max_duration(record):
					expired.append(record)
			elif max_wait is not None and record.elapsed(now) > max_wait:
				expired.append(record)
		return expired

	def __len__(self) -> int:
		with self._lock:
			return len(self._records)

	def __contains__(self, domain: object) -> bool:
		with self._lock:
			return domain in self._records
