#!/usr/bin/env python3
#
# certwarden/tasks/lifecycle.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Periodic certificate lifecycle jobs run by the background scheduler."""

from __future__ import annotations

import logging

from ..certs.errors import ConflictError
from ..certs.orchestrator import CertificateOrchestrator

_log = logging.getLogger(__name__)

__all__ = [
	"autorenewal_check",
	"operation_watchdog",
	"status_scan",
]


async def autorenewal_check(orchestrator: CertificateOrchestrator) -> None:
	"""Threshold sweep over domains with autorenewal enabled."""
	summary = await orchestrator.run_autorenewal(trigger="scheduled")
	_log.debug("AUTORENEWAL_JOB result=%s", summary.get("status"))


async def operation_watchdog(orchestrator: CertificateOrchestrator) -> None:
	"""Force-end operations that outlived their maximum duration."""
	cleared = await orchestrator.watchdog_sweep()
	if cleared:
		_log.error("WATCHDOG cleared %d stuck operation(s): %s", len(cleared), [c["domain"] for c in cleared])


async def status_scan(orchestrator: CertificateOrchestrator) -> None:
	"""Refresh the status cache for the whole fleet."""
	try:
		result = await orchestrator.scan_all(force_refresh=True)
	except ConflictError:
		_log.info("STATUS_SCAN skipped, a scan is already running")
		return
	_log.info(
		"STATUS_SCAN total=%d expiring=%d expired=%d",
		result.stats.total, result.stats.expiring_soon, result.stats.expired,
	)
