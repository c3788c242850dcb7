#!/usr/bin/env python3
#
# certwarden/api/scan.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Fleet-wide status scan endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from ..certs.orchestrator import CertificateOrchestrator
from ..certs.scanner import summarize
from ..utils.deps import get_orchestrator
from ..utils.rate_limit import RATE_LIMIT_API, RATE_LIMIT_SCAN, limiter
from .response import ok_response

router = APIRouter(tags=["scan"])


@router.post("")
@limiter.limit(RATE_LIMIT_SCAN)
async def scan_all(
	request: Request,
	force_refresh: bool = Query(False, description="Re-read every certificate instead of using the cache"),
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Re-scan all known domains in paced batches."""
	result = await orchestrator.scan_all(force_refresh=force_refresh)
	return ok_response(
		data={
			"stats": result.stats.to_dict(),
			"duration": round(result.duration, 3),
			"certificates": [c.to_dict() for c in result.certificates.values()],
		},
	)


@router.get("/stats")
@limiter.limit(RATE_LIMIT_API)
async def scan_stats(
	request: Request,
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Stats over cached entries only (stale included), no filesystem access."""
	entries = orchestrator.cache.snapshot(allow_stale=True)
	stats = summarize([e.certificate for e in entries.values()])
	last = orchestrator.scanner.last_result
	return ok_response(
		data={
			"stats": stats.to_dict(),
			"cached_domains": len(entries),
			"scan_running": orchestrator.scanner.running,
			"last_scan": {
				"stats": last.stats.to_dict(),
				"duration": round(last.duration, 3),
			} if last else None,
		},
	)
