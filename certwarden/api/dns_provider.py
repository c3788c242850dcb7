#!/usr/bin/env python3
#
# certwarden/api/dns_provider.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""DNS-challenge provider configuration status."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from ..certs.orchestrator import CertificateOrchestrator
from ..utils.deps import get_orchestrator
from ..utils.rate_limit import RATE_LIMIT_API, RATE_LIMIT_SCAN, limiter
from .response import ok_response

router = APIRouter(tags=["dns-provider"])


@router.get("/status")
@limiter.limit(RATE_LIMIT_API)
async def dns_provider_status(
	request: Request,
	test: bool = Query(False, description="Also perform an authenticated login against the provider API"),
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Whether the dns-challenge method is usable."""
	data = orchestrator.dns.status()
	if test and data["configured"]:
		data["connection"] = await orchestrator.dns.test_connection()
	return ok_response(data=data)


@router.post("/test")
@limiter.limit(RATE_LIMIT_SCAN)
async def dns_provider_test(
	request: Request,
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Authenticated login check. Raises a configuration error when unset."""
	return ok_response(data=await orchestrator.dns.test_connection())
