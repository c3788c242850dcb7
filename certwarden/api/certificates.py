#!/usr/bin/env python3
#
# certwarden/api/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate status and install/renew endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request

from ..certs.orchestrator import CertificateOrchestrator
from ..models import InstallRequest, RenewRequest
from ..utils.deps import get_orchestrator
from ..utils.rate_limit import RATE_LIMIT_API, RATE_LIMIT_OPERATION, limiter
from .response import ok_response

_log = logging.getLogger(__name__)

router = APIRouter(tags=["certificates"])

_DOMAIN_PATH = Path(..., min_length=1, max_length=253)


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

@router.get("")
@limiter.limit(RATE_LIMIT_API)
async def list_certificates(
	request: Request,
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Cached status of every known domain. Never touches the filesystem."""
	items = await orchestrator.certificate_overview()
	return ok_response(data=items, count=len(items))


@router.get("/queue")
@limiter.limit(RATE_LIMIT_API)
async def queue_status(
	request: Request,
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""In-flight operations and tool lock state."""
	return ok_response(data=await orchestrator.queue_status())


@router.post("/queue/cleanup")
@limiter.limit(RATE_LIMIT_OPERATION)
async def queue_cleanup(
	request: Request,
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Force-clear the tool lock. Refused while a certbot process is alive."""
	report = await orchestrator.force_cleanup()
	_log.warning("LOCK_CLEANUP_REQUESTED request_id=%s", getattr(request.state, "request_id", None))
	return ok_response(message="Certificate tool lock cleared", data=report)


@router.get("/{domain}/status")
@limiter.limit(RATE_LIMIT_API)
async def certificate_status(
	request: Request,
	domain: str = _DOMAIN_PATH,
	force_refresh: bool = Query(False, description="Bypass the status cache"),
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Certificate status for one domain (cached unless ``force_refresh``)."""
	try:
		cert = await orchestrator.refresh_status(domain, force_refresh=force_refresh)
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc))
	return ok_response(data=cert.to_dict())


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

@router.post("/install")
@limiter.limit(RATE_LIMIT_OPERATION)
async def install_certificate(
	request: Request,
	payload: InstallRequest,
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Issue a certificate. Progress is streamed on ``/api/events``."""
	try:
		result = await orchestrator.install(payload.domain, str(payload.email), payload.method)
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc))
	return ok_response(message=f"Certificate installed for {payload.domain}", data=result)


@router.post("/renew")
@limiter.limit(RATE_LIMIT_OPERATION)
async def renew_certificate(
	request: Request,
	payload: RenewRequest,
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Renew one certificate."""
	try:
		result = await orchestrator.renew(payload.domain, method=payload.method)
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc))
	return ok_response(message=f"Certificate renewed for {payload.domain}", data=result)


@router.post("/renew-all")
@limiter.limit(RATE_LIMIT_OPERATION)
async def renew_all_certificates(
	request: Request,
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Run ``certbot renew`` for every managed certificate."""
	result = await orchestrator.renew_all()
	return ok_response(message="Renewal of all certificates completed", data=result)
