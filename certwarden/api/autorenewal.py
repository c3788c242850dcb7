#!/usr/bin/env python3
#
# certwarden/api/autorenewal.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Autorenewal settings, per-domain toggles and activity log."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request

from ..certs.autorenewal import FREQUENCY_SECONDS
from ..certs.orchestrator import CertificateOrchestrator
from ..models import AutorenewalSettingsUpdate, DomainAutorenewalUpdate
from ..utils.deps import get_orchestrator, get_scheduler
from ..utils.rate_limit import RATE_LIMIT_API, RATE_LIMIT_DEFAULT, RATE_LIMIT_OPERATION, limiter
from .response import ok_response

_log = logging.getLogger(__name__)

router = APIRouter(tags=["autorenewal"])

AUTORENEWAL_JOB = "autorenewal-check"


@router.get("/status")
@limiter.limit(RATE_LIMIT_API)
async def autorenewal_status(
	request: Request,
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
	scheduler=Depends(get_scheduler),
):
	"""Persisted settings, run statistics and the live sweep state."""
	config = await orchestrator.autorenewal_store.load()
	job = None
	if scheduler is not None:
		job = next((j for j in scheduler.get_status() if j["name"] == AUTORENEWAL_JOB), None)
	data = config.model_dump(mode="json")
	data["state"] = orchestrator.autorenewal.state.value
	data["last_summary"] = orchestrator.autorenewal.last_summary
	data["job"] = job
	return ok_response(data=data)


@router.post("/settings")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def update_autorenewal_settings(
	request: Request,
	payload: AutorenewalSettingsUpdate,
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
	scheduler=Depends(get_scheduler),
):
	"""Update global settings. A new check frequency reschedules the sweep job."""
	config = await orchestrator.autorenewal_store.update_settings(**payload.model_dump())
	if payload.check_frequency is not None and scheduler is not None:
		try:
			scheduler.reschedule(AUTORENEWAL_JOB, FREQUENCY_SECONDS[config.check_frequency])
		except KeyError:
			_log.warning("AUTORENEWAL_RESCHEDULE job %s not registered", AUTORENEWAL_JOB)
	return ok_response(message="Autorenewal settings saved", data=config.model_dump(mode="json"))


@router.post("/domains/{domain}")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def set_domain_autorenewal(
	request: Request,
	payload: DomainAutorenewalUpdate,
	domain: str = Path(..., min_length=1, max_length=253),
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Enable or disable autorenewal for one domain."""
	try:
		data = await orchestrator.set_autorenewal(domain, payload.enabled, payload.method)
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc))
	state = "enabled" if payload.enabled else "disabled"
	return ok_response(message=f"Autorenewal {state} for {data['domain']}", data=data)


@router.post("/check")
@limiter.limit(RATE_LIMIT_OPERATION)
async def run_autorenewal_check(
	request: Request,
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Run one autorenewal sweep now."""
	summary = await orchestrator.run_autorenewal(trigger="manual")
	return ok_response(data=summary)


@router.get("/logs")
@limiter.limit(RATE_LIMIT_API)
async def autorenewal_logs(
	request: Request,
	limit: int = Query(100, ge=1, le=1000),
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Recent activity log entries, newest first."""
	if orchestrator.activity is None:
		return ok_response(data=[], count=0)
	entries = await orchestrator.activity.recent(limit)
	return ok_response(data=entries, count=len(entries))
