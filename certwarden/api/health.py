#!/usr/bin/env python3
#
# certwarden/api/health.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Liveness and scheduler health."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..utils.deps import get_scheduler
from .response import ok_response

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request, scheduler=Depends(get_scheduler)):
	orchestrator = getattr(request.app.state, "orchestrator", None)
	data = {
		"ready": orchestrator is not None,
		"lock": orchestrator.lock.status() if orchestrator else None,
		"in_flight": len(orchestrator.queue) if orchestrator else 0,
		"event_subscribers": orchestrator.broadcaster.subscriber_count if orchestrator else 0,
		"jobs": scheduler.get_status() if scheduler is not None else [],
	}
	return ok_response(data=data)
