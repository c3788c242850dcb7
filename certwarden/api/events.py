#!/usr/bin/env python3
#
# certwarden/api/events.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Server-Sent-Events stream of progress events."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from ..certs.events import ProgressBroadcaster, Subscription
from ..certs.orchestrator import CertificateOrchestrator
from ..utils.deps import get_orchestrator
from ..utils.rate_limit import RATE_LIMIT_API, limiter
from .response import ok_response

_log = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

# Comment frame keeping proxies from closing an idle stream
_KEEPALIVE_SECONDS = 15.0
_KEEPALIVE_FRAME = ": keepalive\n\n"


async def _stream(
	request: Request,
	broadcaster: ProgressBroadcaster,
	sub: Subscription,
	domain: Optional[str],
	replay: int,
) -> AsyncIterator[str]:
	with sub:
		# Events published after subscribe are both replayed and queued
		replayed_seq = 0
		for event in broadcaster.recent(replay, domain=domain):
			replayed_seq = event.seq
			yield event.to_sse()
		while True:
			if await request.is_disconnected():
				_log.debug("EVENTS client disconnected")
				return
			event = await sub.get(timeout=_KEEPALIVE_SECONDS)
			if event is None:
				yield _KEEPALIVE_FRAME
				continue
			if event.seq <= replayed_seq:
				continue
			if domain is not None and event.domain not in (None, domain):
				continue
			yield event.to_sse()


@router.get("")
async def event_stream(
	request: Request,
	domain: Optional[str] = Query(None, max_length=253, description="Only events for this domain (plus global events)"),
	replay: int = Query(0, ge=0, le=200, description="Replay this many recent events first"),
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Live ``text/event-stream`` of operation, scan and autorenewal events."""
	broadcaster = orchestrator.broadcaster
	sub = broadcaster.subscribe()
	return StreamingResponse(
		_stream(request, broadcaster, sub, domain, replay),
		media_type="text/event-stream",
		headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
	)


@router.get("/recent")
@limiter.limit(RATE_LIMIT_API)
async def recent_events(
	request: Request,
	limit: int = Query(50, ge=1, le=200),
	domain: Optional[str] = Query(None, max_length=253),
	orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
	"""Most recent events from the in-memory ring buffer, oldest first."""
	events = orchestrator.broadcaster.recent(limit, domain=domain)
	return ok_response(data=[e.to_dict() for e in events], count=len(events))
