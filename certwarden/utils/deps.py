#!/usr/bin/env python3
#
# certwarden/utils/deps.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI dependency helpers."""

from __future__ import annotations

from fastapi import HTTPException, Request

from ..certs.orchestrator import CertificateOrchestrator


def get_orchestrator(request: Request) -> CertificateOrchestrator:
	"""The orchestrator built by the application lifespan."""
	orchestrator = getattr(request.app.state, "orchestrator", None)
	if orchestrator is None:
		raise HTTPException(status_code=503, detail="Service is starting up")
	return orchestrator


def get_scheduler(request: Request):
	"""Background scheduler, or None when running without one (tests)."""
	return getattr(request.app.state, "scheduler", None)


def get_config(request: Request):
	"""Get the application configuration from app state."""
	return request.app.state.cfg
