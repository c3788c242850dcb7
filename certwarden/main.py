#!/usr/bin/env python3
#
# certwarden/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI application factory and startup lifecycle wiring."""

from __future__ import annotations

import logging
import os
import sys
from contextlib import asynccontextmanager
from functools import partial
from typing import Optional

from fastapi import FastAPI, Request
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .certs.autorenewal import FREQUENCY_SECONDS
from .certs.errors import CertError
from .certs.orchestrator import CertificateOrchestrator
from .utils.config import Config, load_config
from .utils.rate_limit import limiter
from .utils.request_id import RequestIDMiddleware
from .utils.scheduler import Scheduler
from .tasks.lifecycle import autorenewal_check, operation_watchdog, status_scan

from .api import autorenewal as autorenewal_api
from .api import certificates as certificates_api
from .api import dns_provider as dns_provider_api
from .api import events as events_api
from .api import health as health_api
from .api import scan as scan_api
from .api.response import error_response

_log = logging.getLogger(__name__)

# ANSI color codes for log levels (if TTY)
_LOG_COLORS = {
	"DEBUG": "\033[36m",    # Cyan
	"INFO": "\033[32m",     # Green
	"WARNING": "\033[33m",  # Yellow
	"ERROR": "\033[31m",    # Red
	"CRITICAL": "\033[35m", # Magenta
}
_RESET = "\033[0m"


class _ColoredFormatter(logging.Formatter):
	"""Custom formatter that adds color to log levels in TTY."""

	def format(self, record):
		orig_levelname = record.levelname
		if orig_levelname in _LOG_COLORS:
			record.levelname = f"{_LOG_COLORS[orig_levelname]}{orig_levelname:<8}{_RESET}"
		else:
			record.levelname = f"{orig_levelname:<8}"
		try:
			return super().format(record)
		finally:
			record.levelname = orig_levelname


def _setup_logging(log_level: str) -> None:
	"""Configure unified logging for the entire application."""
	level = getattr(logging, log_level, logging.INFO)

	if sys.stdout.isatty():
		formatter = _ColoredFormatter(
			fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		)
	else:
		formatter = logging.Formatter(
			fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		)

	# force=True removes any pre-existing handlers (e.g. from uvicorn)
	logging.basicConfig(
		level=level,
		handlers=[logging.StreamHandler(sys.stdout)],
		force=True,
	)
	for handler in logging.root.handlers:
		handler.setFormatter(formatter)

	# Make sure uvicorn loggers use the root handler & level
	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		logger = logging.getLogger(name)
		logger.handlers.clear()
		logger.setLevel(level)
		logger.propagate = True

	# Quiet down noisy third-party libraries
	for name in ("httpcore", "httpx", "watchfiles"):
		logging.getLogger(name).setLevel(logging.WARNING)


def _build_scheduler(cfg: Config, orchestrator: CertificateOrchestrator, check_frequency: str) -> Scheduler:
	scheduler = Scheduler()
	scheduler.add(
		"autorenewal-check",
		interval_seconds=FREQUENCY_SECONDS[check_frequency],
		func=partial(autorenewal_check, orchestrator),
		run_on_start=True,
		initial_delay=60.0,  # Let the first status scan warm the cache
		jitter_pct=0.05,
	)
	scheduler.add(
		"operation-watchdog",
		interval_seconds=cfg.watchdog_interval,
		func=partial(operation_watchdog, orchestrator),
		timeout=30.0,
	)
	scheduler.add(
		"status-scan",
		interval_seconds=cfg.status_scan_interval,
		func=partial(status_scan, orchestrator),
		run_on_start=True,
		initial_delay=5.0,
		timeout=600.0,
	)
	return scheduler


@asynccontextmanager
async def _lifespan(app: FastAPI):
	"""Application lifespan manager."""
	cfg: Config = app.state.cfg

	# ─── BOOTSTRAP ───────────────────────────────────────────
	orchestrator: Optional[CertificateOrchestrator] = getattr(app.state, "orchestrator", None)
	if orchestrator is None:
		orchestrator = CertificateOrchestrator.from_config(cfg)
		app.state.orchestrator = orchestrator

	# ─── SCHEDULER ───────────────────────────────────────────
	scheduler: Optional[Scheduler] = None
	if app.state.enable_scheduler:
		autorenewal = await orchestrator.autorenewal_store.load()
		scheduler = _build_scheduler(cfg, orchestrator, autorenewal.check_frequency)
		await scheduler.start()
	app.state.scheduler = scheduler

	_log.info("CertWarden started successfully (scheduler=%s, pid=%d)", scheduler is not None, os.getpid())

	yield

	# ─── SHUTDOWN ────────────────────────────────────────────
	if scheduler:
		await scheduler.stop_graceful(timeout=5.0)

	in_flight = orchestrator.queue.list_in_flight()
	if in_flight:
		_log.warning("SHUTDOWN with %d operation(s) in flight: %s", len(in_flight), [r["domain"] for r in in_flight])
	_log.info("CertWarden shutdown complete")


async def _cert_error_handler(request: Request, exc: CertError):
	request_id = getattr(request.state, "request_id", None)
	if exc.status_code >= 500:
		_log.error("API_ERROR %s %s category=%s: %s", request.method, request.url.path, exc.category, exc.message)
	else:
		_log.info("API_ERROR %s %s category=%s: %s", request.method, request.url.path, exc.category, exc.message)
	return error_response(exc, request_id=request_id)


def create_app(
	cfg: Optional[Config] = None,
	*,
	orchestrator: Optional[CertificateOrchestrator] = None,
	enable_scheduler: bool = True,
) -> FastAPI:
	"""Application factory for CertWarden.

	Tests pass their own ``orchestrator`` (built on a fake tool adapter) and
	``enable_scheduler=False``.
	"""
	if cfg is None:
		cfg = load_config()
	_setup_logging(cfg.log_level)

	app = FastAPI(
		title="CertWarden",
		description="TLS certificate lifecycle orchestrator",
		version="0.1.0",
		lifespan=_lifespan,
		docs_url="/api/docs",
		redoc_url="/api/redoc",
	)

	app.state.cfg = cfg
	app.state.orchestrator = orchestrator
	app.state.enable_scheduler = enable_scheduler
	app.state.scheduler = None

	# ─── MIDDLEWARE ──────────────────────────────────────────
	app.add_middleware(RequestIDMiddleware)

	# Rate limiting
	app.state.limiter = limiter
	app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
	app.add_exception_handler(CertError, _cert_error_handler)

	# ─── API ROUTES ──────────────────────────────────────────
	app.include_router(health_api.router, prefix="/api")
	app.include_router(certificates_api.router, prefix="/api/certificates")
	app.include_router(scan_api.router, prefix="/api/scan")
	app.include_router(autorenewal_api.router, prefix="/api/autorenewal")
	app.include_router(events_api.router, prefix="/api/events")
	app.include_router(dns_provider_api.router, prefix="/api/dns-provider")

	return app
