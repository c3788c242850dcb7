#!/usr/bin/env python3
#
# certwarden/utils/rate_limit.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Rate limiting configuration using slowapi."""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

# Rate limit presets
RATE_LIMIT_DEFAULT = "60/minute"
RATE_LIMIT_OPERATION = "10/minute"  # install / renew / renew-all
RATE_LIMIT_SCAN = "6/minute"        # full fleet re-scan
RATE_LIMIT_API = "120/minute"       # read-only status queries

limiter = Limiter(key_func=get_remote_address)

__all__ = [
	"RATE_LIMIT_DEFAULT",
	"RATE_LIMIT_OPERATION",
	"RATE_LIMIT_SCAN",
	"RATE_LIMIT_API",
	"limiter",
]
