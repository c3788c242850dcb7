#!/usr/bin/env python3
#
# certwarden/models/autorenewal.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Autorenewal settings payloads."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class AutorenewalSettingsUpdate(BaseModel):
	"""Partial update of the global autorenewal settings."""
	global_enabled: Optional[bool] = None
	renewal_days: Optional[int] = Field(None, ge=1, le=89)
	check_frequency: Optional[Literal["hourly", "twice-daily", "daily", "weekly"]] = None
	retry_failed_after_hours: Optional[int] = Field(None, ge=0, le=720)


class DomainAutorenewalUpdate(BaseModel):
	enabled: bool
	method: Optional[Literal["webroot", "dns-challenge"]] = None
