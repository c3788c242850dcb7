#!/usr/bin/env python3
#
# certwarden/utils/time.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Timezone-aware time utilities."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
	"""Return the current UTC time as a timezone-aware datetime."""
	return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
	"""Ensure a datetime is timezone-aware and in UTC.

	Raises:
		ValueError: If the datetime is naive (no timezone info)
	"""
	if dt is None:
		return None
	if dt.tzinfo is None:
		raise ValueError("Naive datetime not allowed - must be timezone-aware")
	return dt.astimezone(timezone.utc)


def parse_utc(s: str) -> Optional[datetime]:
	"""Parse an ISO-8601 timestamp string to a UTC datetime.

	Handles both 'Z' suffix and '+00:00' offset notation.
	Returns None for invalid/unparseable or naive (timezone-less) timestamps.
	"""
	if not s:
		return None
	try:
		if s.endswith("Z"):
			s = s[:-1] + "+00:00"
		dt = datetime.fromisoformat(s)
		if dt.tzinfo is None:
			return None
		return dt.astimezone(timezone.utc)
	except (ValueError, TypeError):
		return None


def days_until(target: datetime, now: Optional[datetime] = None) -> int:
	"""Whole UTC calendar days from ``now`` until ``target`` (negative when past).

	Both sides are truncated to their UTC date first, so a certificate that
	expired yesterday yields -1 regardless of the time of day.
	"""
	now = ensure_utc(now) if now is not None else utcnow()
	target = ensure_utc(target)
	return (target.date() - now.date()).days


def isoformat_or_none(dt: Optional[datetime]) -> Optional[str]:
	return dt.isoformat() if dt is not None else None
