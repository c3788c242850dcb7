#!/usr/bin/env python3
#
# certwarden/certs/activity.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Append-only JSON-lines log of autorenewal activity."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from pathlib import Path
from typing import Any, Optional

from ..utils.fs import locked_append
from ..utils.time import utcnow

_log = logging.getLogger(__name__)

__all__ = ["ActivityLog"]

_MAX_LIMIT = 1000


class ActivityLog:

	def __init__(self, path: Path) -> None:
		self._path = path

	@property
	def path(self) -> Path:
		return self._path

	def _write(self, entry: dict[str, Any]) -> None:
		locked_append(self._path, json.dumps(entry, default=str, sort_keys=True))

	async def record(
		self,
		domain: str,
		status: str,
		message: str,
		details: Optional[dict[str, Any]] = None,
	) -> None:
		entry = {
			"timestamp": utcnow().isoformat(),
			"domain": domain,
			"status": status,
			"message": message,
			"details": details or {},
		}
		try:
			await asyncio.to_thread(self._write, entry)
		except OSError as exc:
			_log.error("ACTIVITY_LOG write failed path=%s: %s", self._path, exc)

	def _read_tail(self, limit: int) -> list[dict[str, Any]]:
		if not self._path.exists():
			return []
		tail: deque[str] = deque(maxlen=limit)
		with open(self._path, encoding="utf-8", errors="replace") as f:
			for line in f:
				if line.strip():
					tail.append(line)
		entries: list[dict[str, Any]] = []
		for line in tail:
			try:
				entries.append(json.loads(line))
			except ValueError:
				_log.debug("ACTIVITY_LOG skipping malformed line")
		entries.reverse()
		return entries

	async def recent(self, limit: int = 100) -> list[dict[str, Any]]:
		"""Newest first."""
		limit = max(1, min(limit, _MAX_LIMIT))
		return await asyncio.to_thread(self._read_tail, limit)
