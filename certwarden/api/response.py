#!/usr/bin/env python3
#
# certwarden/api/response.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Common API response helpers."""

from __future__ import annotations

from typing import Any, Optional

from fastapi.responses import JSONResponse

from ..certs.errors import CertError


def ok_response(
	*,
	message: str | None = None,
	data: Any = None,
	**extra: Any,
) -> dict[str, Any]:
	"""Build a normalized success response.

	Includes a stable ``status`` field while allowing top-level fields for
	callers that read them directly.
	"""
	payload: dict[str, Any] = {"status": "ok"}
	if message is not None:
		payload["message"] = message
	if data is not None:
		payload["data"] = data
	if extra:
		payload.update(extra)
	return payload


def error_response(exc: CertError, *, request_id: Optional[str] = None) -> JSONResponse:
	"""Render a ``CertError`` as ``{"status": "error", "category", "message", ...}``."""
	payload = exc.to_dict()
	if request_id:
		payload["request_id"] = request_id
	headers = {"Retry-After": "30"} if exc.retryable and exc.status_code in (409, 423) else None
	return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)
