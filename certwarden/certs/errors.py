#!/usr/bin/env python3
#
# certwarden/certs/errors.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Error taxonomy for certificate operations.

Every error carries a machine-readable ``category`` and the HTTP status the
API layer renders it with, so callers can tell retryable conflicts apart from
configuration mistakes without string matching.
"""

from __future__ import annotations

from typing import Any

__all__ = [
	"CertError",
	"ConflictError",
	"AlreadyRunningError",
	"ConfigurationError",
	"ToolError",
	"ToolExecutionError",
	"NotFoundError",
	"OperationTimeoutError",
	"StaleLockError",
]


class CertError(Exception):
	"""Base class for all certificate lifecycle errors."""

	category = "error"
	status_code = 500
	retryable = False

	def __init__(self, message: str, *, remediation: str | None = None, details: dict[str, Any] | None = None) -> None:
		super().__init__(message)
		self.message = message
		self.remediation = remediation
		self.details = details or {}

	def to_dict(self) -> dict[str, Any]:
		payload: dict[str, Any] = {
			"status": "error",
			"category": self.category,
			"message": self.message,
			"retryable": self.retryable,
		}
		if self.remediation:
			payload["remediation"] = self.remediation
		if self.details:
			payload["details"] = self.details
		return payload


class ConflictError(CertError):
	"""An operation for the same key is already in flight."""
	category = "conflict"
	status_code = 409
	retryable = True


class AlreadyRunningError(ConflictError):
	"""The issuance tool is already executing (held lock or live process)."""
	category = "already_running"


class ConfigurationError(CertError):
	"""Missing binary, credentials or paths. Needs operator action."""
	category = "configuration"
	status_code = 422


class ToolError(CertError):
	"""The issuance tool or a metadata strategy failed."""
	category = "tool_error"
	status_code = 502
	retryable = True


class ToolExecutionError(ToolError):
	"""The issuance tool exited with a non-zero status."""
	category = "tool_execution"

	def __init__(self, message: str, *, returncode: int, stdout: str = "", stderr: str = "") -> None:
		super().__init__(message, details={"returncode": returncode, "stderr": stderr[-2000:]})
		self.returncode = returncode
		self.stdout = stdout
		self.stderr = stderr


class NotFoundError(CertError):
	"""No certificate (or no domain) could be located."""
	category = "not_found"
	status_code = 404


class OperationTimeoutError(CertError):
	"""An operation exceeded its maximum duration."""
	category = "timeout"
	status_code = 504
	retryable = True


class StaleLockError(CertError):
	"""A tool lock artifact exists without a live tool process."""
	category = "stale_lock"
	status_code = 423
	retryable = True
