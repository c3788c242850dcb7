#!/usr/bin/env python3
#
# certwarden/certs/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate lifecycle: store reader, cache, lock, queue, events, scans."""

from .errors import (
	AlreadyRunningError,
	CertError,
	ConfigurationError,
	ConflictError,
	NotFoundError,
	OperationTimeoutError,
	StaleLockError,
	ToolError,
	ToolExecutionError,
)
from .orchestrator import CertificateOrchestrator, OrchestratorSettings
from .types import Certificate, Domain, OperationRecord

__all__ = [
	"CertificateOrchestrator",
	"OrchestratorSettings",
	"Certificate",
	"Domain",
	"OperationRecord",
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
