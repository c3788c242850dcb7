#!/usr/bin/env python3
#
# certwarden/certs/types.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Value types shared across the certificate lifecycle components."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, Optional

from ..utils.config import EXPIRY_WARNING_DAYS
from ..utils.time import days_until, isoformat_or_none, utcnow

__all__ = [
	"Method",
	"OperationKind",
	"Trigger",
	"Domain",
	"Certificate",
	"OperationRecord",
	"RENEW_ALL_KEY",
	"METHODS",
	"DOMAIN_PATTERN",
	"is_valid_domain",
]

Method = Literal["webroot", "dns-challenge"]
OperationKind = Literal["install", "renew", "renew_all"]
Trigger = Literal["manual", "autorenewal"]

METHODS: tuple[str, ...] = ("webroot", "dns-challenge")

# Reserved operation-queue key for fleet-wide renewals
RENEW_ALL_KEY = "*"

# RFC 1123 hostname
DOMAIN_PATTERN = r"^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$"
_DOMAIN_RE = re.compile(DOMAIN_PATTERN)


def is_valid_domain(name: str) -> bool:
	return 0 < len(name) <= 253 and _DOMAIN_RE.match(name) is not None


@dataclass(frozen=True)
class Domain:
	"""A virtual host discovered from web-server configuration."""
	name: str
	aliases: tuple[str, ...] = ()
	document_root: Optional[Path] = None
	enabled: bool = False
	config_file: Optional[Path] = None
	listen_ports: tuple[int, ...] = ()
	ssl_certificate: Optional[Path] = None
	ssl_certificate_key: Optional[Path] = None

	@property
	def server_names(self) -> tuple[str, ...]:
		return (self.name, *self.aliases)

	@property
	def listens_tls(self) -> bool:
		return 443 in self.listen_ports

	def to_dict(self) -> dict[str, Any]:
		return {
			"name": self.name,
			"aliases": list(self.aliases),
			"document_root": str(self.document_root) if self.document_root else None,
			"enabled": self.enabled,
			"config_file": str(self.config_file) if self.config_file else None,
			"listen_ports": list(self.listen_ports),
			"ssl_certificate": str(self.ssl_certificate) if self.ssl_certificate else None,
		}


@dataclass(frozen=True)
class Certificate:
	"""Certificate status for one domain at ``checked_at``.

	``days_until_expiry`` is never stored; it is derived from ``expires_at``
	every time it is asked for.
	"""
	domain: str
	has_certificate: bool
	issuer: Optional[str] = None
	subject: Optional[str] = None
	common_name: Optional[str] = None
	issued_at: Optional[datetime] = None
	expires_at: Optional[datetime] = None
	fingerprint: Optional[str] = None
	source_method: Optional[str] = None
	fallback: bool = False
	cert_path: Optional[str] = None
	error: Optional[str] = None
	checked_at: datetime = field(default_factory=utcnow)

	@classmethod
	def missing(cls, domain: str, *, error: Optional[str] = None) -> "Certificate":
		return cls(domain=domain, has_certificate=False, error=error)

	def days_until_expiry(self, now: Optional[datetime] = None) -> Optional[int]:
		if self.expires_at is None:
			return None
		return days_until(self.expires_at, now)

	def is_expired(self, now: Optional[datetime] = None) -> bool:
		days = self.days_until_expiry(now)
		return days is not None and days <= 0

	def is_expiring_soon(self, now: Optional[datetime] = None, threshold: int = EXPIRY_WARNING_DAYS) -> bool:
		days = self.days_until_expiry(now)
		return days is not None and 0 < days <= threshold

	def to_dict(self, now: Optional[datetime] = None) -> dict[str, Any]:
		return {
			"domain": self.domain,
			"has_certificate": self.has_certificate,
			"issuer": self.issuer,
			"subject": self.subject,
			"common_name": self.common_name,
			"issued_at": isoformat_or_none(self.issued_at),
			"expires_at": isoformat_or_none(self.expires_at),
			"days_until_expiry": self.days_until_expiry(now),
			"is_expired": self.is_expired(now),
			"is_expiring_soon": self.is_expiring_soon(now),
			"fingerprint": self.fingerprint,
			"source_method": self.source_method,
			"fallback": self.fallback,
			"cert_path": self.cert_path,
			"error": self.error,
			"checked_at": self.checked_at.isoformat(),
		}


@dataclass(frozen=True)
class OperationRecord:
	"""An in-flight install/renew operation, keyed by domain."""
	op_id: str
	domain: str
	kind: OperationKind
	method: Optional[Method]
	trigger: Trigger
	started_at: datetime
	started_monotonic: float
	# Set once the tool lock is held; None while still waiting
	running_monotonic: Optional[float] = None

	@property
	def state(self) -> str:
		return "queued" if self.running_monotonic is None else "running"

	def elapsed(self, now_monotonic: float) -> float:
		return max(0.0, now_monotonic - self.started_monotonic)

	def run_elapsed(self, now_monotonic: float) -> Optional[float]:
		if self.running_monotonic is None:
			return None
		return max(0.0, now_monotonic - self.running_monotonic)

	def to_dict(self, now_monotonic: float) -> dict[str, Any]:
		run = self.run_elapsed(now_monotonic)
		return {
			"op_id": self.op_id,
			"domain": self.domain,
			"kind": self.kind,
			"method": self.method,
			"trigger": self.trigger,
			"state": self.state,
			"started_at": self.started_at.isoformat(),
			"elapsed_seconds": round(self.elapsed(now_monotonic), 3),
			"running_seconds": round(run, 3) if run is not None else None,
		}
