#!/usr/bin/env python3
#
# certwarden/certs/store.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Read-only certificate metadata lookup.

Detection order, first confident hit wins:

1. ``files``  - PEM files under the known on-disk conventions (ground truth)
2. ``vhost``  - the ``ssl_certificate`` of a vhost listening on 443
3. ``tool``   - ``certbot certificates`` output (flagged fallback)
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID

from .errors import (
	AlreadyRunningError,
	ConfigurationError,
	NotFoundError,
	OperationTimeoutError,
	StaleLockError,
	ToolError,
)
from .types import Certificate
from ..utils.time import parse_utc, utcnow

if TYPE_CHECKING:
	from .lock import ProcessLockManager
	from .tool import ToolAdapter
	from .vhosts import VirtualHostRegistry

_log = logging.getLogger(__name__)

__all__ = ["CertificateStore", "load_certificate_file", "parse_certbot_certificates"]

_TOOL_QUERY_TIMEOUT = 30.0
_TOOL_LISTING_TTL = 60.0

# `certbot certificates` output fields
_CERT_NAME_RE = re.compile(r"^\s*Certificate Name:\s*(\S+)", re.MULTILINE)
_DOMAINS_RE = re.compile(r"^\s*Domains:\s*(.+)$", re.MULTILINE)
_EXPIRY_RE = re.compile(r"^\s*Expiry Date:\s*(.+?)\s*\(", re.MULTILINE)
_PATH_RE = re.compile(r"^\s*Certificate Path:\s*(\S+)", re.MULTILINE)


def _name_attr(name: x509.Name, oid: x509.ObjectIdentifier) -> Optional[str]:
	attrs = name.get_attributes_for_oid(oid)
	if not attrs:
		return None
	value = attrs[0].value
	return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)


def load_certificate_file(path: Path, domain: str, source_method: str) -> Certificate:
	"""Load the leaf certificate of a PEM bundle into a Certificate.

	Raises:
		OSError: unreadable file
		ValueError: not a PEM certificate
	"""
	data = path.read_bytes()
	cert = x509.load_pem_x509_certificate(data)
	issuer = _name_attr(cert.issuer, NameOID.ORGANIZATION_NAME) or _name_attr(cert.issuer, NameOID.COMMON_NAME)
	return Certificate(
		domain=domain,
		has_certificate=True,
		issuer=issuer or "Unknown",
		subject=cert.subject.rfc4514_string(),
		common_name=_name_attr(cert.subject, NameOID.COMMON_NAME),
		issued_at=cert.not_valid_before_utc,
		expires_at=cert.not_valid_after_utc,
		fingerprint=cert.fingerprint(hashes.SHA256()).hex(":").upper(),
		source_method=source_method,
		cert_path=str(path),
		checked_at=utcnow(),
	)


def parse_certbot_certificates(output: str, domain: str) -> Optional[Certificate]:
	"""Pick the block for ``domain`` out of ``certbot certificates`` output."""
	blocks = re.split(r"(?=^\s*Certificate Name:)", output, flags=re.MULTILINE)
	for block in blocks:
		name_match = _CERT_NAME_RE.search(block)
		if not name_match:
			continue
		domains_match = _DOMAINS_RE.search(block)
		names = domains_match.group(1).split() if domains_match else []
		if name_match.group(1) != domain and domain not in names:
			continue

		expires_at: Optional[datetime] = None
		expiry_match = _EXPIRY_RE.search(block)
		if expiry_match:
			expires_at = parse_utc(expiry_match.group(1).strip())
			if expires_at is None:
				_log.debug("CERT_TOOL unparseable expiry %r", expiry_match.group(1))
		path_match = _PATH_RE.search(block)
		return Certificate(
			domain=domain,
			has_certificate=True,
			common_name=names[0] if names else name_match.group(1),
			subject=", ".join(names) or None,
			expires_at=expires_at,
			source_method="tool",
			fallback=True,
			cert_path=path_match.group(1) if path_match else None,
			checked_at=utcnow(),
		)
	return None


class CertificateStore:
	"""Locate certificate material for a domain. Never mutates anything."""

	def __init__(
		self,
		*,
		live_dir: Path,
		acme_sh_home: Optional[Path] = None,
		acme_dir: Optional[Path] = Path("/etc/ssl/acme"),
		system_certs_dir: Optional[Path] = Path("/etc/ssl/certs"),
		registry: Optional["VirtualHostRegistry"] = None,
		tool: Optional["ToolAdapter"] = None,
		lock: Optional["ProcessLockManager"] = None,
		tool_timeout: float = _TOOL_QUERY_TIMEOUT,
	) -> None:
		self._live_dir = live_dir
		self._acme_sh_home = acme_sh_home
		self._acme_dir = acme_dir
		self._system_certs_dir = system_certs_dir
		self._registry = registry
		self._tool = tool
		self._process_lock = lock
		self._tool_timeout = tool_timeout
		self._tool_lock = asyncio.Lock()
		self._tool_listing_cache: Optional[tuple[float, str, Optional[str]]] = None

	def candidate_paths(self, domain: str) -> list[Path]:
		"""On-disk locations to probe, primary convention first."""
		names = [domain]
		if not domain.startswith("www."):
			names.append(f"www.{domain}")
		paths: list[Path] = []
		for name in names:
			paths.append(self._live_dir / name / "fullchain.pem")
			if self._acme_dir is not None:
				paths.append(self._acme_dir / name / "fullchain.pem")
			if self._acme_sh_home is not None:
				paths.append(self._acme_sh_home / name / "fullchain.cer")
				paths.append(self._acme_sh_home / f"{name}_ecc" / "fullchain.cer")
			if self._system_certs_dir is not None:
				paths.append(self._system_certs_dir / f"{name}.pem")
		return paths

	# -- strategies --------------------------------------------------------

	def _from_files(self, domain: str, errors: list[str]) -> Optional[Certificate]:
		for path in self.candidate_paths(domain):
			try:
				if not path.is_file():
					continue
				return load_certificate_file(path, domain, "files")
			except (OSError, ValueError) as exc:
				_log.warning("CERT_READ failed path=%s: %s", path, exc)
				errors.append(f"{path}: {exc}")
		return None

	def _from_vhost(self, domain: str, errors: list[str]) -> Optional[Certificate]:
		if self._registry is None:
			return None
		try:
			vhost = self._registry.find(domain)
		except OSError as exc:
			errors.append(f"vhost lookup: {exc}")
			return None
		if vhost is None or not vhost.listens_tls or vhost.ssl_certificate is None:
			return None
		try:
			return load_certificate_file(vhost.ssl_certificate, domain, "vhost")
		except FileNotFoundError:
			return None
		except (OSError, ValueError) as exc:
			_log.warning("CERT_READ failed vhost=%s path=%s: %s", vhost.name, vhost.ssl_certificate, exc)
			errors.append(f"{vhost.ssl_certificate}: {exc}")
			return None

	async def _tool_listing(self) -> tuple[str, Optional[str]]:
		"""Full ``certbot certificates`` output, memoized for a short window.

		Returns (stdout, error). One listing covers every managed certificate,
		so a fleet scan spawns certbot at most once per window.

		The query takes the process lock without waiting. While another
		certbot run holds it the previous listing is reused, or the lookup
		reports the tool as busy when there is none.
		"""
		assert self._tool is not None
		async with self._tool_lock:
			now = time.monotonic()
			cached = self._tool_listing_cache
			if cached is not None and now - cached[0] < _TOOL_LISTING_TTL:
				return cached[1], cached[2]

			lease = None
			if self._process_lock is not None:
				try:
					lease = await self._process_lock.acquire("certificates")
				except (AlreadyRunningError, StaleLockError) as exc:
					_log.info("CERT_TOOL listing skipped: %s", exc.message)
					if cached is not None:
						return cached[1], cached[2]
					return "", f"certbot certificates skipped: {exc.message}"

			stdout, error = "", None
			try:
				result = await self._tool.invoke(["certificates"], timeout=self._tool_timeout)
				if result.ok:
					stdout = result.stdout
				else:
					error = f"certbot certificates exited {result.returncode}: {result.stderr.strip()[-500:]}"
			except ConfigurationError as exc:
				_log.info("CERT_TOOL fallback disabled: %s", exc)
				self._tool = None
			except (ToolError, OperationTimeoutError) as exc:
				error = f"certbot certificates: {exc}"
			finally:
				if lease is not None:
					await self._process_lock.release(lease.token)
			self._tool_listing_cache = (time.monotonic(), stdout, error)
			return stdout, error

	async def _from_tool(self, domain: str, errors: list[str]) -> Optional[Certificate]:
		if self._tool is None:
			return None
		stdout, error = await self._tool_listing()
		if error:
			errors.append(error)
			return None
		return parse_certbot_certificates(stdout, domain)

	# -- public ------------------------------------------------------------

	def invalidate(self) -> None:
		"""Drop the memoized tool listing so the next read re-queries certbot."""
		self._tool_listing_cache = None

	async def read(self, domain: str) -> Certificate:
		"""Return certificate metadata for ``domain``.

		Raises:
			NotFoundError: no strategy found certificate material
			ToolError: nothing found and at least one strategy failed
		"""
		errors: list[str] = []

		cert = await asyncio.to_thread(self._from_files, domain, errors)
		if cert is None:
			cert = await asyncio.to_thread(self._from_vhost, domain, errors)
		if cert is None:
			cert = await self._from_tool(domain, errors)
			if cert is not None:
				_log.info("CERT_READ domain=%s resolved via tool fallback", domain)

		if cert is not None:
			return cert
		if errors:
			raise ToolError(
				f"Certificate inspection failed for {domain}",
				details={"reasons": errors},
			)
		raise NotFoundError(f"No certificate found for {domain}")

