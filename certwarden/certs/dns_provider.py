#!/usr/bin/env python3
#
# certwarden/certs/dns_provider.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""DNS provider (ClouDNS) credentials for the dns-challenge method."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import httpx

from .errors import ConfigurationError

_log = logging.getLogger(__name__)

__all__ = ["DnsCredentials", "DnsProvider"]

API_BASE_URL = "https://api.cloudns.net"
_HTTP_TIMEOUT = 10.0

_REMEDIATION = (
	"Create {path} with {{\"auth_id\": \"...\", \"auth_password\": \"...\"}} "
	"(or \"sub_auth_id\" for a sub-user) and set CERTWARDEN_DNS_HOOK to the "
	"certbot auth/cleanup hook script."
)


@dataclass(frozen=True)
class DnsCredentials:
	auth_password: str
	auth_id: Optional[str] = None
	sub_auth_id: Optional[str] = None

	def query_params(self) -> dict[str, str]:
		params = {"auth-password": self.auth_password}
		if self.sub_auth_id:
			params["sub-auth-id"] = self.sub_auth_id
		else:
			params["auth-id"] = self.auth_id or ""
		return params


class DnsProvider:
	"""Loads and validates provider credentials; can probe the provider API."""

	def __init__(
		self,
		credentials_path: Optional[Path],
		hook: Optional[Path],
		*,
		api_base_url: str = API_BASE_URL,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		self._path = credentials_path
		self._hook = hook
		self._api_base_url = api_base_url
		self._transport = transport

	@property
	def hook(self) -> Optional[Path]:
		return self._hook

	def _config_error(self, message: str) -> ConfigurationError:
		return ConfigurationError(message, remediation=_REMEDIATION.format(path=self._path or "<credentials file>"))

	def load_credentials(self) -> DnsCredentials:
		"""Read and validate the credentials file.

		Raises:
			ConfigurationError: file missing, unreadable or incomplete
		"""
		if self._path is None or not self._path.is_file():
			raise self._config_error("DNS provider credentials not configured")
		try:
			raw: Any = json.loads(self._path.read_text(encoding="utf-8"))
		except (OSError, ValueError) as exc:
			raise self._config_error(f"Cannot read DNS provider credentials: {exc}") from exc
		if not isinstance(raw, dict):
			raise self._config_error("DNS provider credentials must be a JSON object")

		password = str(raw.get("auth_password") or "").strip()
		auth_id = str(raw.get("auth_id") or "").strip() or None
		sub_auth_id = str(raw.get("sub_auth_id") or "").strip() or None
		if not password or not (auth_id or sub_auth_id):
			raise self._config_error("DNS provider credentials are incomplete (need auth_id or sub_auth_id, and auth_password)")
		return DnsCredentials(auth_password=password, auth_id=auth_id, sub_auth_id=sub_auth_id)

	def require_ready(self) -> DnsCredentials:
		"""Credentials plus an executable hook, or a ConfigurationError."""
		creds = self.load_credentials()
		if self._hook is None or not self._hook.is_file():
			raise self._config_error("DNS challenge hook script not found")
		if not os.access(self._hook, os.X_OK):
			raise self._config_error(f"DNS challenge hook {self._hook} is not executable")
		return creds

	def status(self) -> dict[str, Any]:
		try:
			creds = self.require_ready()
		except ConfigurationError as exc:
			return {"configured": False, "error": exc.message, "remediation": exc.remediation}
		return {
			"configured": True,
			"auth_type": "sub_auth_id" if creds.sub_auth_id else "auth_id",
			"hook": str(self._hook),
		}

	async def test_connection(self) -> dict[str, Any]:
		"""Authenticated login probe against the provider API."""
		creds = self.load_credentials()
		async with httpx.AsyncClient(
			base_url=self._api_base_url,
			timeout=_HTTP_TIMEOUT,
			transport=self._transport,
		) as client:
			try:
				resp = await client.get("/dns/login.json", params=creds.query_params())
				resp.raise_for_status()
				body = resp.json()
			except (httpx.HTTPError, ValueError) as exc:
				_log.warning("DNS_PROVIDER connection test failed: %s", exc)
				return {"success": False, "message": str(exc)}

		ok = isinstance(body, dict) and body.get("status") == "Success"
		message = body.get("statusDescription", "") if isinstance(body, dict) else ""
		_log.info("DNS_PROVIDER connection test success=%s", ok)
		return {"success": ok, "message": message or ("Authenticated" if ok else "Authentication failed")}
