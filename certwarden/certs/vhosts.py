#!/usr/bin/env python3
#
# certwarden/certs/vhosts.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Read-only discovery of nginx virtual hosts."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

from .types import Domain

_log = logging.getLogger(__name__)

__all__ = ["VirtualHostRegistry", "parse_vhost"]

_COMMENT_RE = re.compile(r"#.*$", re.MULTILINE)
_DIRECTIVE_RE = re.compile(r"^\s*(server_name|listen|root|ssl_certificate_key|ssl_certificate)\s+([^;]+);", re.MULTILINE)
_PORT_RE = re.compile(r"(?:^|:)(\d{1,5})\b")

_SKIP_FILES = frozenset({"default"})


def parse_vhost(text: str, *, config_file: Optional[Path] = None, enabled: bool = False) -> Optional[Domain]:
	"""Parse one nginx site file. Returns None when it names no server."""
	text = _COMMENT_RE.sub("", text)
	names: list[str] = []
	ports: list[int] = []
	root: Optional[Path] = None
	cert: Optional[Path] = None
	key: Optional[Path] = None

	for directive, value in _DIRECTIVE_RE.findall(text):
		value = value.strip()
		if directive == "server_name":
			for name in value.split():
				if name not in ("_", "localhost") and name not in names:
					names.append(name)
		elif directive == "listen":
			match = _PORT_RE.search(value.split()[0])
			if match:
				port = int(match.group(1))
				if port not in ports:
					ports.append(port)
		elif directive == "root" and root is None:
			root = Path(value.strip("\"'"))
		elif directive == "ssl_certificate" and cert is None:
			cert = Path(value.strip("\"'"))
		elif directive == "ssl_certificate_key" and key is None:
			key = Path(value.strip("\"'"))

	if not names:
		return None
	return Domain(
		name=names[0],
		aliases=tuple(names[1:]),
		document_root=root,
		enabled=enabled,
		config_file=config_file,
		listen_ports=tuple(ports),
		ssl_certificate=cert,
		ssl_certificate_key=key,
	)


class VirtualHostRegistry:
	"""Parses ``sites-available``; a site is enabled when ``sites-enabled`` has it."""

	def __init__(self, sites_available: Path, sites_enabled: Path) -> None:
		self._available = sites_available
		self._enabled = sites_enabled

	def _enabled_names(self) -> set[str]:
		if not self._enabled.is_dir():
			return set()
		return {p.name for p in self._enabled.iterdir()}

	def scan(self) -> list[Domain]:
		"""All parseable vhosts, sorted by primary name. Blocking I/O."""
		if not self._available.is_dir():
			_log.warning("VHOST_SCAN directory not found: %s", self._available)
			return []

		enabled = self._enabled_names()
		domains: list[Domain] = []
		for path in sorted(self._available.iterdir()):
			if path.name in _SKIP_FILES or path.name.startswith(".") or not path.is_file():
				continue
			try:
				text = path.read_text(encoding="utf-8", errors="replace")
			except OSError as exc:
				_log.warning("VHOST_SCAN cannot read %s: %s", path, exc)
				continue
			domain = parse_vhost(text, config_file=path, enabled=path.name in enabled)
			if domain is None:
				_log.debug("VHOST_SCAN no server_name in %s", path)
				continue
			domains.append(domain)

		domains.sort(key=lambda d: d.name)
		_log.debug("VHOST_SCAN found %d sites in %s", len(domains), self._available)
		return domains

	def find(self, name: str) -> Optional[Domain]:
		"""Match by primary name, alias or config file name."""
		for domain in self.scan():
			if name in domain.server_names:
				return domain
			if domain.config_file is not None and domain.config_file.name in (name, f"{name}.conf"):
				return domain
		return None

	def names(self) -> list[str]:
		return [d.name for d in self.scan()]
