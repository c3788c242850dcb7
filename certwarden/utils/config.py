#!/usr/bin/env python3
#
# certwarden/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Configuration loading and app-level defaults."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path

_log = logging.getLogger(__name__)

_ENV_PREFIX = "CERTWARDEN_"


class ConfigValidationError(Exception):
	"""Raised when critical configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# Fixed constants
# ---------------------------------------------------------------------------
LETSENCRYPT_LIVE_DIR = Path("/etc/letsencrypt/live")
NGINX_SITES_AVAILABLE = Path("/etc/nginx/sites-available")
NGINX_SITES_ENABLED = Path("/etc/nginx/sites-enabled")

# Renewal threshold used for "expiring soon" classification (days)
EXPIRY_WARNING_DAYS = 30


@dataclass(frozen=True)
class Config:
	"""Resolved runtime configuration derived from env and defaults."""
	base_dir: Path
	data_dir: Path
	live_dir: Path = LETSENCRYPT_LIVE_DIR
	acme_sh_home: Path = Path("/root/.acme.sh")
	certbot_bin: str = "certbot"
	certbot_config_dir: Path = Path("/etc/letsencrypt")
	certbot_work_dir: Path = Path("/var/lib/letsencrypt")
	certbot_logs_dir: Path = Path("/var/log/letsencrypt")
	sites_available: Path = NGINX_SITES_AVAILABLE
	sites_enabled: Path = NGINX_SITES_ENABLED
	cache_ttl: float = 300.0
	scan_batch_size: int = 25
	scan_pacing: float = 0.05
	scan_progress_every: int = 100
	webroot_timeout: float = 300.0
	dns_timeout: float = 900.0
	operation_grace: float = 120.0
	settle_delay: float = 2.0
	queue_wait_limit: float = 1800.0
	watchdog_interval: float = 60.0
	status_scan_interval: float = 21600.0
	dns_credentials: Path | None = None
	dns_hook: Path | None = None
	log_level: str = "INFO"
	host: str = "0.0.0.0"
	port: int = 8000

	@property
	def autorenewal_path(self) -> Path:
		return self.data_dir / "autorenewal.json"

	@property
	def activity_log_path(self) -> Path:
		return self.data_dir / "autorenewal.log"


def _parse_value(raw: str) -> str:
	"""Extract value, respecting quotes and stripping inline comments."""
	raw = raw.strip()
	if raw and raw[0] in ('"', "'"):
		quote = raw[0]
		end = raw.find(quote, 1)
		if end != -1:
			return raw[1:end]
	if " #" in raw:
		raw = raw.split(" #", 1)[0]
	return raw.strip()


def load_dotenv(dotenv_path: Path | None = None) -> None:
	"""Load simple KEY=VALUE pairs from settings.env.

	Blank lines, comments and ``export`` prefixes are handled. Variables
	already present in the environment are never overridden.
	"""
	project_root = Path(__file__).resolve().parents[2]
	dotenv_path = dotenv_path or (project_root / "settings.env")
	if not dotenv_path.exists():
		return
	for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
		line = raw_line.strip()
		if not line or line.startswith("#") or "=" not in line:
			continue
		key, value = line.split("=", 1)
		key = key.strip()
		if key.startswith("export "):
			key = key[7:].strip()
		if not key:
			continue
		os.environ.setdefault(key, _parse_value(value))


def _env(name: str, default: str | None = None) -> str | None:
	return os.getenv(_ENV_PREFIX + name, default)


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
	raw = _env(name)
	if raw is None or raw == "":
		return default
	try:
		value = float(raw)
	except ValueError as exc:
		raise ConfigValidationError(f"{_ENV_PREFIX}{name} must be a number, got {raw!r}") from exc
	if value < minimum:
		raise ConfigValidationError(f"{_ENV_PREFIX}{name} must be >= {minimum}, got {value}")
	return value


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
	raw = _env(name)
	if raw is None or raw == "":
		return default
	try:
		value = int(raw)
	except ValueError as exc:
		raise ConfigValidationError(f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc
	if value < minimum:
		raise ConfigValidationError(f"{_ENV_PREFIX}{name} must be >= {minimum}, got {value}")
	return value


def _env_path(name: str, default: Path | None) -> Path | None:
	raw = _env(name)
	if raw is None or raw == "":
		return default
	return Path(raw).expanduser()


def load_config() -> Config:
	"""Load configuration from environment variables (optionally via settings.env)."""
	load_dotenv()
	project_root = Path(__file__).resolve().parents[2]

	data_dir = Path(_env("DATA_DIR", str(project_root / "data"))).resolve()

	# Self-healing: Ensure data directory exists
	try:
		if data_dir.exists() and not data_dir.is_dir():
			raise ConfigValidationError(f"Path exists but is not a directory: {data_dir}")
		data_dir.mkdir(parents=True, exist_ok=True)
	except OSError as exc:
		raise ConfigValidationError(f"Cannot create data directory: {exc}") from exc

	allowed_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
	log_level = (_env("LOG_LEVEL", "INFO") or "INFO").upper()
	if log_level not in allowed_levels:
		log_level = "INFO"

	dns_credentials = _env_path("DNS_CREDENTIALS", data_dir / "dns-credentials.json")
	dns_hook = _env_path("DNS_HOOK", None)

	return Config(
		base_dir=project_root,
		data_dir=data_dir,
		live_dir=_env_path("LIVE_DIR", LETSENCRYPT_LIVE_DIR),
		acme_sh_home=_env_path("ACME_SH_HOME", Path("/root/.acme.sh")),
		certbot_bin=_env("CERTBOT_BIN", "certbot") or "certbot",
		certbot_config_dir=_env_path("CERTBOT_CONFIG_DIR", Path("/etc/letsencrypt")),
		certbot_work_dir=_env_path("CERTBOT_WORK_DIR", Path("/var/lib/letsencrypt")),
		certbot_logs_dir=_env_path("CERTBOT_LOGS_DIR", Path("/var/log/letsencrypt")),
		sites_available=_env_path("SITES_AVAILABLE", NGINX_SITES_AVAILABLE),
		sites_enabled=_env_path("SITES_ENABLED", NGINX_SITES_ENABLED),
		cache_ttl=_env_float("CACHE_TTL", 300.0),
		scan_batch_size=_env_int("SCAN_BATCH_SIZE", 25),
		scan_pacing=_env_float("SCAN_PACING", 0.05),
		scan_progress_every=_env_int("SCAN_PROGRESS_EVERY", 100),
		webroot_timeout=_env_float("WEBROOT_TIMEOUT", 300.0, minimum=1.0),
		dns_timeout=_env_float("DNS_TIMEOUT", 900.0, minimum=1.0),
		operation_grace=_env_float("OPERATION_GRACE", 120.0),
		settle_delay=_env_float("SETTLE_DELAY", 2.0),
		queue_wait_limit=_env_float("QUEUE_WAIT_LIMIT", 1800.0, minimum=1.0),
		watchdog_interval=_env_float("WATCHDOG_INTERVAL", 60.0, minimum=1.0),
		status_scan_interval=_env_float("STATUS_SCAN_INTERVAL", 21600.0, minimum=1.0),
		dns_credentials=dns_credentials,
		dns_hook=dns_hook,
		log_level=log_level,
		host=_env("HOST", "0.0.0.0") or "0.0.0.0",
		port=_env_int("PORT", 8000),
	)


# Global config singleton with thread-safe lazy initialization
_config: Config | None = None
_config_lock = threading.Lock()


def get_config() -> Config:
	"""Get the global config singleton (thread-safe)."""
	global _config
	if _config is None:
		with _config_lock:
			if _config is None:  # Double-checked locking
				_config = load_config()
	return _config


def reset_config() -> None:
	"""Reset the cached config. Intended for tests only."""
	global _config
	with _config_lock:
		_config = None
