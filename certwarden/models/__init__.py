#!/usr/bin/env python3
#
# certwarden/models/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Pydantic request models for CertWarden."""

from .certificates import (
	InstallRequest,
	RenewRequest,
)
from .autorenewal import (
	AutorenewalSettingsUpdate,
	DomainAutorenewalUpdate,
)

__all__ = [
	# Certificates
	"InstallRequest",
	"RenewRequest",
	# Autorenewal
	"AutorenewalSettingsUpdate",
	"DomainAutorenewalUpdate",
]
