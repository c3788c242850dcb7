#!/usr/bin/env python3
#
# certwarden/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""CertWarden – TLS certificate lifecycle orchestrator."""

from .main import create_app

__all__ = ["create_app"]
