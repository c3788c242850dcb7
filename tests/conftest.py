#!/usr/bin/env python3
#
# tests/conftest.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Shared fixtures: fake certbot, fake store, orchestrator wired on tmp_path."""

from __future__ import annotations

import pytest

from certwarden.certs.activity import ActivityLog
from certwarden.certs.autorenewal import AutorenewalConfigStore
from certwarden.certs.dns_provider import DnsProvider
from certwarden.certs.operations import OperationQueue
from certwarden.certs.orchestrator import CertificateOrchestrator, OrchestratorSettings
from certwarden.certs.vhosts import VirtualHostRegistry

from fakes import FakeStore, FakeTool, ManualClock


@pytest.fixture
def fake_tool() -> FakeTool:
	return FakeTool()


@pytest.fixture
def fake_store() -> FakeStore:
	return FakeStore()


@pytest.fixture
def op_clock() -> ManualClock:
	"""Monotonic clock of the operation queue."""
	return ManualClock()


@pytest.fixture
def sites(tmp_path):
	available = tmp_path / "sites-available"
	enabled = tmp_path / "sites-enabled"
	available.mkdir()
	enabled.mkdir()
	return available, enabled


@pytest.fixture
def orchestrator(tmp_path, fake_tool, fake_store, sites, op_clock) -> CertificateOrchestrator:
	available, enabled = sites
	return CertificateOrchestrator(
		tool=fake_tool,
		store=fake_store,
		registry=VirtualHostRegistry(available, enabled),
		autorenewal_store=AutorenewalConfigStore(tmp_path / "autorenewal.json"),
		dns=DnsProvider(tmp_path / "dns-credentials.json", None),
		activity=ActivityLog(tmp_path / "autorenewal.log"),
		settings=OrchestratorSettings(
			webroot_timeout=30.0,
			dns_timeout=60.0,
			operation_grace=5.0,
			settle_delay=0.0,
			queue_wait_limit=5.0,
		),
		scan_pacing=0.0,
		queue=OperationQueue(clock=op_clock),
	)
