#!/usr/bin/env python3
#
# tests/test_orchestrator.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""End-to-end operation sequencing against the fake certbot."""

from __future__ import annotations

import asyncio

import pytest

from certwarden.certs.activity import ActivityLog
from certwarden.certs.autorenewal import AutorenewalConfigStore
from certwarden.certs.dns_provider import DnsProvider
from certwarden.certs.errors import (
	AlreadyRunningError,
	ConfigurationError,
	ConflictError,
	OperationTimeoutError,
	ToolError,
	ToolExecutionError,
)
from certwarden.certs.events import (
	AUTORENEWAL_TOGGLED,
	LOCK_CLEANUP,
	OPERATION_COMPLETE,
	OPERATION_ERROR,
	OPERATION_PROGRESS,
	OPERATION_START,
)
from certwarden.certs.lock import LockState, ProcessLockManager
from certwarden.certs.orchestrator import CertificateOrchestrator, OrchestratorSettings
from certwarden.certs.store import CertificateStore
from certwarden.certs.vhosts import VirtualHostRegistry

from fakes import make_cert


def _issue_into(store):
	"""on_invoke hook: certbot 'creates' the certificate for the -d domain."""
	def _hook(args):
		domain = args[args.index("-d") + 1] if "-d" in args else args[args.index("--cert-name") + 1]
		store.certs[domain] = make_cert(domain, 90)
	return _hook


async def _wait_started(tool) -> None:
	await asyncio.wait_for(tool.started.wait(), timeout=2.0)


def _types(orchestrator, domain=None):
	return [e.type for e in orchestrator.broadcaster.recent(200, domain=domain)]


class TestInstall:
	"""install: validate, queue, lock, invoke, refresh, emit."""

	@pytest.mark.asyncio
	async def test_success_emits_stages_and_records_method(self, orchestrator, fake_tool, fake_store):
		fake_tool.on_invoke = _issue_into(fake_store)

		result = await orchestrator.install("example.com", "admin@example.com", "webroot")

		assert result["certificate"]["has_certificate"] is True
		types = _types(orchestrator, "example.com")
		assert types[0] == OPERATION_START
		assert types[-1] == OPERATION_COMPLETE
		assert OPERATION_PROGRESS in types
		assert len(orchestrator.queue) == 0
		assert orchestrator.lock.state is LockState.FREE

		config = await orchestrator.autorenewal_store.load()
		assert config.domains["example.com"].method == "webroot"

	@pytest.mark.asyncio
	async def test_unknown_vhost_falls_back_to_nginx_plugin(self, orchestrator, fake_tool, fake_store):
		fake_tool.on_invoke = _issue_into(fake_store)
		await orchestrator.install("example.com", "admin@example.com")
		args = fake_tool.calls[0]
		assert args[:2] == ["certonly", "--nginx"]
		assert "--non-interactive" in args

	@pytest.mark.asyncio
	async def test_vhost_root_and_aliases_are_used(self, orchestrator, fake_tool, fake_store, sites):
		available, _ = sites
		(available / "example").write_text(
			"server {\n listen 80;\n server_name example.com www.example.com;\n root /var/www/example;\n}\n"
		)
		fake_tool.on_invoke = _issue_into(fake_store)

		await orchestrator.install("example.com", "admin@example.com", "webroot")

		args = fake_tool.calls[0]
		assert args[:4] == ["certonly", "--webroot", "-w", "/var/www/example"]
		assert args.count("-d") == 2
		assert "www.example.com" in args

	@pytest.mark.asyncio
	async def test_tool_output_is_streamed_per_stream(self, orchestrator, fake_tool, fake_store):
		fake_tool.on_invoke = _issue_into(fake_store)
		fake_tool.stdout_lines = ["Requesting a certificate"]
		fake_tool.stderr_lines = ["Saving debug log"]

		await orchestrator.install("example.com", "admin@example.com")

		stages = {
			e.data["message"]: e.data["stage"]
			for e in orchestrator.broadcaster.recent(200)
			if e.type == OPERATION_PROGRESS
		}
		assert stages["Requesting a certificate"] == "progress"
		assert stages["Saving debug log"] == "warning"

	@pytest.mark.asyncio
	async def test_nonzero_exit_raises_and_releases_everything(self, orchestrator, fake_tool):
		fake_tool.returncode = 1
		fake_tool.stderr_lines = ["Challenge failed for domain example.com"]

		with pytest.raises(ToolExecutionError) as exc_info:
			await orchestrator.install("example.com", "admin@example.com")

		assert exc_info.value.returncode == 1
		assert _types(orchestrator, "example.com")[-1] == OPERATION_ERROR
		assert len(orchestrator.queue) == 0
		assert orchestrator.lock.state is LockState.FREE

	@pytest.mark.asyncio
	async def test_success_without_certificate_is_tool_error(self, orchestrator):
		with pytest.raises(ToolError):
			await orchestrator.install("example.com", "admin@example.com")
		assert len(orchestrator.queue) == 0

	@pytest.mark.asyncio
	async def test_invalid_input_is_rejected_before_queueing(self, orchestrator, fake_tool):
		with pytest.raises(ValueError):
			await orchestrator.install("not a domain", "admin@example.com")
		for email in ("not-an-email", "admin@@example.com", "admin@example..com"):
			with pytest.raises(ValueError):
				await orchestrator.install("example.com", email)
		assert fake_tool.calls == []
		assert orchestrator.broadcaster.recent(10) == []

	@pytest.mark.asyncio
	async def test_dns_without_credentials_fails_before_queueing(self, orchestrator, fake_tool):
		with pytest.raises(ConfigurationError) as exc_info:
			await orchestrator.install("example.com", "admin@example.com", "dns-challenge")
		assert exc_info.value.remediation
		assert fake_tool.calls == []
		assert len(orchestrator.queue) == 0
		[event] = orchestrator.broadcaster.recent(10, domain="example.com")
		assert event.type == OPERATION_ERROR
		assert event.data["category"] == "configuration"
		assert event.data["kind"] == "install"

	@pytest.mark.asyncio
	async def test_dns_renewal_in_sweep_emits_error(self, orchestrator, fake_tool, fake_store):
		fake_store.certs["example.com"] = make_cert("example.com", 5)
		await orchestrator.set_autorenewal("example.com", True, "dns-challenge")

		summary = await orchestrator.run_autorenewal("manual")

		assert summary["failed"] == 1
		assert fake_tool.calls == []
		errors = [e for e in orchestrator.broadcaster.recent(50, domain="example.com") if e.type == OPERATION_ERROR]
		assert [e.data["kind"] for e in errors] == ["renew"]
		assert errors[0].data["category"] == "configuration"


class TestConcurrency:

	@pytest.mark.asyncio
	async def test_same_domain_conflicts_while_in_flight(self, orchestrator, fake_tool, fake_store):
		fake_tool.gate = asyncio.Event()
		fake_tool.on_invoke = _issue_into(fake_store)
		first = asyncio.create_task(orchestrator.install("example.com", "admin@example.com"))
		await _wait_started(fake_tool)

		with pytest.raises(ConflictError):
			await orchestrator.renew("example.com")

		fake_tool.gate.set()
		await first
		assert len(fake_tool.calls) == 1

	@pytest.mark.asyncio
	async def test_different_domains_are_serialized(self, orchestrator, fake_tool, fake_store):
		fake_tool.gate = asyncio.Event()
		fake_tool.on_invoke = _issue_into(fake_store)
		a = asyncio.create_task(orchestrator.install("a.example.com", "admin@example.com"))
		b = asyncio.create_task(orchestrator.install("b.example.com", "admin@example.com"))
		await _wait_started(fake_tool)
		await asyncio.sleep(0.01)

		status = await orchestrator.queue_status()
		states = sorted(item["state"] for item in status["in_flight"])
		assert states == ["queued", "running"]
		assert len(fake_tool.calls) == 1

		fake_tool.gate.set()
		await asyncio.gather(a, b)
		assert fake_tool.max_active == 1
		assert len(fake_tool.calls) == 2

	@pytest.mark.asyncio
	async def test_conflict_and_serialization_scenario(self, orchestrator, fake_tool, fake_store):
		"""renew(a) twice conflicts; renew(b) waits for the lock, then runs to completion."""
		fake_store.certs["a.example.com"] = make_cert("a.example.com", 5)
		fake_store.certs["b.example.com"] = make_cert("b.example.com", 5)
		fake_tool.gate = asyncio.Event()
		fake_tool.on_invoke = _issue_into(fake_store)

		renew_a = asyncio.create_task(orchestrator.renew("a.example.com"))
		await _wait_started(fake_tool)
		renew_b = asyncio.create_task(orchestrator.renew("b.example.com"))
		await asyncio.sleep(0.01)

		with pytest.raises(ConflictError):
			await orchestrator.renew("a.example.com")

		fake_tool.gate.set()
		result_a, result_b = await asyncio.gather(renew_a, renew_b)

		assert result_a["domain"] == "a.example.com"
		assert result_b["domain"] == "b.example.com"
		assert [c[c.index("--cert-name") + 1] for c in fake_tool.calls] == ["a.example.com", "b.example.com"]
		assert len(orchestrator.queue) == 0

		types_b = _types(orchestrator, "b.example.com")
		assert types_b[0] == OPERATION_START
		assert types_b[-1] == OPERATION_COMPLETE
		assert set(types_b[1:-1]) <= {OPERATION_PROGRESS}


class TestRenew:

	@pytest.mark.asyncio
	async def test_renew_uses_cert_name(self, orchestrator, fake_tool, fake_store):
		fake_store.certs["example.com"] = make_cert("example.com", 5)
		fake_tool.on_invoke = _issue_into(fake_store)

		result = await orchestrator.renew("example.com")

		assert fake_tool.calls == [["renew", "--cert-name", "example.com", "--non-interactive"]]
		assert result["method"] == "webroot"

	@pytest.mark.asyncio
	async def test_renew_refreshes_cache(self, orchestrator, fake_tool, fake_store):
		fake_store.certs["example.com"] = make_cert("example.com", 5)
		before = await orchestrator.refresh_status("example.com")
		fake_tool.on_invoke = _issue_into(fake_store)

		await orchestrator.renew("example.com")

		after = await orchestrator.refresh_status("example.com")
		assert after.expires_at > before.expires_at
		assert fake_store.invalidations == 1

	@pytest.mark.asyncio
	async def test_renew_all_uses_reserved_key_and_clears_cache(self, orchestrator, fake_tool, fake_store):
		fake_store.certs["example.com"] = make_cert("example.com", 5)
		await orchestrator.refresh_status("example.com")

		result = await orchestrator.renew_all()

		assert fake_tool.calls == [["renew", "--non-interactive"]]
		assert result["domain"] == "*"
		assert len(orchestrator.cache) == 0


class TestWatchdog:
	"""Stuck operations are force-ended without waiting for certbot."""

	@pytest.mark.asyncio
	async def test_stuck_operation_is_cleared_and_late_completion_suppressed(
		self, orchestrator, fake_tool, fake_store, op_clock,
	):
		fake_tool.gate = asyncio.Event()
		fake_tool.on_invoke = _issue_into(fake_store)
		stuck = asyncio.create_task(orchestrator.install("example.com", "admin@example.com"))
		await _wait_started(fake_tool)

		assert await orchestrator.watchdog_sweep() == []
		op_clock.advance(36)  # webroot 30s + 5s grace
		cleared = await orchestrator.watchdog_sweep()

		assert [c["domain"] for c in cleared] == ["example.com"]
		assert len(orchestrator.queue) == 0
		assert orchestrator.lock.state is LockState.FREE
		assert not stuck.done()
		errors = [e for e in orchestrator.broadcaster.recent(200) if e.type == OPERATION_ERROR]
		assert errors[-1].data["category"] == "timeout"
		assert LOCK_CLEANUP in _types(orchestrator)

		fake_tool.gate.set()
		await stuck
		assert OPERATION_COMPLETE not in _types(orchestrator, "example.com")

	@pytest.mark.asyncio
	async def test_new_record_survives_late_finisher(self, orchestrator, fake_tool, fake_store, op_clock):
		fake_tool.gate = asyncio.Event()
		fake_tool.on_invoke = _issue_into(fake_store)
		stuck = asyncio.create_task(orchestrator.install("example.com", "admin@example.com"))
		await _wait_started(fake_tool)
		op_clock.advance(100)
		await orchestrator.watchdog_sweep()

		fresh = orchestrator.queue.begin("example.com", "renew", "webroot")
		fake_tool.gate.set()
		await stuck

		assert orchestrator.queue.owns("example.com", fresh.op_id)

	@pytest.mark.asyncio
	async def test_waiter_behind_external_certbot_is_cleared(self, orchestrator, fake_tool, op_clock):
		fake_tool.process_running = True
		waiting = asyncio.create_task(orchestrator.renew("a.example.com"))
		for _ in range(100):
			if "a.example.com" in orchestrator.queue:
				break
			await asyncio.sleep(0.01)
		assert orchestrator.queue.get("a.example.com").state == "queued"

		op_clock.advance(4)  # below the 5s wait limit
		assert await orchestrator.watchdog_sweep() == []
		op_clock.advance(2)
		cleared = await orchestrator.watchdog_sweep()

		assert [(c["domain"], c["state"]) for c in cleared] == [("a.example.com", "queued")]
		assert "a.example.com" not in orchestrator.queue
		assert LOCK_CLEANUP not in _types(orchestrator)
		errors = [e for e in orchestrator.broadcaster.recent(50) if e.type == OPERATION_ERROR]
		assert errors[-1].data["category"] == "timeout"

		fake_tool.process_running = False
		with pytest.raises(OperationTimeoutError):
			await asyncio.wait_for(waiting, timeout=10)
		assert fake_tool.calls == []
		assert OPERATION_COMPLETE not in _types(orchestrator, "a.example.com")

	@pytest.mark.asyncio
	async def test_cleared_waiter_leaves_running_lease_alone(self, orchestrator, fake_tool, fake_store, op_clock):
		fake_tool.gate = asyncio.Event()
		fake_tool.on_invoke = _issue_into(fake_store)
		running = asyncio.create_task(orchestrator.renew("a.example.com"))
		await _wait_started(fake_tool)
		waiting = asyncio.create_task(orchestrator.renew("b.example.com"))
		for _ in range(100):
			if "b.example.com" in orchestrator.queue:
				break
			await asyncio.sleep(0.01)

		op_clock.advance(6)
		cleared = await orchestrator.watchdog_sweep()

		assert [c["domain"] for c in cleared] == ["b.example.com"]
		assert orchestrator.lock.state is LockState.HELD
		fake_tool.gate.set()
		await running
		with pytest.raises(OperationTimeoutError):
			await waiting
		assert fake_tool.max_active == 1


class TestLockCleanup:

	@pytest.mark.asyncio
	async def test_force_cleanup_refused_while_process_alive(self, orchestrator, fake_tool):
		fake_tool.process_running = True
		with pytest.raises(AlreadyRunningError):
			await orchestrator.force_cleanup()

	@pytest.mark.asyncio
	async def test_force_cleanup_emits_event(self, orchestrator, fake_tool, tmp_path):
		fake_tool.artifacts = [tmp_path / ".certbot.lock"]
		report = await orchestrator.force_cleanup()
		assert report["artifacts_removed"] == [str(tmp_path / ".certbot.lock")]
		[event] = [e for e in orchestrator.broadcaster.recent(10) if e.type == LOCK_CLEANUP]
		assert event.data["trigger"] == "manual"

	@pytest.mark.asyncio
	async def test_queue_status_reports_stale_lock(self, orchestrator, fake_tool, tmp_path):
		fake_tool.artifacts = [tmp_path / ".certbot.lock"]
		status = await orchestrator.queue_status()
		assert status["stale_lock"] is True
		assert status["tool_running"] is False
		assert status["lock"]["state"] == "free"


class TestDomains:

	@pytest.mark.asyncio
	async def test_known_domains_merge_vhosts_and_autorenewal(self, orchestrator, sites):
		available, _ = sites
		(available / "blog").write_text("server {\n  server_name blog.example.com;\n}\n")
		await orchestrator.set_autorenewal("shop.example.com", True)

		assert await orchestrator.known_domains() == ["blog.example.com", "shop.example.com"]

	@pytest.mark.asyncio
	async def test_set_autorenewal_emits_and_logs(self, orchestrator):
		data = await orchestrator.set_autorenewal("example.com", True, "webroot")
		assert data["enabled"] is True
		[event] = [e for e in orchestrator.broadcaster.recent(10) if e.type == AUTORENEWAL_TOGGLED]
		assert event.data == {"domain": "example.com", "enabled": True}
		entries = await orchestrator.activity.recent(10)
		assert entries[0]["domain"] == "example.com"

	@pytest.mark.asyncio
	async def test_scan_all_covers_known_domains(self, orchestrator, fake_store, sites):
		available, _ = sites
		(available / "blog").write_text("server {\n  server_name blog.example.com;\n}\n")
		fake_store.certs["blog.example.com"] = make_cert("blog.example.com", 60)

		result = await orchestrator.scan_all()

		assert list(result.certificates) == ["blog.example.com"]
		overview = await orchestrator.certificate_overview()
		assert overview[0]["cached"] is True


CERTBOT_LISTING_A = [
	"Found the following certs:",
	"  Certificate Name: a.example.com",
	"    Domains: a.example.com",
	"    Expiry Date: 2026-05-30 10:00:00+00:00 (VALID: 89 days)",
	"    Certificate Path: /etc/letsencrypt/live/a.example.com/fullchain.pem",
]


class TestToolSerialization:
	"""Read-only certbot queries share the lock with issuance runs."""

	@pytest.fixture
	def orchestrator(self, tmp_path, fake_tool, sites):
		available, enabled = sites
		lock = ProcessLockManager(fake_tool)
		store = CertificateStore(
			live_dir=tmp_path / "live",
			acme_dir=None,
			system_certs_dir=None,
			tool=fake_tool,
			lock=lock,
		)
		return CertificateOrchestrator(
			tool=fake_tool,
			store=store,
			registry=VirtualHostRegistry(available, enabled),
			autorenewal_store=AutorenewalConfigStore(tmp_path / "autorenewal.json"),
			dns=DnsProvider(tmp_path / "dns-credentials.json", None),
			activity=ActivityLog(tmp_path / "autorenewal.log"),
			settings=OrchestratorSettings(settle_delay=0.0, queue_wait_limit=5.0),
			scan_pacing=0.0,
			lock=lock,
		)

	@pytest.mark.asyncio
	async def test_status_lookup_does_not_run_certbot_during_renewal(self, orchestrator, fake_tool):
		fake_tool.gate = asyncio.Event()
		fake_tool.stdout_lines = list(CERTBOT_LISTING_A)
		renewal = asyncio.create_task(orchestrator.renew("a.example.com"))
		await _wait_started(fake_tool)

		with pytest.raises(ToolError) as exc_info:
			await orchestrator.refresh_status("b.example.com")
		assert "skipped" in exc_info.value.details["reasons"][0]
		assert len(fake_tool.calls) == 1

		fake_tool.gate.set()
		result = await renewal

		assert result["certificate"]["source_method"] == "tool"
		assert fake_tool.calls[1] == ["certificates"]
		assert fake_tool.max_active == 1
		assert orchestrator.lock.state is LockState.FREE

	@pytest.mark.asyncio
	async def test_lookup_while_external_certbot_runs_is_skipped(self, orchestrator, fake_tool):
		fake_tool.process_running = True
		with pytest.raises(ToolError):
			await orchestrator.refresh_status("a.example.com")
		assert fake_tool.calls == []
