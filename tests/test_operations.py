#!/usr/bin/env python3
#
# tests/test_operations.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Operation queue: per-domain exclusivity and expiry."""

from __future__ import annotations

import pytest

from certwarden.certs.errors import ConflictError
from certwarden.certs.operations import OperationQueue

from fakes import ManualClock


class TestBeginEnd:
	"""begin rejects duplicates; end is idempotent."""

	def test_second_begin_for_same_domain_conflicts(self):
		queue = OperationQueue()
		first = queue.begin("example.com", "install", "webroot")
		with pytest.raises(ConflictError) as exc_info:
			queue.begin("example.com", "renew", "webroot")
		assert exc_info.value.details["op_id"] == first.op_id
		assert exc_info.value.status_code == 409
		assert len(queue) == 1

	def test_different_domains_do_not_conflict(self):
		queue = OperationQueue()
		queue.begin("a.example.com", "install", "webroot")
		queue.begin("b.example.com", "install", "webroot")
		assert len(queue) == 2

	def test_end_is_idempotent(self):
		queue = OperationQueue()
		queue.begin("example.com", "renew", "webroot")
		assert queue.end("example.com") is not None
		assert queue.end("example.com") is None
		assert queue.end("never-started.example.com") is None
		assert "example.com" not in queue

	def test_end_with_foreign_op_id_keeps_newer_record(self):
		queue = OperationQueue()
		old = queue.begin("example.com", "renew", "webroot")
		queue.end("example.com", old.op_id)
		new = queue.begin("example.com", "renew", "webroot")

		assert queue.end("example.com", old.op_id) is None
		assert queue.owns("example.com", new.op_id)

	def test_begin_after_end_succeeds(self):
		queue = OperationQueue()
		queue.begin("example.com", "install", "webroot")
		queue.end("example.com")
		record = queue.begin("example.com", "renew", "webroot")
		assert record.kind == "renew"


class TestInFlight:

	def test_list_reports_state_and_elapsed(self):
		clock = ManualClock()
		queue = OperationQueue(clock=clock)
		record = queue.begin("example.com", "install", "dns-challenge", trigger="manual")
		clock.advance(3)
		queue.mark_running("example.com", record.op_id)
		clock.advance(2)

		[item] = queue.list_in_flight()
		assert item["domain"] == "example.com"
		assert item["state"] == "running"
		assert item["elapsed_seconds"] == 5.0
		assert item["running_seconds"] == 2.0

	def test_mark_running_rejects_foreign_op(self):
		queue = OperationQueue()
		queue.begin("example.com", "install", "webroot")
		assert queue.mark_running("example.com", "not-the-op-id") is False


class TestExpired:
	"""Running records expire by run time, waiting records by wait time."""

	def test_running_record_past_limit_is_expired(self):
		clock = ManualClock()
		queue = OperationQueue(clock=clock)
		record = queue.begin("example.com", "renew", "webroot")
		queue.mark_running("example.com", record.op_id)
		clock.advance(421)

		expired = queue.expired(lambda r: 420.0)
		assert [r.op_id for r in expired] == [record.op_id]

	def test_record_within_limit_is_not_expired(self):
		clock = ManualClock()
		queue = OperationQueue(clock=clock)
		record = queue.begin("example.com", "renew", "webroot")
		queue.mark_running("example.com", record.op_id)
		clock.advance(419)
		assert queue.expired(lambda r: 420.0) == []

	def test_queued_record_without_wait_limit_never_expires(self):
		clock = ManualClock()
		queue = OperationQueue(clock=clock)
		queue.begin("example.com", "renew", "webroot")
		clock.advance(10_000)
		assert queue.expired(lambda r: 420.0) == []

	def test_queued_record_expires_after_wait_limit(self):
		clock = ManualClock()
		queue = OperationQueue(clock=clock)
		record = queue.begin("example.com", "renew", "webroot")
		clock.advance(1800)
		assert queue.expired(lambda r: 420.0, 1800.0) == []
		clock.advance(1)
		assert [r.op_id for r in queue.expired(lambda r: 420.0, 1800.0)] == [record.op_id]

	def test_running_record_ignores_wait_limit(self):
		clock = ManualClock()
		queue = OperationQueue(clock=clock)
		record = queue.begin("example.com", "renew", "webroot")
		clock.advance(100)
		queue.mark_running("example.com", record.op_id)
		clock.advance(300)
		assert queue.expired(lambda r: 420.0, 60.0) == []
