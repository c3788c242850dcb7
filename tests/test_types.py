#!/usr/bin/env python3
#
# tests/test_types.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Expiry classification of Certificate."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from certwarden.certs.types import Certificate, is_valid_domain

from fakes import NOW, make_cert


class TestExpiryClassification:
	"""expired and expiring-soon never overlap."""

	def test_one_day_past_expiry_is_expired_not_expiring(self):
		cert = make_cert("example.com", -1)
		assert cert.days_until_expiry(NOW) == -1
		assert cert.is_expired(NOW) is True
		assert cert.is_expiring_soon(NOW) is False

	def test_expiry_today_counts_as_expired(self):
		cert = make_cert("example.com", 0)
		assert cert.is_expired(NOW) is True
		assert cert.is_expiring_soon(NOW) is False

	def test_thirty_days_is_expiring_soon(self):
		cert = make_cert("example.com", 30)
		assert cert.is_expiring_soon(NOW) is True
		assert cert.is_expired(NOW) is False

	def test_thirty_one_days_is_healthy(self):
		cert = make_cert("example.com", 31)
		assert cert.is_expiring_soon(NOW) is False
		assert cert.is_expired(NOW) is False

	def test_days_use_calendar_dates(self):
		expires = datetime(2026, 3, 2, 0, 30, tzinfo=timezone.utc)
		cert = Certificate(domain="example.com", has_certificate=True, expires_at=expires)
		late_evening = datetime(2026, 3, 1, 23, 59, tzinfo=timezone.utc)
		assert cert.days_until_expiry(late_evening) == 1

	def test_missing_certificate_has_no_days(self):
		cert = Certificate.missing("example.com")
		assert cert.days_until_expiry(NOW) is None
		assert cert.is_expired(NOW) is False
		data = cert.to_dict(NOW)
		assert data["has_certificate"] is False
		assert data["days_until_expiry"] is None

	def test_days_are_derived_not_stored(self):
		cert = make_cert("example.com", 10)
		assert cert.days_until_expiry(NOW + timedelta(days=5)) == 5


class TestDomainValidation:

	def test_valid_names(self):
		assert is_valid_domain("example.com")
		assert is_valid_domain("a-b.sub.example.co.uk")

	def test_invalid_names(self):
		assert not is_valid_domain("")
		assert not is_valid_domain("-bad.example.com")
		assert not is_valid_domain("exa mple.com")
		assert not is_valid_domain("a" * 254)
