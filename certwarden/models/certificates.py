#!/usr/bin/env python3
#
# certwarden/models/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate operation request models."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from ..certs.types import DOMAIN_PATTERN


def _normalize_domain(v: str) -> str:
	return v.strip().lower().rstrip(".")


class InstallRequest(BaseModel):
	"""Request to issue a new certificate."""
	domain: str = Field(..., min_length=1, max_length=253, pattern=DOMAIN_PATTERN)
	email: EmailStr
	method: Literal["webroot", "dns-challenge"] = "webroot"

	@field_validator("domain")
	@classmethod
	def domain_normalized(cls, v: str) -> str:
		return _normalize_domain(v)


class RenewRequest(BaseModel):
	"""Request to renew one certificate."""
	domain: str = Field(..., min_length=1, max_length=253, pattern=DOMAIN_PATTERN)
	method: Optional[Literal["webroot", "dns-challenge"]] = Field(
		None,
		description="Challenge method override (default: the method the certificate was issued with)",
	)

	@field_validator("domain")
	@classmethod
	def domain_normalized(cls, v: str) -> str:
		return _normalize_domain(v)
