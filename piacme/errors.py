#!/usr/bin/env python3
#
# piacme/errors.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Exception hierarchy shared by all certificate lifecycle components."""

from __future__ import annotations

from typing import Any, Optional

__all__ = [
	"PiAcmeError",
	"ConfigValidationError",
	"KeyStoreError",
	"AccountStoreError",
	"CsrMismatchError",
	"AcmeProtocolError",
	"AgreementRequiredError",
	"OrderTimeoutError",
]

# RFC 8555 problem type prefix
ACME_URN_PREFIX = "urn:ietf:params:acme:error:"


class PiAcmeError(Exception):
	"""Base class for all piacme errors."""


class ConfigValidationError(PiAcmeError):
	"""Raised when critical configuration is missing or invalid."""


class KeyStoreError(PiAcmeError):
	"""Account or server key could not be loaded, generated or persisted."""


class AccountStoreError(PiAcmeError):
	"""Stored ACME account could not be read or written."""


class CsrMismatchError(PiAcmeError, ValueError):
	"""CSR subject/SANs do not match the configured domains."""


class AcmeProtocolError(PiAcmeError):
	"""Error returned by (or while talking to) the ACME directory.

	Carries the RFC 7807 problem document fields so callers can log or act on
	the machine readable ``urn`` without parsing the message.
	"""

	def __init__(
		self,
		detail: str,
		*,
		urn: Optional[str] = None,
		status: Optional[int] = None,
		problem: Optional[dict[str, Any]] = None,
	) -> None:
		super().__init__(detail)
		self.detail = detail
		self.urn = urn
		self.status = status
		self.problem = problem or {}

	@property
	def short_type(self) -> str:
		"""Problem type without the ACME URN prefix (e.g. ``badNonce``)."""
		if self.urn and self.urn.startswith(ACME_URN_PREFIX):
			return self.urn[len(ACME_URN_PREFIX):]
		return self.urn or ""

	def __str__(self) -> str:
		parts = [self.detail]
		if self.urn:
			parts.append(f"({self.urn})")
		if self.status is not None:
			parts.append(f"[HTTP {self.status}]")
		return " ".join(parts)


class AgreementRequiredError(AcmeProtocolError):
	"""Terms of service were not agreed. Requires human intervention."""


class OrderTimeoutError(AcmeProtocolError):
	"""Polling budget for an authorization or order was exhausted."""
