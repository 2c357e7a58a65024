#!/usr/bin/env python3
#
# piacme/models.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Pydantic models and result records for piacme."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
	"Account",
	"AccountKeyRef",
	"CertState",
	"CertStatus",
	"CertificateChain",
	"CertificateDetails",
	"FieldError",
	"PendingChallenge",
	"TlsFiles",
]


class AccountKeyRef(BaseModel):
	"""Reference to the account key registered with the directory."""
	kid: str


class Account(BaseModel):
	"""ACME account registration record, persisted as ``account.json``.

	Unknown fields returned by the directory (``orders``, ``key`` members
	etc.) are preserved on round trip.
	"""
	model_config = ConfigDict(populate_by_name=True, extra="allow")

	key: AccountKeyRef
	contact: list[str] = Field(default_factory=list)
	status: Optional[str] = None
	created_at: Optional[str] = Field(None, alias="createdAt")
	initial_ip: Optional[str] = Field(None, alias="initialIp")

	@property
	def kid(self) -> str:
		return self.key.kid

	def to_json(self) -> str:
		return self.model_dump_json(by_alias=True, exclude_none=True)


class PendingChallenge(BaseModel):
	"""Challenge material published for one order attempt."""
	token: str
	key: str  # key authorization
	host: str = ""


@dataclass(frozen=True)
class CertificateChain:
	"""Leaf certificate and intermediate chain as downloaded from the CA."""
	cert: str
	chain: str

	@property
	def full_chain(self) -> str:
		return f"{self.cert}\n{self.chain}\n"


class CertState(str, Enum):
	"""Outcome of a certificate validity check."""
	OK = "ok"
	EXPIRING = "expiring"
	MISSING = "missing"
	CORRUPT = "corrupt"
	NOT_YET_VALID = "not_yet_valid"
	EXPIRED = "expired"


@dataclass(frozen=True)
class CertStatus:
	"""Result of :meth:`CertificateValidator.check`."""
	valid: bool
	remaining_days: float
	reason: CertState

	def __bool__(self) -> bool:
		return self.valid


@dataclass(frozen=True)
class TlsFiles:
	"""Paths a TLS server needs: private key and full chain."""
	key: Path
	crt: Path


class FieldError(BaseModel):
	"""Per-field failure in a diagnostic dump."""
	error: str


class ServerKeyInfo(BaseModel):
	type: str
	size: Optional[int] = None


class AccountKeyInfo(BaseModel):
	type: str
	crv: Optional[str] = None


class FullChainInfo(BaseModel):
	subject: Optional[str] = None
	issuer: Optional[str] = None
	algorithm: Optional[str] = None
	not_before: datetime
	not_after: datetime
	alt_names: list[str] = Field(default_factory=list)
	chain_length: int = 1


class AccountInfo(BaseModel):
	contact: Optional[str] = None
	initial_ip: Optional[str] = None
	created_at: Optional[datetime] = None
	status: Optional[str] = None


class CertificateDetails(BaseModel):
	"""Diagnostic dump of all persisted state.

	Each field is either the parsed details or a :class:`FieldError`, so one
	broken file never hides the others.
	"""
	server_key: Union[ServerKeyInfo, FieldError]
	account_key: Union[AccountKeyInfo, FieldError]
	full_chain: Union[FullChainInfo, FieldError]
	account: Union[AccountInfo, FieldError]

	def errors(self) -> dict[str, str]:
		return {
			name: value.error
			for name, value in (
				("server_key", self.server_key),
				("account_key", self.account_key),
				("full_chain", self.full_chain),
				("account", self.account),
			)
			if isinstance(value, FieldError)
		}

	def as_dict(self) -> dict[str, Any]:
		return self.model_dump(mode="json")
