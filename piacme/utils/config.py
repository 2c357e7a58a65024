#!/usr/bin/env python3
#
# piacme/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Configuration loading, defaults and ``init()`` style overrides."""

from __future__ import annotations

import dataclasses
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, ValidationError, field_validator

from ..errors import ConfigValidationError
from .version import USER_AGENT

_log = logging.getLogger(__name__)

__all__ = [
	"ACME_DIRECTORY_PROD",
	"ACME_DIRECTORY_STAGING",
	"Config",
	"ConfigValidationError",
	"load_config",
	"load_dotenv",
	"merge_config",
]

# Let's Encrypt ACME endpoints
ACME_DIRECTORY_PROD = "https://acme-v02.api.letsencrypt.org/directory"
ACME_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

# RFC 1123 hostname, optionally with a leading wildcard label
DOMAIN_PATTERN = r"^(\*\.)?[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$"

_ENV_PREFIX = "PIACME_"
_ALLOWED_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(frozen=True)
class Config:
	"""Resolved configuration for one certificate (one set of domains)."""
	domains: tuple[str, ...] = ()
	maintainer: str = "maintainer@example.com"
	subscriber: str = "subscriber@example.com"
	account_file: Path = Path("./cert/account.json")
	account_key_file: Path = Path("./cert/account.pem")
	server_key_file: Path = Path("./cert/private.pem")
	full_chain_file: Path = Path("./cert/fullchain.pem")
	monitor_interval: int = 60 * 12  # minutes
	renew_days: int = 10
	debug: bool = False
	directory_url: str = ACME_DIRECTORY_PROD
	application: str = USER_AGENT
	challenge_host: str = "0.0.0.0"
	challenge_port: int = 80
	challenge_wait: float = 30.0  # seconds
	log_level: str = "INFO"

	@property
	def has_domains(self) -> bool:
		return len(self.domains) > 0


class _Overrides(BaseModel):
	"""Validated ``init(config)`` payload.

	Accepts the historical camelCase option names as well as the dataclass
	field names.
	"""
	model_config = ConfigDict(extra="forbid")

	domains: Optional[list[str]] = None
	maintainer: Optional[EmailStr] = None
	subscriber: Optional[EmailStr] = None
	account_file: Optional[Path] = Field(None, validation_alias=AliasChoices("account_file", "accountFile"))
	account_key_file: Optional[Path] = Field(None, validation_alias=AliasChoices("account_key_file", "accountKeyFile"))
	server_key_file: Optional[Path] = Field(
		None, validation_alias=AliasChoices("server_key_file", "ServerKeyFile", "serverKeyFile"),
	)
	full_chain_file: Optional[Path] = Field(
		None, validation_alias=AliasChoices("full_chain_file", "fullChain", "fullChainFile"),
	)
	monitor_interval: Optional[int] = Field(
		None, gt=0, validation_alias=AliasChoices("monitor_interval", "monitorInterval"),
	)
	renew_days: Optional[int] = Field(None, ge=0, validation_alias=AliasChoices("renew_days", "renewDays"))
	debug: Optional[bool] = None
	directory_url: Optional[str] = Field(None, validation_alias=AliasChoices("directory_url", "directoryUrl"))
	application: Optional[str] = Field(None, min_length=1)
	challenge_host: Optional[str] = Field(None, validation_alias=AliasChoices("challenge_host", "challengeHost"))
	challenge_port: Optional[int] = Field(
		None, ge=0, le=65535, validation_alias=AliasChoices("challenge_port", "challengePort"),
	)
	challenge_wait: Optional[float] = Field(
		None, gt=0, validation_alias=AliasChoices("challenge_wait", "challengeWait"),
	)
	log_level: Optional[str] = Field(None, validation_alias=AliasChoices("log_level", "logLevel"))

	@field_validator("domains")
	@classmethod
	def domains_valid(cls, v: Optional[list[str]]) -> Optional[list[str]]:
		if v is None:
			return v
		cleaned: list[str] = []
		for domain in v:
			domain = domain.strip().lower()
			if not re.fullmatch(DOMAIN_PATTERN, domain) or len(domain) > 253:
				raise ValueError(f"Invalid domain name: {domain!r}")
			if domain not in cleaned:
				cleaned.append(domain)
		return cleaned

	@field_validator("log_level")
	@classmethod
	def log_level_valid(cls, v: Optional[str]) -> Optional[str]:
		if v is None:
			return v
		v = v.upper()
		if v not in _ALLOWED_LEVELS:
			raise ValueError(f"Unknown log level: {v}")
		return v


def merge_config(base: Config, overrides: Mapping[str, Any] | None = None) -> Config:
	"""Return a new Config with ``overrides`` merged over ``base``.

	Raises:
		ConfigValidationError: If any override is unknown or invalid
	"""
	if not overrides:
		return base
	try:
		parsed = _Overrides.model_validate(dict(overrides))
	except ValidationError as exc:
		raise ConfigValidationError(f"Invalid configuration: {exc}") from exc

	changes = parsed.model_dump(exclude_none=True)
	if "domains" in changes:
		changes["domains"] = tuple(changes["domains"])
	for key in ("maintainer", "subscriber"):
		if key in changes:
			changes[key] = str(changes[key])
	return dataclasses.replace(base, **changes)


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
	"""Load simple KEY=VALUE pairs from ``settings.env``.

	Behavior:
	- Ignores blank lines and comments (# ...)
	- Handles `export KEY=VALUE` syntax
	- Respects quoted values (doesn't strip # inside quotes)
	- Does not override already-set environment variables
	"""
	dotenv_path = dotenv_path or (Path.cwd() / "settings.env")
	if not dotenv_path.exists():
		return
	for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
		line = raw_line.strip()
		if not line or line.startswith("#"):
			continue
		if "=" not in line:
			continue
		key, value = line.split("=", 1)
		key = key.strip()
		if key.startswith("export "):
			key = key[7:].strip()
		value = _parse_value(value)
		if not key:
			continue
		os.environ.setdefault(key, value)


def _env_overrides() -> dict[str, Any]:
	"""Collect PIACME_* variables as override mapping."""
	overrides: dict[str, Any] = {}
	for f in dataclasses.fields(Config):
		raw = os.getenv(_ENV_PREFIX + f.name.upper())
		if raw is None or raw == "":
			continue
		if f.name == "domains":
			overrides["domains"] = [d for d in (x.strip() for x in raw.split(",")) if d]
		elif f.name == "debug":
			overrides["debug"] = raw.lower() in ("1", "true", "yes")
		else:
			overrides[f.name] = raw
	return overrides


def load_config(dotenv_path: Path | None = None, **overrides: Any) -> Config:
	"""Load configuration from environment variables (optionally via settings.env).

	Keyword overrides win over the environment.
	"""
	load_dotenv(dotenv_path)
	cfg = merge_config(Config(), _env_overrides())
	cfg = merge_config(cfg, overrides)
	if cfg.debug and cfg.log_level != "DEBUG":
		cfg = dataclasses.replace(cfg, log_level="DEBUG")
	_log.debug("CONFIG loaded domains=%s directory=%s", ",".join(cfg.domains) or "-", cfg.directory_url)
	return cfg
