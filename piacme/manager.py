#!/usr/bin/env python3
#
# piacme/manager.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""High level certificate lifecycle operations.

``CertManager`` ties the components together::

	check -> [renewal needed] -> keys -> account -> order -> persist chain

Expected failures (missing or expiring certificate, failed order) are
reported as booleans plus log lines; only ``AgreementRequiredError`` is
allowed to escape, since it needs a human.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Callable, Mapping, Optional, Union

import httpx

from .account import AccountManager
from .acme.client import ACMEClient
from .challenge import ACME_CHALLENGE_PATH, ChallengeNotifier, ChallengeResponder
from .errors import AccountStoreError, AcmeProtocolError, AgreementRequiredError, KeyStoreError
from .keys import KeyPair, KeyStore
from .models import Account, CertificateDetails, CertStatus, FieldError, TlsFiles
from .order import OrderOrchestrator, describe_error
from .renewal import RenewalScheduler
from .utils.config import Config, load_config, merge_config
from .validator import CertificateValidator, parse_cert as _parse_cert

_log = logging.getLogger(__name__)

__all__ = [
	"CertManager",
	"check_cert",
	"create_cert",
	"create_keys",
	"default_manager",
	"get_cert",
	"init",
	"monitor_cert",
	"parse_cert",
	"test_connection",
	"tls_files",
]

RenewCallback = Callable[[], object]


class CertManager:
	"""Certificate lifecycle for one configured set of domains."""

	def __init__(
		self,
		cfg: Optional[Config] = None,
		*,
		verify: Union[bool, str] = True,
		transport: Optional[httpx.AsyncBaseTransport] = None,
		client_options: Optional[Mapping[str, Any]] = None,
	):
		self.cfg = cfg or Config()
		self.verify = verify
		self.transport = transport
		self.client_options = dict(client_options or {})
		self.account_key: Optional[KeyPair] = None
		self.server_key: Optional[KeyPair] = None
		self.account: Optional[Account] = None
		self.scheduler: Optional[RenewalScheduler] = None
		self._summary_logged = False
		self._lock = asyncio.Lock()

	def init(self, overrides: Mapping[str, Any]) -> Config:
		"""Merge ``overrides`` over the current configuration.

		Loaded keys and account are dropped since they may belong to other paths.
		"""
		self.cfg = merge_config(self.cfg, overrides)
		self.account_key = self.server_key = self.account = None
		self._summary_logged = False
		return self.cfg

	@property
	def user_agent(self) -> str:
		"""User-Agent for ACME requests, carrying the maintainer contact."""
		if self.cfg.maintainer:
			return f"{self.cfg.application} (+mailto:{self.cfg.maintainer})"
		return self.cfg.application

	@property
	def tls_files(self) -> TlsFiles:
		"""Server key and full chain paths for the TLS server."""
		return TlsFiles(key=self.cfg.server_key_file, crt=self.cfg.full_chain_file)

	def _client(self) -> ACMEClient:
		return ACMEClient(
			self.cfg.directory_url,
			user_agent=self.user_agent,
			verify=self.verify,
			transport=self.transport,
			**self.client_options,
		)

	# -----------------------------------------------------------------------
	# Read-only checks
	# -----------------------------------------------------------------------

	def check_status(self) -> CertStatus:
		return CertificateValidator(self.cfg).check()

	def check_cert(self) -> bool:
		"""True if the persisted certificate exists and needs no renewal."""
		return self.check_status().valid

	def parse_cert(self) -> CertificateDetails:
		return _parse_cert(self.cfg)

	# -----------------------------------------------------------------------
	# Keys, account, certificate
	# -----------------------------------------------------------------------

	async def create_keys(self) -> bool:
		"""Load or create account key, account and server key.

		Returns:
			False if no domains are configured, True otherwise

		Raises:
			KeyStoreError, AccountStoreError, AcmeProtocolError
		"""
		if not self.cfg.has_domains:
			_log.info("ACME skip create keys: no domains configured")
			return False

		keystore = KeyStore(self.cfg)
		_log.info(
			"ACME request domains=%s maintainer=%s",
			",".join(self.cfg.domains),
			self.cfg.maintainer,
		)
		self.account_key = await asyncio.to_thread(keystore.ensure_account_key)
		async with self._client() as client:
			self.account = await AccountManager(self.cfg, client).ensure_account(self.account_key)
		self.server_key = await asyncio.to_thread(keystore.ensure_server_key)
		return True

	async def create_cert(self, force: bool = False) -> bool:
		"""Issue a certificate if forced or none exists yet.

		Returns:
			True if a certificate is in place afterwards
		"""
		path = self.cfg.full_chain_file
		if not force and path.exists():
			_log.info("ACME certificate load: %s", path)
			return True

		if not self.cfg.has_domains:
			_log.info("ACME skip create certificate: no domains configured")
			return False

		if self.account_key is None or self.server_key is None or self.account is None:
			if not await self.create_keys():
				return False

		async with self._client() as client:
			return await OrderOrchestrator(self.cfg, client).run(self.account_key, self.server_key, self.account)

	async def _ensure_cert(self) -> tuple[bool, bool]:
		"""Check and renew if needed. Returns ``(renewed, valid)``."""
		if self.check_cert():
			return False, True

		try:
			await self.create_keys()
			created = await self.create_cert(force=True)
		except AgreementRequiredError:
			raise
		except (KeyStoreError, AccountStoreError, AcmeProtocolError, httpx.HTTPError, OSError) as exc:
			_log.warning("ACME certificate request failed: %s", describe_error(exc))
			return False, False

		if not created:
			return False, False

		valid = self.check_cert()
		if not valid:
			_log.error("CERT certificate did not pass validation")
		return True, valid

	async def get_cert(self, on_renew: Optional[RenewCallback] = None) -> bool:
		"""Make sure a valid certificate exists, creating or renewing it.

		``on_renew`` is called once if a new certificate was written. Calls
		made while another renewal is running are skipped (returns False).
		"""
		if self._lock.locked():
			_log.warning("ACME certificate renewal already in progress, skipping")
			return False
		async with self._lock:
			renewed, valid = await self._ensure_cert()
		if renewed and on_renew is not None:
			result = on_renew()
			if asyncio.iscoroutine(result):
				await result
		if valid and not self._summary_logged:
			self._log_summary()
		return valid

	def _log_summary(self) -> None:
		"""Log account, keys and certificate once per manager."""
		details = self.parse_cert()
		account, chain = details.account, details.full_chain
		if not isinstance(account, FieldError):
			created = account.created_at.isoformat() if account.created_at else "-"
			_log.info("ACME account contact: %s created: %s", account.contact, created)
		if not isinstance(details.server_key, FieldError) and not isinstance(details.account_key, FieldError):
			_log.info(
				"ACME server key: %s account key: %s",
				details.server_key.type,
				details.account_key.type,
			)
		if not isinstance(chain, FieldError):
			_log.info("CERT subject: %s issuer: %s", chain.subject, chain.issuer)
		_log.info("CERT key: %s crt: %s", self.tls_files.key, self.tls_files.crt)
		self._summary_logged = True

	async def renewal_cycle(self) -> bool:
		"""One monitor cycle. Returns True if a new certificate was written."""
		if self._lock.locked():
			_log.warning("RENEWAL certificate renewal already in progress, skipping")
			return False
		async with self._lock:
			renewed, _ = await self._ensure_cert()
		return renewed

	# -----------------------------------------------------------------------
	# Monitoring
	# -----------------------------------------------------------------------

	async def monitor_cert(self, on_renew: Optional[RenewCallback] = None) -> RenewalScheduler:
		"""Start the recurring renewal check every ``monitor_interval`` minutes."""
		if self.scheduler is not None and self.scheduler.is_running:
			return self.scheduler
		self.scheduler = RenewalScheduler(
			self.cfg.monitor_interval * 60,
			self.renewal_cycle,
			on_renew=on_renew,
		)
		await self.scheduler.start()
		return self.scheduler

	async def stop_monitor(self) -> None:
		if self.scheduler is not None:
			await self.scheduler.stop_graceful()
			self.scheduler = None

	# -----------------------------------------------------------------------
	# Diagnostics
	# -----------------------------------------------------------------------

	async def test_connection(self, host: Optional[str] = None, timeout: float = 5.0) -> bool:
		"""Check that ``http://<host>:<challenge_port>`` reaches this process.

		Serves a random probe token on the challenge port and fetches it back
		through ``host``. The port is released afterwards in every case.
		"""
		host = host or (self.cfg.domains[0] if self.cfg.has_domains else None)
		if not host:
			_log.info("Connection test skipped: no host")
			return False

		token = secrets.token_urlsafe(16)
		probe = secrets.token_urlsafe(24)
		notifier = ChallengeNotifier(expected=1)
		await notifier.publish(token, probe, host)
		responder = ChallengeResponder(
			notifier,
			host=self.cfg.challenge_host,
			port=self.cfg.challenge_port,
			wait=min(timeout, self.cfg.challenge_wait),
		)

		reachable = False
		try:
			async with responder:
				url = f"http://{host}:{responder.bound_port}{ACME_CHALLENGE_PATH}{token}"
				async with httpx.AsyncClient(timeout=timeout) as http:
					resp = await http.get(url)
				reachable = resp.status_code == 200 and resp.text == probe
		except (httpx.HTTPError, OSError, RuntimeError) as exc:
			_log.warning(
				"Connection test failed: %s",
				describe_error(exc, listen_host=self.cfg.challenge_host, listen_port=self.cfg.challenge_port),
			)
		_log.info("Connection test host=%s reachable=%s", host, reachable)
		return reachable


# ---------------------------------------------------------------------------
# Module-level facade for a single default certificate
# ---------------------------------------------------------------------------

_default_manager: Optional[CertManager] = None


def default_manager() -> CertManager:
	"""Shared manager configured from the environment on first use."""
	global _default_manager
	if _default_manager is None:
		_default_manager = CertManager(load_config())
	return _default_manager


def init(config: Optional[Mapping[str, Any]] = None) -> Config:
	return default_manager().init(config or {})


async def get_cert(on_renew: Optional[RenewCallback] = None) -> bool:
	return await default_manager().get_cert(on_renew)


def check_cert() -> bool:
	return default_manager().check_cert()


async def create_keys() -> bool:
	return await default_manager().create_keys()


async def create_cert(force: bool = False) -> bool:
	return await default_manager().create_cert(force)


def parse_cert() -> CertificateDetails:
	return default_manager().parse_cert()


def tls_files() -> TlsFiles:
	return default_manager().tls_files


async def monitor_cert(on_renew: Optional[RenewCallback] = None) -> RenewalScheduler:
	return await default_manager().monitor_cert(on_renew)


async def test_connection(host: Optional[str] = None, timeout: float = 5.0) -> bool:
	return await default_manager().test_connection(host, timeout)
