#!/usr/bin/env python3
#
# piacme/order.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""One complete certificate issuance attempt.

Flow: build CSR -> start responder -> order (challenges, polling, finalize,
download via :class:`ACMEClient`) -> stop responder -> persist full chain.
The responder is stopped on every exit path; the chain is only written after
a fully successful order.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Union

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID

from .acme.client import ACMEClient
from .challenge import ChallengeNotifier, ChallengeResponder
from .errors import AgreementRequiredError, CsrMismatchError
from .keys import KeyPair
from .models import Account, CertificateChain
from .utils.config import Config

_log = logging.getLogger(__name__)

__all__ = [
	"OrderOrchestrator",
	"build_csr",
	"describe_error",
	"verify_csr",
	"write_full_chain",
]


def build_csr(server_key: KeyPair, domains: list[str]) -> x509.CertificateSigningRequest:
	"""CSR with ``domains[0]`` as commonName and every domain as SAN."""
	if not domains:
		raise CsrMismatchError("Cannot build a CSR without domains")
	return (
		x509.CertificateSigningRequestBuilder()
		.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
		.add_extension(
			x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
			critical=False,
		)
		.sign(server_key.key, hashes.SHA256())
	)


def verify_csr(csr: x509.CertificateSigningRequest, domains: list[str]) -> None:
	"""Reject a CSR whose subject/SANs disagree with ``domains``.

	Raises:
		CsrMismatchError: On any mismatch
	"""
	if not domains:
		raise CsrMismatchError("No domains configured")
	cn = csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
	if not cn or cn[0].value != domains[0]:
		found = cn[0].value if cn else None
		raise CsrMismatchError(f"CSR commonName {found!r} does not match {domains[0]!r}")
	try:
		san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
	except x509.ExtensionNotFound as exc:
		raise CsrMismatchError("CSR has no subjectAltName extension") from exc
	names = set(san.get_values_for_type(x509.DNSName))
	if names != set(domains):
		raise CsrMismatchError(f"CSR SANs {sorted(names)} do not match {sorted(set(domains))}")


def describe_error(exc: BaseException, *, listen_host: str | None = None, listen_port: int | None = None) -> Union[dict[str, Any], BaseException]:
	"""Network level diagnostics (errno, reason, address, port) when available.

	Falls back to the exception itself when nothing network related is found.
	"""
	info: dict[str, Any] = {}
	current: BaseException | None = exc
	seen: set[int] = set()
	while current is not None and id(current) not in seen:
		seen.add(id(current))
		if isinstance(current, OSError) and current.errno is not None:
			info["code"] = current.errno
			info["reason"] = current.strerror or str(current)
			break
		current = current.__cause__ or current.__context__

	if isinstance(exc, httpx.RequestError):
		try:
			url = exc.request.url
		except RuntimeError:
			url = None
		if url is not None:
			info.setdefault("reason", str(exc) or type(exc).__name__)
			info["address"] = url.host
			info["port"] = url.port or (443 if url.scheme == "https" else 80)
	elif isinstance(exc, OSError) and info and listen_port is not None:
		# Bind failures of the validation listener
		info["address"] = listen_host
		info["port"] = listen_port

	return info or exc


def write_full_chain(path: Path, content: str) -> None:
	"""Replace ``path`` atomically so readers never see a partial chain."""
	path.parent.mkdir(parents=True, exist_ok=True)
	fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
	try:
		with os.fdopen(fd, "w", encoding="ascii") as fh:
			fh.write(content)
			fh.flush()
			os.fsync(fh.fileno())
		os.chmod(tmp_name, 0o644)
		os.replace(tmp_name, path)
	except BaseException:
		try:
			os.unlink(tmp_name)
		except FileNotFoundError:
			pass
		raise


class OrderOrchestrator:
	"""Drive one ACME order end to end for the configured domains.

	A fresh :class:`ChallengeNotifier` and :class:`ChallengeResponder` are
	created per :meth:`run`, so concurrent orchestrators (tests) never share
	challenge state.
	"""

	def __init__(self, cfg: Config, client: ACMEClient):
		self.cfg = cfg
		self.client = client

	def _responder(self, notifier: ChallengeNotifier) -> ChallengeResponder:
		return ChallengeResponder(
			notifier,
			host=self.cfg.challenge_host,
			port=self.cfg.challenge_port,
			wait=self.cfg.challenge_wait,
		)

	async def run(self, account_key: KeyPair, server_key: KeyPair, account: Account) -> bool:
		"""Issue a certificate and write ``full_chain_file``.

		Returns:
			True when a new chain was written, False on any failure
		"""
		domains = list(self.cfg.domains)
		if not domains:
			_log.info("ACME skip create certificate: no domains configured")
			return False

		try:
			csr = build_csr(server_key, domains)
			verify_csr(csr, domains)
		except CsrMismatchError as exc:
			_log.error("ACME CSR rejected: %s", exc)
			return False
		csr_der = csr.public_bytes(serialization.Encoding.DER)

		_log.info("ACME create certificate domains=%s", ",".join(domains))
		notifier = ChallengeNotifier(expected=len(domains), debug=self.cfg.debug)
		responder = self._responder(notifier)
		previous_notify = self.client.notify
		self.client.notify = notifier.notify
		chain: CertificateChain | None = None
		try:
			async with responder:
				_log.info("ACME validating domains: %s", ",".join(domains))
				_log.info("ACME account contact: %s kid: %s", ",".join(account.contact), account.kid)
				chain = await self.client.create_certificate(account, account_key, csr_der, domains)
		except AgreementRequiredError:
			raise
		except Exception as exc:
			_log.warning(
				"ACME validation exception: %s",
				describe_error(exc, listen_host=self.cfg.challenge_host, listen_port=self.cfg.challenge_port),
			)
		finally:
			self.client.notify = previous_notify

		if chain is None or not chain.cert or not chain.chain:
			_log.warning("ACME validation failed")
			return False

		try:
			write_full_chain(self.cfg.full_chain_file, chain.full_chain)
		except OSError as exc:
			_log.warning("ACME cannot write certificate %s: %s", self.cfg.full_chain_file, exc)
			return False
		_log.info("ACME certificate created: %s", self.cfg.full_chain_file)
		return True
