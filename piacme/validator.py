#!/usr/bin/env python3
#
# piacme/validator.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Inspect persisted keys, account and certificate chain."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Union

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID, SignatureAlgorithmOID

from .account import load_account
from .keys import load_private_key
from .models import (
	AccountInfo,
	AccountKeyInfo,
	CertificateDetails,
	CertState,
	CertStatus,
	FieldError,
	FullChainInfo,
	ServerKeyInfo,
)
from .utils.config import Config

_log = logging.getLogger(__name__)

__all__ = ["CertificateValidator", "parse_cert"]

_SECONDS_PER_DAY = 86400

_SIGNATURE_NAMES = {
	SignatureAlgorithmOID.RSA_WITH_SHA256: "sha256WithRSAEncryption",
	SignatureAlgorithmOID.RSA_WITH_SHA384: "sha384WithRSAEncryption",
	SignatureAlgorithmOID.RSA_WITH_SHA512: "sha512WithRSAEncryption",
	SignatureAlgorithmOID.ECDSA_WITH_SHA256: "ecdsa-with-SHA256",
	SignatureAlgorithmOID.ECDSA_WITH_SHA384: "ecdsa-with-SHA384",
	SignatureAlgorithmOID.ECDSA_WITH_SHA512: "ecdsa-with-SHA512",
}


def _server_key_info(cfg: Config) -> ServerKeyInfo:
	key = load_private_key(cfg.server_key_file.read_bytes())
	if isinstance(key, rsa.RSAPrivateKey):
		return ServerKeyInfo(type="RSA", size=key.key_size)
	return ServerKeyInfo(type="EC", size=key.curve.key_size)


def _account_key_info(cfg: Config) -> AccountKeyInfo:
	key = load_private_key(cfg.account_key_file.read_bytes())
	if isinstance(key, ec.EllipticCurvePrivateKey):
		return AccountKeyInfo(type="EC", crv=key.curve.name)
	return AccountKeyInfo(type="RSA")


def _full_chain_info(cfg: Config) -> FullChainInfo:
	certs = x509.load_pem_x509_certificates(cfg.full_chain_file.read_bytes())
	leaf = certs[0]
	cn = leaf.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
	try:
		san = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
		alt_names = san.get_values_for_type(x509.DNSName)
	except x509.ExtensionNotFound:
		alt_names = []
	oid = leaf.signature_algorithm_oid
	return FullChainInfo(
		subject=str(cn[0].value) if cn else None,
		issuer=leaf.issuer.rfc4514_string(),
		algorithm=_SIGNATURE_NAMES.get(oid, oid.dotted_string),
		not_before=leaf.not_valid_before_utc,
		not_after=leaf.not_valid_after_utc,
		alt_names=alt_names,
		chain_length=len(certs),
	)


def _account_info(cfg: Config) -> AccountInfo:
	account = load_account(cfg)
	return AccountInfo(
		contact=account.contact[0] if account.contact else None,
		initial_ip=account.initial_ip,
		created_at=account.created_at,
		status=account.status,
	)


def _field(loader: Callable[[Config], object], cfg: Config) -> Union[object, FieldError]:
	# Partial failure is reported per field, never for the whole dump
	try:
		return loader(cfg)
	except Exception as exc:
		return FieldError(error=str(exc) or type(exc).__name__)


def parse_cert(cfg: Config) -> CertificateDetails:
	"""Diagnostic dump of server key, account key, full chain and account."""
	return CertificateDetails(
		server_key=_field(_server_key_info, cfg),
		account_key=_field(_account_key_info, cfg),
		full_chain=_field(_full_chain_info, cfg),
		account=_field(_account_info, cfg),
	)


class CertificateValidator:
	"""Decide whether the persisted certificate is usable.

	Side effect free apart from logging; safe to call at any frequency.
	"""

	def __init__(self, cfg: Config, *, clock: Callable[[], datetime] | None = None):
		self.cfg = cfg
		self.clock = clock or (lambda: datetime.now(timezone.utc))

	def check(self) -> CertStatus:
		path = self.cfg.full_chain_file
		if not path.exists():
			_log.warning("CERT certificate does not exist: %s", path)
			return CertStatus(valid=False, remaining_days=0.0, reason=CertState.MISSING)

		_log.debug("CERT certificate check: %s", path)
		details = parse_cert(self.cfg)
		errors = details.errors()
		if errors:
			for name, error in errors.items():
				_log.warning("CERT %s error: %s", name, error)
			return CertStatus(valid=False, remaining_days=0.0, reason=CertState.CORRUPT)

		chain = details.full_chain
		if not isinstance(chain, FullChainInfo):
			return CertStatus(valid=False, remaining_days=0.0, reason=CertState.CORRUPT)
		now = self.clock()
		if now < chain.not_before:
			_log.warning("CERT certificate invalid notBefore: %s", chain.not_before.isoformat())
			return CertStatus(valid=False, remaining_days=0.0, reason=CertState.NOT_YET_VALID)
		if now > chain.not_after:
			_log.warning("CERT certificate invalid notAfter: %s", chain.not_after.isoformat())
			return CertStatus(valid=False, remaining_days=0.0, reason=CertState.EXPIRED)

		remaining_days = (chain.not_after - now).total_seconds() / _SECONDS_PER_DAY
		renewing = remaining_days < self.cfg.renew_days
		_log.info(
			"CERT certificate expires in %.1f days: %s",
			remaining_days,
			"renewing now" if renewing else "skipping renewal",
		)
		return CertStatus(
			valid=not renewing,
			remaining_days=remaining_days,
			reason=CertState.EXPIRING if renewing else CertState.OK,
		)
