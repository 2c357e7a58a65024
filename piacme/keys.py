#!/usr/bin/env python3
#
# piacme/keys.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Account (EC) and server (RSA) key storage plus JWK conversion helpers."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from .errors import KeyStoreError
from .utils.config import Config

_log = logging.getLogger(__name__)

__all__ = [
	"KeyPair",
	"KeyStore",
	"PrivateKey",
	"b64url",
	"b64url_decode",
	"jwk_thumbprint",
	"jwk_to_private_key",
	"load_private_key",
	"private_key_to_jwk",
	"private_key_to_pem",
	"public_jwk",
]

PrivateKey = Union[ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey]

RSA_KEY_SIZE = 2048

# JWK curve name -> (cryptography curve, coordinate size in bytes)
_CURVES: dict[str, tuple[type[ec.EllipticCurve], int]] = {
	"P-256": (ec.SECP256R1, 32),
	"P-384": (ec.SECP384R1, 48),
}
_CURVE_NAMES = {"secp256r1": "P-256", "secp384r1": "P-384"}


def b64url(data: bytes) -> str:
	"""Base64url encode without padding."""
	return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
	"""Base64url decode, restoring stripped padding."""
	return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _int_to_b64(value: int, length: int | None = None) -> str:
	length = length or max(1, (value.bit_length() + 7) // 8)
	return b64url(value.to_bytes(length, "big"))


def _b64_to_int(value: str) -> int:
	return int.from_bytes(b64url_decode(value), "big")


def private_key_to_jwk(key: PrivateKey) -> dict[str, Any]:
	"""Export a private key as a JWK (RFC 7517/7518) dict including private members."""
	if isinstance(key, ec.EllipticCurvePrivateKey):
		crv = _CURVE_NAMES.get(key.curve.name)
		if crv is None:
			raise ValueError(f"Unsupported EC curve: {key.curve.name}")
		size = _CURVES[crv][1]
		priv = key.private_numbers()
		pub = priv.public_numbers
		return {
			"kty": "EC",
			"crv": crv,
			"x": _int_to_b64(pub.x, size),
			"y": _int_to_b64(pub.y, size),
			"d": _int_to_b64(priv.private_value, size),
		}
	if isinstance(key, rsa.RSAPrivateKey):
		priv = key.private_numbers()
		pub = priv.public_numbers
		return {
			"kty": "RSA",
			"n": _int_to_b64(pub.n),
			"e": _int_to_b64(pub.e),
			"d": _int_to_b64(priv.d),
			"p": _int_to_b64(priv.p),
			"q": _int_to_b64(priv.q),
			"dp": _int_to_b64(priv.dmp1),
			"dq": _int_to_b64(priv.dmq1),
			"qi": _int_to_b64(priv.iqmp),
		}
	raise ValueError(f"Unsupported key type: {type(key).__name__}")


def jwk_to_private_key(jwk: dict[str, Any]) -> PrivateKey:
	"""Import a private JWK back into a cryptography key object."""
	kty = jwk.get("kty")
	if kty == "EC":
		if jwk.get("crv") not in _CURVES:
			raise ValueError(f"Unsupported EC curve: {jwk.get('crv')}")
		curve_cls, _ = _CURVES[jwk["crv"]]
		public = ec.EllipticCurvePublicNumbers(_b64_to_int(jwk["x"]), _b64_to_int(jwk["y"]), curve_cls())
		return ec.EllipticCurvePrivateNumbers(_b64_to_int(jwk["d"]), public).private_key()
	if kty == "RSA":
		public = rsa.RSAPublicNumbers(_b64_to_int(jwk["e"]), _b64_to_int(jwk["n"]))
		return rsa.RSAPrivateNumbers(
			p=_b64_to_int(jwk["p"]),
			q=_b64_to_int(jwk["q"]),
			d=_b64_to_int(jwk["d"]),
			dmp1=_b64_to_int(jwk["dp"]),
			dmq1=_b64_to_int(jwk["dq"]),
			iqmp=_b64_to_int(jwk["qi"]),
			public_numbers=public,
		).private_key()
	raise ValueError(f"Unsupported kty: {kty}")


def public_jwk(jwk: dict[str, Any]) -> dict[str, Any]:
	"""Strip private members, keeping only the RFC 7638 required public members."""
	if jwk.get("kty") == "EC":
		return {"crv": jwk["crv"], "kty": "EC", "x": jwk["x"], "y": jwk["y"]}
	if jwk.get("kty") == "RSA":
		return {"e": jwk["e"], "kty": "RSA", "n": jwk["n"]}
	raise ValueError(f"Unsupported key type: {jwk.get('kty')}")


def jwk_thumbprint(jwk: dict[str, Any]) -> str:
	"""Calculate JWK thumbprint (RFC 7638)."""
	if "kty" not in jwk:
		raise ValueError("Missing kty in JWK")
	canonical_json = json.dumps(public_jwk(jwk), separators=(",", ":"), sort_keys=True)
	return b64url(hashlib.sha256(canonical_json.encode("utf-8")).digest())


def private_key_to_pem(key: PrivateKey) -> bytes:
	"""PEM export: SEC1 for EC keys, PKCS#1 for RSA keys."""
	return key.private_bytes(
		encoding=serialization.Encoding.PEM,
		format=serialization.PrivateFormat.TraditionalOpenSSL,
		encryption_algorithm=serialization.NoEncryption(),
	)


def load_private_key(pem: bytes) -> PrivateKey:
	"""Load an unencrypted PEM private key (SEC1, PKCS#1 or PKCS#8)."""
	key = serialization.load_pem_private_key(pem, password=None)
	if not isinstance(key, (ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey)):
		raise ValueError(f"Unsupported key type: {type(key).__name__}")
	return key


@dataclass(frozen=True)
class KeyPair:
	"""A private key together with its JWK form."""
	key: PrivateKey

	@property
	def jwk(self) -> dict[str, Any]:
		return private_key_to_jwk(self.key)

	@property
	def public_jwk(self) -> dict[str, Any]:
		return public_jwk(self.jwk)

	@property
	def thumbprint(self) -> str:
		return jwk_thumbprint(self.jwk)

	@property
	def kty(self) -> str:
		return "EC" if isinstance(self.key, ec.EllipticCurvePrivateKey) else "RSA"

	def to_pem(self) -> bytes:
		return private_key_to_pem(self.key)


class KeyStore:
	"""Load-or-generate the account key and the server key.

	Keys are created lazily on first use and reused afterwards. Any
	filesystem or parse failure is raised as :class:`KeyStoreError`.
	"""

	def __init__(self, cfg: Config):
		self.cfg = cfg

	def ensure_account_key(self) -> KeyPair:
		"""Load or create the EC P-256 account key."""
		return self._ensure(
			self.cfg.account_key_file,
			"account",
			lambda: ec.generate_private_key(ec.SECP256R1()),
		)

	def ensure_server_key(self) -> KeyPair:
		"""Load or create the RSA server key used for the certificate."""
		return self._ensure(
			self.cfg.server_key_file,
			"server",
			lambda: rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE),
		)

	def _ensure(self, path: Path, label: str, generate) -> KeyPair:
		try:
			if path.exists():
				_log.info("ACME %s key load: %s", label, path)
				return KeyPair(load_private_key(path.read_bytes()))

			_log.info("ACME %s key generate: %s", label, path)
			pair = KeyPair(generate())
			path.parent.mkdir(parents=True, exist_ok=True)
			fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
			with os.fdopen(fd, "wb") as fh:
				fh.write(pair.to_pem())
			path.chmod(0o600)
			return pair
		except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as exc:
			raise KeyStoreError(f"Cannot load or create {label} key {path}: {exc}") from exc
