"""Shared fixtures: configuration in a temp dir and an in-process ACME CA."""

from __future__ import annotations

import itertools
import json
import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from piacme.keys import b64url_decode, jwk_thumbprint
from piacme.utils.config import Config

ACME_BASE = "https://acme.test"
DIRECTORY_URL = f"{ACME_BASE}/directory"


def free_port() -> int:
	with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
		sock.bind(("127.0.0.1", 0))
		return sock.getsockname()[1]


def make_ca(name: str = "piacme test CA") -> tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
	key = ec.generate_private_key(ec.SECP256R1())
	subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])
	now = datetime.now(timezone.utc)
	cert = (
		x509.CertificateBuilder()
		.subject_name(subject)
		.issuer_name(subject)
		.public_key(key.public_key())
		.serial_number(x509.random_serial_number())
		.not_valid_before(now - timedelta(days=1))
		.not_valid_after(now + timedelta(days=3650))
		.add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
		.sign(key, hashes.SHA256())
	)
	return key, cert


def issue_certificate(
	ca: tuple[ec.EllipticCurvePrivateKey, x509.Certificate],
	public_key,
	domains: list[str],
	*,
	not_before: Optional[datetime] = None,
	not_after: Optional[datetime] = None,
) -> x509.Certificate:
	ca_key, ca_cert = ca
	now = datetime.now(timezone.utc)
	return (
		x509.CertificateBuilder()
		.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
		.issuer_name(ca_cert.subject)
		.public_key(public_key)
		.serial_number(x509.random_serial_number())
		.not_valid_before(not_before or now - timedelta(minutes=5))
		.not_valid_after(not_after or now + timedelta(days=90))
		.add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False)
		.sign(ca_key, hashes.SHA256())
	)


def pem(cert: x509.Certificate) -> str:
	return cert.public_bytes(serialization.Encoding.PEM).decode("ascii").strip()


class FakeAcmeServer:
	"""Minimal RFC 8555 directory served through ``httpx.MockTransport``.

	HTTP-01 validation is real: the challenge POST makes the server fetch the
	token from ``http://127.0.0.1:<challenge_port>``.
	"""

	def __init__(self, challenge_port: int, *, lifetime_days: float = 90.0):
		self.challenge_port = challenge_port
		self.lifetime_days = lifetime_days
		self.ca = make_ca()
		self._nonces = itertools.count(1)
		self._ids = itertools.count(1)
		self.accounts: dict[str, dict[str, Any]] = {}
		self.orders: dict[str, dict[str, Any]] = {}
		self.authzs: dict[str, dict[str, Any]] = {}
		self.certs: dict[str, str] = {}
		self.requests: list[tuple[str, str]] = []
		self.user_agents: set[str] = set()
		self.served: list[tuple[str, int, str]] = []
		self.bad_nonce_once = False
		self.fail_validation = False
		self.new_order_problem: Optional[dict[str, Any]] = None

	@property
	def transport(self) -> httpx.MockTransport:
		return httpx.MockTransport(self.handle)

	def _nonce(self) -> dict[str, str]:
		return {"Replay-Nonce": f"nonce-{next(self._nonces)}"}

	def _json(self, status: int, body: Any, **headers: str) -> httpx.Response:
		return httpx.Response(status, json=body, headers={**self._nonce(), **headers})

	def _problem(self, status: int, kind: str, detail: str) -> httpx.Response:
		body = {"type": f"urn:ietf:params:acme:error:{kind}", "detail": detail, "status": status}
		return httpx.Response(
			status,
			content=json.dumps(body),
			headers={**self._nonce(), "Content-Type": "application/problem+json"},
		)

	def _order_status(self, order: dict[str, Any]) -> str:
		states = [self.authzs[url]["status"] for url in order["authorizations"]]
		if order["status"] in ("valid", "processing"):
			return order["status"]
		if "invalid" in states:
			return "invalid"
		if all(s == "valid" for s in states):
			return "ready"
		return "pending"

	async def handle(self, request: httpx.Request) -> httpx.Response:
		url = str(request.url)
		self.requests.append((request.method, url))
		self.user_agents.add(request.headers.get("User-Agent", ""))

		if url == DIRECTORY_URL:
			return httpx.Response(200, json={
				"newNonce": f"{ACME_BASE}/new-nonce",
				"newAccount": f"{ACME_BASE}/new-account",
				"newOrder": f"{ACME_BASE}/new-order",
				"meta": {"termsOfService": f"{ACME_BASE}/terms"},
			})
		if url == f"{ACME_BASE}/new-nonce":
			return httpx.Response(200, headers=self._nonce())

		jws = json.loads(request.content)
		protected = json.loads(b64url_decode(jws["protected"]))
		payload = json.loads(b64url_decode(jws["payload"])) if jws["payload"] else None
		assert protected["url"] == url

		if self.bad_nonce_once:
			self.bad_nonce_once = False
			return self._problem(400, "badNonce", "stale nonce")

		if url == f"{ACME_BASE}/new-account":
			jwk = protected["jwk"]
			assert "kid" not in protected
			kid = f"{ACME_BASE}/acct/{next(self._ids)}"
			self.accounts[kid] = {"thumbprint": jwk_thumbprint(jwk)}
			return self._json(201, {
				"status": "valid",
				"contact": payload["contact"],
				"createdAt": "2026-10-19T08:00:00Z",
				"initialIp": "203.0.113.7",
				"orders": f"{kid}/orders",
			}, Location=kid)

		kid = protected["kid"]
		assert "jwk" not in protected
		account = self.accounts[kid]

		if url == f"{ACME_BASE}/new-order":
			if self.new_order_problem is not None:
				return self._problem(**self.new_order_problem)
			oid = next(self._ids)
			order_url = f"{ACME_BASE}/order/{oid}"
			authz_urls = []
			for ident in payload["identifiers"]:
				aid = next(self._ids)
				authz_url = f"{ACME_BASE}/authz/{aid}"
				self.authzs[authz_url] = {
					"status": "pending",
					"identifier": ident,
					"challenges": [
						{"type": "dns-01", "url": f"{ACME_BASE}/chall/{aid}/dns", "token": f"dns{aid}", "status": "pending"},
						{"type": "http-01", "url": f"{ACME_BASE}/chall/{aid}", "token": f"token_{aid}-x", "status": "pending"},
					],
				}
				authz_urls.append(authz_url)
			self.orders[order_url] = {
				"status": "pending",
				"identifiers": payload["identifiers"],
				"authorizations": authz_urls,
				"finalize": f"{order_url}/finalize",
			}
			return self._json(201, self.orders[order_url], Location=order_url)

		if url in self.authzs:
			return self._json(200, self.authzs[url])

		if url.startswith(f"{ACME_BASE}/chall/"):
			authz_url = url.replace("/chall/", "/authz/")
			authz = self.authzs[authz_url]
			challenge = authz["challenges"][1]
			expected = f"{challenge['token']}.{account['thumbprint']}"
			async with httpx.AsyncClient(timeout=5.0) as http:
				resp = await http.get(
					f"http://127.0.0.1:{self.challenge_port}/.well-known/acme-challenge/{challenge['token']}",
					headers={"Host": authz["identifier"]["value"]},
				)
			self.served.append((challenge["token"], resp.status_code, resp.text))
			ok = resp.status_code == 200 and resp.text == expected and not self.fail_validation
			authz["status"] = challenge["status"] = "valid" if ok else "invalid"
			if not ok:
				challenge["error"] = {
					"type": "urn:ietf:params:acme:error:unauthorized",
					"detail": f"Invalid response from challenge: {resp.status_code}",
				}
			return self._json(200, challenge)

		if url.endswith("/finalize"):
			order_url = url[: -len("/finalize")]
			order = self.orders[order_url]
			if self._order_status(order) != "ready":
				return self._problem(403, "orderNotReady", "order is not ready")
			csr = x509.load_der_x509_csr(b64url_decode(payload["csr"]))
			san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
			names = san.get_values_for_type(x509.DNSName)
			assert sorted(names) == sorted(i["value"] for i in order["identifiers"])
			now = datetime.now(timezone.utc)
			cert = issue_certificate(
				self.ca,
				csr.public_key(),
				names,
				not_after=now + timedelta(days=self.lifetime_days),
			)
			cert_url = f"{order_url}/cert"
			self.certs[cert_url] = f"{pem(cert)}\n\n{pem(self.ca[1])}\n"
			order.update(status="valid", certificate=cert_url)
			return self._json(200, order, Location=order_url)

		if url in self.orders:
			order = self.orders[url]
			return self._json(200, {**order, "status": self._order_status(order)})

		if url in self.certs:
			assert request.headers["Accept"] == "application/pem-certificate-chain"
			return httpx.Response(
				200,
				text=self.certs[url],
				headers={**self._nonce(), "Content-Type": "application/pem-certificate-chain"},
			)

		return self._problem(404, "malformed", f"unknown resource {url}")


def make_config(tmp_path: Path, **overrides: Any) -> Config:
	cert_dir = tmp_path / "cert"
	values: dict[str, Any] = {
		"domains": ("example.com", "www.example.com"),
		"maintainer": "ops@example.com",
		"subscriber": "acme@example.com",
		"account_file": cert_dir / "account.json",
		"account_key_file": cert_dir / "account.pem",
		"server_key_file": cert_dir / "private.pem",
		"full_chain_file": cert_dir / "fullchain.pem",
		"directory_url": DIRECTORY_URL,
		"challenge_host": "127.0.0.1",
		"challenge_port": free_port(),
		"challenge_wait": 2.0,
	}
	values.update(overrides)
	return Config(**values)


@pytest.fixture
def cfg(tmp_path: Path) -> Config:
	return make_config(tmp_path)


@pytest.fixture
def acme_server(cfg: Config) -> FakeAcmeServer:
	return FakeAcmeServer(cfg.challenge_port)


@pytest.fixture
def fast_polling() -> dict[str, Any]:
	"""ACMEClient options that keep polling tests quick."""
	return {"poll_delay": 0.01, "max_poll_delay": 0.05}
