#!/usr/bin/env python3
#
# piacme/acme/client.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lightweight async ACME v2 (RFC 8555) client for HTTP-01 issuance."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from ..errors import ACME_URN_PREFIX, AcmeProtocolError, AgreementRequiredError, OrderTimeoutError
from ..keys import KeyPair, b64url
from ..models import Account, CertificateChain
from ..utils.version import USER_AGENT

_log = logging.getLogger(__name__)

__all__ = ["ACMEClient", "NotifyCallback", "split_pem_chain"]

NotifyCallback = Callable[[str, dict[str, Any]], Union[None, Awaitable[None]]]

CHALLENGE_TYPE = "http-01"

# Polling budget
DEFAULT_POLL_DELAY = 1.0
DEFAULT_MAX_POLL_DELAY = 10.0
DEFAULT_MAX_POLL = 12
DEFAULT_MAX_PEND = 8
_BAD_NONCE_RETRIES = 3

_FAILED_STATES = {"invalid", "expired", "revoked", "deactivated"}
_PEM_CERT_RE = re.compile(
	r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----",
	re.DOTALL,
)


def split_pem_chain(pem: str) -> CertificateChain:
	"""Split a downloaded PEM bundle into leaf certificate and chain."""
	blocks = _PEM_CERT_RE.findall(pem)
	if not blocks:
		raise AcmeProtocolError("Certificate download did not contain a PEM certificate")
	return CertificateChain(cert=blocks[0], chain="\n".join(blocks[1:]))


def _problem_error(
	resp: httpx.Response,
	message: str,
	error_cls: type[AcmeProtocolError] = AcmeProtocolError,
) -> AcmeProtocolError:
	"""Build an AcmeProtocolError from an RFC 7807 problem response."""
	try:
		problem = resp.json()
		if not isinstance(problem, dict):
			problem = {}
	except ValueError:
		problem = {}
	detail = problem.get("detail") or resp.text or resp.reason_phrase
	urn = problem.get("type")
	if urn in (ACME_URN_PREFIX + "agreementRequired", ACME_URN_PREFIX + "userActionRequired"):
		error_cls = AgreementRequiredError
	return error_cls(f"{message}: {detail}", urn=urn, status=resp.status_code, problem=problem)


def _resource_error(resource: dict[str, Any], message: str) -> AcmeProtocolError:
	"""Extract the most specific problem document from a failed authz/order."""
	problem = resource.get("error")
	if not problem:
		for challenge in resource.get("challenges", []):
			if challenge.get("error"):
				problem = challenge["error"]
				break
	problem = problem or {}
	detail = problem.get("detail") or f"status {resource.get('status')}"
	return AcmeProtocolError(
		f"{message}: {detail}",
		urn=problem.get("type"),
		status=problem.get("status"),
		problem=problem,
	)


class ACMEClient:
	"""Lightweight ACME v2 client.

	Only the HTTP-01 challenge type is wired. Challenge material is handed to
	the ``notify`` callback (``challenge_select`` event) so a separate
	responder can serve it; the client itself never serves anything.

	Usage::

		async with ACMEClient(directory_url, notify=notifier.notify) as client:
			account = await client.create_account(account_key, "me@example.com")
			chain = await client.create_certificate(account, account_key, csr_der, domains)
	"""

	def __init__(
		self,
		directory_url: str,
		*,
		user_agent: str = USER_AGENT,
		notify: Optional[NotifyCallback] = None,
		verify: Union[bool, str] = True,
		transport: Optional[httpx.AsyncBaseTransport] = None,
		poll_delay: float = DEFAULT_POLL_DELAY,
		max_poll_delay: float = DEFAULT_MAX_POLL_DELAY,
		max_poll: int = DEFAULT_MAX_POLL,
		max_pend: int = DEFAULT_MAX_PEND,
	):
		self.directory_url = directory_url
		self.user_agent = user_agent
		self.notify = notify
		self.verify = verify
		self.transport = transport
		self.poll_delay = poll_delay
		self.max_poll_delay = max_poll_delay
		self.max_poll = max_poll
		self.max_pend = max_pend
		self.directory: dict[str, Any] = {}
		self.nonce: Optional[str] = None
		self.http_client: Optional[httpx.AsyncClient] = None

	async def __aenter__(self) -> "ACMEClient":
		self.http_client = httpx.AsyncClient(
			timeout=30.0,
			verify=self.verify,
			transport=self.transport,
			headers={"User-Agent": self.user_agent},
		)
		return self

	async def __aexit__(self, *args) -> None:
		if self.http_client:
			await self.http_client.aclose()
			self.http_client = None

	# -----------------------------------------------------------------------
	# Transport helpers
	# -----------------------------------------------------------------------

	def _client(self) -> httpx.AsyncClient:
		if not self.http_client:
			raise RuntimeError("HTTP client not initialized")
		return self.http_client

	async def init(self) -> dict[str, Any]:
		"""Fetch ACME directory."""
		if self.directory:
			return self.directory
		resp = await self._client().get(self.directory_url)
		if resp.status_code != 200:
			raise _problem_error(resp, f"Failed to fetch ACME directory {self.directory_url}")
		self.directory = resp.json()
		_log.debug("ACME directory loaded: %s", self.directory_url)
		return self.directory

	async def _emit(self, event: str, payload: dict[str, Any]) -> None:
		if self.notify is None:
			return
		result = self.notify(event, payload)
		if inspect.isawaitable(result):
			await result

	async def _get_nonce(self) -> str:
		"""Get a fresh nonce with fallback."""
		if self.nonce:
			nonce = self.nonce
			self.nonce = None
			return nonce

		directory = await self.init()
		resp = await self._client().head(directory["newNonce"])
		if "Replay-Nonce" in resp.headers:
			return resp.headers["Replay-Nonce"]

		# Fallback: GET request to newNonce
		resp = await self._client().get(directory["newNonce"])
		if "Replay-Nonce" not in resp.headers:
			raise AcmeProtocolError("Failed to obtain ACME nonce", status=resp.status_code)
		return resp.headers["Replay-Nonce"]

	@staticmethod
	def _sign(key: KeyPair, data: bytes) -> bytes:
		"""Sign JWS input with the algorithm chosen by ``_alg_for``."""
		if isinstance(key.key, ec.EllipticCurvePrivateKey):
			size = (key.key.curve.key_size + 7) // 8
			if size == 32:
				digest = hashes.SHA256()
			elif size == 48:
				digest = hashes.SHA384()
			else:
				raise ValueError(f"Unsupported EC curve: {key.key.curve.name}")
			r, s = decode_dss_signature(key.key.sign(data, ec.ECDSA(digest)))
			# JWS ECDSA signature is r || s, fixed width
			return r.to_bytes(size, "big") + s.to_bytes(size, "big")
		return key.key.sign(data, padding.PKCS1v15(), hashes.SHA256())

	@staticmethod
	def _alg_for(key: KeyPair) -> str:
		if isinstance(key.key, ec.EllipticCurvePrivateKey):
			return "ES384" if key.key.curve.key_size > 256 else "ES256"
		return "RS256"

	async def _signed_request(
		self,
		url: str,
		payload: Optional[dict[str, Any]],
		*,
		key: KeyPair,
		kid: Optional[str] = None,
		accept: Optional[str] = None,
	) -> httpx.Response:
		"""Make a signed JWS request. ``payload=None`` means POST-as-GET."""
		payload_b64 = "" if payload is None else b64url(json.dumps(payload).encode("utf-8"))

		attempt = 0
		while True:
			attempt += 1
			protected: dict[str, Any] = {
				"alg": self._alg_for(key),
				"nonce": await self._get_nonce(),
				"url": url,
			}
			if kid:
				protected["kid"] = kid
			else:
				protected["jwk"] = key.public_jwk

			protected_b64 = b64url(json.dumps(protected).encode("utf-8"))
			signature = self._sign(key, f"{protected_b64}.{payload_b64}".encode("ascii"))
			body = {
				"protected": protected_b64,
				"payload": payload_b64,
				"signature": b64url(signature),
			}
			headers = {"Content-Type": "application/jose+json"}
			if accept:
				headers["Accept"] = accept

			resp = await self._client().post(url, content=json.dumps(body), headers=headers)

			# Store replay nonce for next request
			if "Replay-Nonce" in resp.headers:
				self.nonce = resp.headers["Replay-Nonce"]

			if resp.status_code == 400 and attempt < _BAD_NONCE_RETRIES:
				try:
					problem_type = resp.json().get("type")
				except ValueError:
					problem_type = None
				if problem_type == ACME_URN_PREFIX + "badNonce":
					_log.debug("ACME bad nonce for %s, retrying (%d)", url, attempt)
					continue
			return resp

	# -----------------------------------------------------------------------
	# Accounts
	# -----------------------------------------------------------------------

	async def create_account(
		self,
		account_key: KeyPair,
		subscriber_email: str,
		*,
		agree_to_terms: bool = True,
	) -> Account:
		"""Register a new account (or fetch the existing one for this key)."""
		if not agree_to_terms:
			raise AgreementRequiredError(
				"Terms of service must be agreed before creating an account",
				urn=ACME_URN_PREFIX + "agreementRequired",
			)
		directory = await self.init()
		contact = [f"mailto:{subscriber_email}"]
		payload = {"termsOfServiceAgreed": True, "contact": contact}

		resp = await self._signed_request(directory["newAccount"], payload, key=account_key)
		if resp.status_code not in (200, 201):
			raise _problem_error(resp, "Failed to register account")

		kid = resp.headers.get("Location")
		if not kid:
			raise AcmeProtocolError("No account URL in response", status=resp.status_code)

		data = resp.json() if resp.content else {}
		data.pop("key", None)
		data.setdefault("contact", contact)
		account = Account.model_validate({**data, "key": {"kid": kid}})
		_log.info("ACME account registered: %s", kid)
		return account

	# -----------------------------------------------------------------------
	# Orders
	# -----------------------------------------------------------------------

	async def _post_as_get(self, url: str, key: KeyPair, kid: str, what: str) -> dict[str, Any]:
		resp = await self._signed_request(url, None, key=key, kid=kid)
		if resp.status_code != 200:
			raise _problem_error(resp, f"Failed to fetch {what}")
		return resp.json()

	async def _poll(
		self,
		url: str,
		*,
		key: KeyPair,
		kid: str,
		what: str,
		done: set[str],
	) -> dict[str, Any]:
		"""Poll an authorization or order until it reaches one of ``done``."""
		delay = self.poll_delay
		pending = 0
		status = None
		for attempt in range(1, self.max_poll + 1):
			resp = await self._signed_request(url, None, key=key, kid=kid)
			if resp.status_code != 200:
				raise _problem_error(resp, f"Failed to poll {what}")
			resource = resp.json()
			status = resource.get("status")
			await self._emit(f"{what}_status", {"url": url, "status": status, "attempt": attempt})

			if status in done:
				return resource
			if status in _FAILED_STATES:
				raise _resource_error(resource, f"{what.capitalize()} {status}")
			if status == "pending":
				pending += 1
				if pending > self.max_pend:
					break

			retry_after = resp.headers.get("Retry-After", "")
			wait = min(float(retry_after), self.max_poll_delay) if retry_after.isdigit() else delay
			await asyncio.sleep(wait)
			delay = min(delay * 2, self.max_poll_delay)

		raise OrderTimeoutError(
			f"Timeout waiting for {what} {url} (last status: {status})",
			urn=ACME_URN_PREFIX + "timeout",
		)

	async def create_certificate(
		self,
		account: Account,
		account_key: KeyPair,
		csr_der: bytes,
		domains: list[str],
	) -> CertificateChain:
		"""Run one complete order: challenges, finalize, download.

		Raises:
			AcmeProtocolError: On any protocol failure, invalid authorization
				or order, or exhausted polling budget
		"""
		directory = await self.init()
		kid = account.kid

		payload = {"identifiers": [{"type": "dns", "value": d} for d in domains]}
		resp = await self._signed_request(directory["newOrder"], payload, key=account_key, kid=kid)
		if resp.status_code not in (200, 201):
			raise _problem_error(resp, "Failed to create order")
		order_url = resp.headers.get("Location")
		order = resp.json()
		if not order_url:
			raise AcmeProtocolError("No order URL in response", status=resp.status_code)
		_log.info("ACME created order: %s", order_url)
		await self._emit("certificate_order", {"subject": domains[0], "altnames": list(domains), "status": order.get("status")})

		# Select and publish every challenge before telling the CA to validate,
		# so the responder knows all tokens by the time requests arrive.
		selected: list[tuple[str, str, dict[str, Any]]] = []
		for authz_url in order.get("authorizations", []):
			authz = await self._post_as_get(authz_url, account_key, kid, "authorization")
			altname = authz["identifier"]["value"]
			if authz.get("wildcard"):
				altname = f"*.{altname}"
			if authz.get("status") == "valid":
				_log.info("ACME authorization for %s already valid", altname)
				continue

			challenge = next((c for c in authz.get("challenges", []) if c.get("type") == CHALLENGE_TYPE), None)
			if challenge is None:
				raise AcmeProtocolError(
					f"No {CHALLENGE_TYPE} challenge offered for {altname}",
					urn=ACME_URN_PREFIX + "unsupportedIdentifier",
				)
			key_authorization = f"{challenge['token']}.{account_key.thumbprint}"
			await self._emit(
				"challenge_select",
				{
					"altname": altname,
					"type": CHALLENGE_TYPE,
					"challenge": {
						"type": CHALLENGE_TYPE,
						"url": challenge["url"],
						"token": challenge["token"],
						"keyAuthorization": key_authorization,
					},
				},
			)
			selected.append((authz_url, altname, challenge))

		for authz_url, altname, challenge in selected:
			resp = await self._signed_request(challenge["url"], {}, key=account_key, kid=kid)
			if resp.status_code not in (200, 202):
				raise _problem_error(resp, f"Failed to respond to challenge for {altname}")
			await self._emit(
				"challenge_status",
				{"altname": altname, "url": challenge["url"], "status": resp.json().get("status") if resp.content else None},
			)
			await self._poll(authz_url, key=account_key, kid=kid, what="authorization", done={"valid"})
			_log.info("ACME authorization valid: %s", altname)

		order = await self._poll(order_url, key=account_key, kid=kid, what="order", done={"ready", "valid"})

		if order.get("status") == "ready":
			resp = await self._signed_request(
				order["finalize"], {"csr": b64url(csr_der)}, key=account_key, kid=kid,
			)
			if resp.status_code not in (200, 201):
				raise _problem_error(resp, "Failed to finalize order")
			order = resp.json()
			if order.get("status") != "valid":
				order = await self._poll(order_url, key=account_key, kid=kid, what="order", done={"valid"})

		cert_url = order.get("certificate")
		if not cert_url:
			raise AcmeProtocolError("No certificate URL in order")

		resp = await self._signed_request(
			cert_url, None, key=account_key, kid=kid, accept="application/pem-certificate-chain",
		)
		if resp.status_code != 200:
			raise _problem_error(resp, "Failed to download certificate")

		chain = split_pem_chain(resp.text)
		await self._emit("cert_issue", {"subject": domains[0], "altnames": list(domains), "url": cert_url})
		return chain
