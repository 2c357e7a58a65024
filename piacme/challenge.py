#!/usr/bin/env python3
#
# piacme/challenge.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""HTTP-01 challenge notifier and in-memory responder.

The notifier is the ``notify`` callback of :class:`ACMEClient`; it collects
``{token, keyAuthorization, altname}`` tuples. The responder is a tiny
FastAPI app served by uvicorn on the challenge port which answers
``/.well-known/acme-challenge/<token>`` straight from the notifier, so no
webroot files are involved.
"""

from __future__ import annotations

import asyncio
import logging
import re
import socket
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from .models import PendingChallenge

_log = logging.getLogger(__name__)

__all__ = [
	"ACME_CHALLENGE_PATH",
	"ChallengeNotifier",
	"ChallengeResponder",
]

ACME_CHALLENGE_PATH = "/.well-known/acme-challenge/"

_TOKEN_RE = re.compile(r"^[A-Za-z0-9_\-]+$")
_STARTUP_TIMEOUT = 5.0
_SHUTDOWN_TIMEOUT = 5.0


class ChallengeNotifier:
	"""Mailbox between the ACME client and the HTTP responder.

	One instance lives for exactly one order attempt, so tokens from a
	failed attempt can never answer a later request.
	"""

	def __init__(self, expected: int = 1, *, debug: bool = False):
		self.expected = expected
		self.debug = debug
		self.challenges: list[PendingChallenge] = []
		self._cond = asyncio.Condition()

	async def notify(self, event: str, payload: dict[str, Any]) -> None:
		"""ACME client callback; records challenge material when present."""
		if self.debug:
			_log.debug("ACME notification %s %s", event, payload)
		challenge = payload.get("challenge") or {}
		key = challenge.get("keyAuthorization")
		token = challenge.get("token")
		if key and token:
			await self.publish(token, key, payload.get("altname") or "")

	async def publish(self, token: str, key_authorization: str, host: str = "") -> None:
		async with self._cond:
			self.challenges.append(PendingChallenge(token=token, key=key_authorization, host=host))
			self._cond.notify_all()

	def find(self, token: str) -> Optional[PendingChallenge]:
		for challenge in self.challenges:
			if challenge.token == token:
				return challenge
		return None

	def _ready(self, token: str) -> bool:
		return self.find(token) is not None or len(self.challenges) >= self.expected

	async def wait_for(self, token: str, timeout: float) -> Optional[PendingChallenge]:
		"""Wait until ``token`` is known or every expected challenge arrived.

		Validation requests can reach us before the client has published the
		matching token; this bridges that gap for at most ``timeout`` seconds.
		"""
		try:
			async with self._cond:
				await asyncio.wait_for(self._cond.wait_for(lambda: self._ready(token)), timeout=timeout)
		except asyncio.TimeoutError:
			_log.debug("CHALLENGE wait for token %s timed out after %.1fs", token[:20], timeout)
		return self.find(token)


def _bind_socket(host: str, port: int) -> socket.socket:
	"""Bind the listening socket ourselves so bind errors surface as OSError."""
	family = socket.AF_INET6 if ":" in host else socket.AF_INET
	sock = socket.socket(family, socket.SOCK_STREAM)
	try:
		sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
		sock.bind((host, port))
	except OSError:
		sock.close()
		raise
	return sock


class ChallengeResponder:
	"""HTTP-01 responder bound to the challenge port for one order attempt.

	Usage::

		async with ChallengeResponder(notifier, port=80):
			...  # run the order; the port is released on every exit path
	"""

	def __init__(
		self,
		notifier: ChallengeNotifier,
		*,
		host: str = "0.0.0.0",
		port: int = 80,
		wait: float = 30.0,
	):
		self.notifier = notifier
		self.host = host
		self.port = port
		self.wait = wait
		self.app = self._build_app()
		self._server: Optional[uvicorn.Server] = None
		self._task: Optional[asyncio.Task] = None
		self._sock: Optional[socket.socket] = None

	def _build_app(self) -> FastAPI:
		app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

		@app.get(ACME_CHALLENGE_PATH + "{token}", response_class=PlainTextResponse)
		async def serve_challenge(token: str, request: Request) -> PlainTextResponse:
			"""Serve ACME HTTP-01 challenge response."""
			# Validate token format to prevent log spam
			if not _TOKEN_RE.match(token):
				raise HTTPException(status_code=404, detail="Invalid token format")

			challenge = await self.notifier.wait_for(token, self.wait)
			if challenge is None:
				_log.info("CHALLENGE no match url=%s", request.url.path)
				raise HTTPException(status_code=404, detail="Challenge not found")

			_log.info("CHALLENGE served host=%s url=%s", challenge.host, request.url.path)
			return PlainTextResponse(challenge.key)

		return app

	@property
	def is_running(self) -> bool:
		return self._server is not None

	@property
	def bound_port(self) -> Optional[int]:
		"""Actual listening port (useful when constructed with ``port=0``)."""
		if self._sock is None:
			return None
		return self._sock.getsockname()[1]

	async def start(self) -> None:
		"""Bind the challenge port and start serving.

		Raises:
			OSError: If the port cannot be bound (in use, no privilege)
			RuntimeError: If the server did not come up in time
		"""
		if self._server is not None:
			raise RuntimeError("Challenge responder is already running")

		self._sock = _bind_socket(self.host, self.port)
		config = uvicorn.Config(
			self.app,
			log_config=None,
			log_level="warning",
			access_log=False,
			lifespan="off",
		)
		self._server = uvicorn.Server(config)
		self._task = asyncio.create_task(self._server.serve(sockets=[self._sock]))

		loop = asyncio.get_running_loop()
		deadline = loop.time() + _STARTUP_TIMEOUT
		while not self._server.started:
			if self._task.done() or loop.time() > deadline:
				error = self._task.exception() if self._task.done() and not self._task.cancelled() else None
				await self.stop()
				raise RuntimeError(f"Challenge responder failed to start: {error or 'timeout'}")
			await asyncio.sleep(0.02)
		_log.info("CHALLENGE validation server ready on %s:%d", self.host, self.bound_port)

	async def stop(self) -> None:
		"""Stop serving and release the port. Safe to call more than once."""
		server, task, sock = self._server, self._task, self._sock
		self._server = self._task = self._sock = None

		if server is not None:
			server.should_exit = True
		if task is not None:
			_, not_done = await asyncio.wait([task], timeout=_SHUTDOWN_TIMEOUT)
			if not_done:
				_log.warning("CHALLENGE validation server did not stop gracefully, forcing cancel")
				task.cancel()
			results = await asyncio.gather(task, return_exceptions=True)
			if results and isinstance(results[0], Exception):
				_log.warning("CHALLENGE validation server error: %s", results[0])
		if sock is not None:
			sock.close()
		if server is not None:
			_log.info("CHALLENGE validation server closed")

	async def __aenter__(self) -> "ChallengeResponder":
		await self.start()
		return self

	async def __aexit__(self, *args) -> None:
		await self.stop()
