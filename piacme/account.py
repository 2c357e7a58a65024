#!/usr/bin/env python3
#
# piacme/account.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Load-or-register the ACME account."""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from .acme.client import ACMEClient
from .errors import AccountStoreError
from .keys import KeyPair
from .models import Account
from .utils.config import Config

_log = logging.getLogger(__name__)

__all__ = ["AccountManager", "load_account"]


def load_account(cfg: Config) -> Account:
	"""Read the persisted account record.

	Raises:
		AccountStoreError: If the file is unreadable or not a valid account
	"""
	try:
		return Account.model_validate(json.loads(cfg.account_file.read_text(encoding="utf-8")))
	except (OSError, ValueError, ValidationError) as exc:
		raise AccountStoreError(f"Cannot load account {cfg.account_file}: {exc}") from exc


class AccountManager:
	"""Guarantee a registered ACME account exists for the configured contact."""

	def __init__(self, cfg: Config, client: ACMEClient):
		self.cfg = cfg
		self.client = client

	async def ensure_account(self, account_key: KeyPair, *, agree_to_terms: bool = True) -> Account:
		"""Load ``account.json`` or register a new account and persist it.

		``AgreementRequiredError`` and ``AcmeProtocolError`` from the
		registration propagate unchanged.
		"""
		path = self.cfg.account_file
		if path.exists():
			_log.info("ACME account load: %s", path)
			return load_account(self.cfg)

		_log.info("ACME account create: %s", path)
		account = await self.client.create_account(
			account_key,
			self.cfg.subscriber,
			agree_to_terms=agree_to_terms,
		)
		try:
			path.parent.mkdir(parents=True, exist_ok=True)
			path.write_text(account.to_json(), encoding="utf-8")
		except OSError as exc:
			raise AccountStoreError(f"Cannot write account {path}: {exc}") from exc
		return account
