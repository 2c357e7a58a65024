#!/usr/bin/env python3
#
# piacme/utils/version.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Version information for piacme."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

APP_NAME = "piacme"

_VERSION_CACHE: str | None = None


def get_version() -> str:
	"""Get installed package version. Falls back to 'dev'."""
	global _VERSION_CACHE
	if _VERSION_CACHE is not None:
		return _VERSION_CACHE
	try:
		_VERSION_CACHE = version(APP_NAME)
	except PackageNotFoundError:
		_VERSION_CACHE = "dev"
	return _VERSION_CACHE


VERSION = get_version()
USER_AGENT = f"{APP_NAME}/{VERSION}"
