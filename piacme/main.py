#!/usr/bin/env python3
#
# piacme/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Command line entry point and logging setup.

Usage::

	piacme --domain example.com --maintainer ops@example.com get
	piacme --domain example.com check
	piacme --domain example.com --staging create --force
	piacme --domain example.com monitor
	python -m piacme parse
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import httpx

from .errors import AgreementRequiredError, ConfigValidationError, PiAcmeError
from .manager import CertManager
from .utils.config import ACME_DIRECTORY_STAGING, Config, load_config
from .utils.version import APP_NAME, VERSION

_log = logging.getLogger(__name__)

# ANSI color codes for log levels (if TTY)
_LOG_COLORS = {
	"DEBUG": "\033[36m",    # Cyan
	"INFO": "\033[32m",     # Green
	"WARNING": "\033[33m",  # Yellow
	"ERROR": "\033[31m",    # Red
	"CRITICAL": "\033[35m", # Magenta
}
_RESET = "\033[0m"
_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class _ColoredFormatter(logging.Formatter):
	"""Formatter that pads and colors the level name in a TTY."""

	def format(self, record):
		orig_levelname = record.levelname
		color = _LOG_COLORS.get(orig_levelname)
		if color:
			record.levelname = f"{color}{orig_levelname:<8}{_RESET}"
		else:
			record.levelname = f"{orig_levelname:<8}"
		try:
			return super().format(record)
		finally:
			record.levelname = orig_levelname


def setup_logging(log_level: str) -> None:
	"""Configure one handler on the root logger for piacme and its libraries."""
	level = getattr(logging, log_level, logging.INFO)
	if sys.stderr.isatty():
		formatter: logging.Formatter = _ColoredFormatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)
	else:
		formatter = logging.Formatter(
			fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
			datefmt=_DATE_FORMAT,
		)

	# force=True drops handlers installed by anyone before us
	logging.basicConfig(level=level, handlers=[logging.StreamHandler(sys.stderr)], force=True)
	for handler in logging.root.handlers:
		handler.setFormatter(formatter)

	# The challenge responder runs uvicorn; route it through the root handler
	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		logger = logging.getLogger(name)
		logger.handlers.clear()
		logger.propagate = True

	# Quiet down noisy third-party libraries
	for name in ("httpcore", "httpx", "uvicorn.error", "uvicorn.access"):
		logging.getLogger(name).setLevel(logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog=APP_NAME,
		description="Let's Encrypt certificates via ACME HTTP-01 with a built-in validation server",
	)
	parser.add_argument(
		"-d",
		"--domain",
		action="append",
		dest="domains",
		metavar="NAME",
		help="Domain for the certificate (repeatable, first one is the common name).",
	)
	parser.add_argument("--maintainer", metavar="EMAIL", help="Contact address of the operator.")
	parser.add_argument("--subscriber", metavar="EMAIL", help="Contact address registered with the CA.")
	parser.add_argument(
		"--cert-dir",
		metavar="PATH",
		type=Path,
		help="Directory holding account.json, account.pem, private.pem and fullchain.pem.",
	)
	parser.add_argument("--port", type=int, dest="challenge_port", help="Port of the HTTP-01 validation server.")
	parser.add_argument(
		"--staging",
		action="store_true",
		default=False,
		help="Use the Let's Encrypt staging directory.",
	)
	parser.add_argument(
		"--debug",
		action="store_true",
		default=False,
		help="Verbose logging including every ACME notification.",
	)
	parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {VERSION}")

	subparsers = parser.add_subparsers(dest="command", required=True)
	subparsers.add_parser("get", help="Ensure a valid certificate exists, renewing if needed")
	subparsers.add_parser("check", help="Check the certificate (exit 1 if renewal is needed)")
	subparsers.add_parser("parse", help="Print details of keys, account and certificate as JSON")
	subparsers.add_parser("keys", help="Load or create account key, account and server key")
	create = subparsers.add_parser("create", help="Issue a certificate if none exists")
	create.add_argument("--force", action="store_true", default=False, help="Issue even if one exists.")
	subparsers.add_parser("monitor", help="Get the certificate, then keep renewing it until interrupted")
	probe = subparsers.add_parser("test-connection", help="Check the validation port is reachable from outside")
	probe.add_argument("--host", help="Host name to probe (defaults to the first domain).")
	probe.add_argument("--timeout", type=float, default=5.0, help="Probe timeout in seconds.")
	return parser


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
	overrides: dict[str, Any] = {}
	if args.domains:
		overrides["domains"] = args.domains
	for name in ("maintainer", "subscriber", "challenge_port"):
		value = getattr(args, name)
		if value is not None:
			overrides[name] = value
	if args.cert_dir is not None:
		overrides["account_file"] = args.cert_dir / "account.json"
		overrides["account_key_file"] = args.cert_dir / "account.pem"
		overrides["server_key_file"] = args.cert_dir / "private.pem"
		overrides["full_chain_file"] = args.cert_dir / "fullchain.pem"
	if args.staging:
		overrides["directory_url"] = ACME_DIRECTORY_STAGING
	if args.debug:
		overrides["debug"] = True
	return overrides


async def _monitor(manager: CertManager) -> bool:
	stop = asyncio.Event()
	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		try:
			loop.add_signal_handler(sig, stop.set)
		except NotImplementedError:
			# Windows event loops have no signal handlers
			pass

	valid = await manager.get_cert()
	scheduler = await manager.monitor_cert(
		on_renew=lambda: _log.info("RENEWAL new certificate written: %s", manager.cfg.full_chain_file),
	)
	try:
		waiters = [asyncio.create_task(stop.wait()), asyncio.create_task(scheduler.wait())]
		_, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
		for task in pending:
			task.cancel()
	finally:
		await manager.stop_monitor()
	return valid


async def _run(command: str, args: argparse.Namespace, cfg: Config) -> int:
	manager = CertManager(cfg)
	if command == "get":
		if not await manager.get_cert():
			return 1
		print(f"key={manager.tls_files.key}\ncrt={manager.tls_files.crt}")
		return 0
	if command == "check":
		status = manager.check_status()
		print(f"{status.reason.value} remaining_days={status.remaining_days:.1f}")
		return 0 if status.valid else 1
	if command == "parse":
		print(json.dumps(manager.parse_cert().as_dict(), indent=2))
		return 0
	if command == "keys":
		return 0 if await manager.create_keys() else 1
	if command == "create":
		return 0 if await manager.create_cert(force=args.force) else 1
	if command == "monitor":
		return 0 if await _monitor(manager) else 1
	if command == "test-connection":
		return 0 if await manager.test_connection(args.host, timeout=args.timeout) else 1
	raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[list[str]] = None) -> int:
	"""CLI entry point. Returns the process exit code."""
	parser = _build_parser()
	args = parser.parse_args(argv)

	try:
		cfg = load_config(**_overrides(args))
	except ConfigValidationError as exc:
		print(f"{APP_NAME}: {exc}", file=sys.stderr)
		return 2

	setup_logging(cfg.log_level)
	_log.debug("%s %s starting command=%s", APP_NAME, VERSION, args.command)

	try:
		return asyncio.run(_run(args.command, args, cfg))
	except AgreementRequiredError as exc:
		_log.critical("ACME manual action required: %s", exc)
		return 3
	except (PiAcmeError, httpx.HTTPError) as exc:
		_log.error("%s", exc)
		return 1
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	sys.exit(main())
