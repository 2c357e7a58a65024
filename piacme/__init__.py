#!/usr/bin/env python3
#
# piacme/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Let's Encrypt certificate automation over ACME HTTP-01."""

from .errors import (
	AccountStoreError,
	AcmeProtocolError,
	AgreementRequiredError,
	ConfigValidationError,
	CsrMismatchError,
	KeyStoreError,
	OrderTimeoutError,
	PiAcmeError,
)
from .manager import (
	CertManager,
	check_cert,
	create_cert,
	create_keys,
	default_manager,
	get_cert,
	init,
	monitor_cert,
	parse_cert,
	test_connection,
	tls_files,
)
from .models import CertificateDetails, CertState, CertStatus, TlsFiles
from .utils.config import Config, load_config, merge_config
from .utils.version import VERSION as __version__

__all__ = [
	"AccountStoreError",
	"AcmeProtocolError",
	"AgreementRequiredError",
	"CertManager",
	"CertState",
	"CertStatus",
	"CertificateDetails",
	"Config",
	"ConfigValidationError",
	"CsrMismatchError",
	"KeyStoreError",
	"OrderTimeoutError",
	"PiAcmeError",
	"TlsFiles",
	"check_cert",
	"create_cert",
	"create_keys",
	"default_manager",
	"get_cert",
	"init",
	"load_config",
	"merge_config",
	"monitor_cert",
	"parse_cert",
	"test_connection",
	"tls_files",
]
