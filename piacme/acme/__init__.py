#!/usr/bin/env python3
#
# piacme/acme/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME v2 protocol client."""

from .client import ACMEClient, NotifyCallback, split_pem_chain

__all__ = ["ACMEClient", "NotifyCallback", "split_pem_chain"]
