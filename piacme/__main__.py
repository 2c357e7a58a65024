#!/usr/bin/env python3
#
# piacme/__main__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

import sys

from .main import main

sys.exit(main())
