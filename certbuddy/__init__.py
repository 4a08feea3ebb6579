#!/usr/bin/env python3
#
# certbuddy/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""CertBuddy – automatic ACME certificates for SNI-based TLS termination."""

from .main import create_app

__all__ = ["create_app"]
