#!/usr/bin/env python3
#
# certbuddy/middleware/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Middleware modules for CertBuddy."""

from .challenge import ChallengeResponseMiddleware

__all__ = ["ChallengeResponseMiddleware"]
