#!/usr/bin/env python3
#
# certbuddy/acme/challenges.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""In-memory HTTP-01 challenge responses."""

from __future__ import annotations

import threading
from typing import Optional


class ChallengeResponseStore:
	"""Token -> key authorization mapping served at /.well-known/acme-challenge/.

	Written by issuance tasks, read by the HTTP responder; both may run on
	different threads. Tokens are unpredictable and short-lived, so stale
	entries are harmless.
	"""

	def __init__(self) -> None:
		self._values: dict[str, str] = {}
		self._lock = threading.Lock()

	def put(self, token: str, response: str) -> None:
		"""Insert or overwrite the response for ``token``."""
		with self._lock:
			self._values[token] = response

	def get(self, token: str) -> Optional[str]:
		with self._lock:
			return self._values.get(token)

	def discard(self, token: str) -> None:
		with self._lock:
			self._values.pop(token, None)

	def __len__(self) -> int:
		with self._lock:
			return len(self._values)
