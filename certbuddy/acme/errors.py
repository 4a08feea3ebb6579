#!/usr/bin/env python3
#
# certbuddy/acme/errors.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Error taxonomy for the certificate lifecycle engine."""

from __future__ import annotations

from typing import Optional


class CertError(Exception):
	"""Base class for every certificate lifecycle failure."""


class AccountError(CertError):
	"""Account registration or validation against the ACA failed."""


class AuthorizationError(CertError):
	"""An authorization ended in a non-valid state."""

	def __init__(self, message: str, *, domain: str = "", status: str = "") -> None:
		super().__init__(message)
		self.domain = domain
		self.status = status


class ValidationTimeoutError(AuthorizationError, TimeoutError):
	"""Authorization polling exhausted all attempts."""


class PersistenceError(CertError):
	"""Reading, writing or deleting persisted state failed."""


class ProtocolError(CertError):
	"""An ACA request failed and no more specific error applies."""

	def __init__(
		self,
		message: str,
		*,
		status_code: Optional[int] = None,
		problem_type: str = "",
		detail: str = "",
	) -> None:
		super().__init__(message)
		self.status_code = status_code
		self.problem_type = problem_type
		self.detail = detail
