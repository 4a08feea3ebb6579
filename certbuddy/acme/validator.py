#!/usr/bin/env python3
#
# certbuddy/acme/validator.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""HTTP-01 domain ownership validation for a single authorization."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

from .challenges import ChallengeResponseStore
from .client import HTTP01, AcmeProtocolClient
from .errors import AuthorizationError, ValidationTimeoutError
from .models import AuthorizationHandle, AuthorizationState, AuthorizationStatus

_log = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 2.0
MAX_POLL_ATTEMPTS = 60


class ValidationState(str, Enum):
	NOT_STARTED = "not_started"
	CHALLENGE_PUBLISHED = "challenge_published"
	POLLING = "polling"
	VALID = "valid"
	INVALID = "invalid"
	REVOKED = "revoked"
	EXPIRED = "expired"
	TIMED_OUT = "timed_out"


def describe_failure(authorization: AuthorizationState) -> str:
	"""Join the error of every failed challenge, or ``"unknown"``."""
	errors = [
		f"{c.error.type}: {c.error.detail}, Code = {c.error.status}"
		for c in authorization.challenges
		if c.error is not None
	]
	if not errors:
		_log.debug("Could not determine why validation failed. Response: %r", authorization)
		return "unknown"
	return "; ".join(errors)


class DomainOwnershipValidator:
	"""Drives one authorization to a terminal state.

	publish challenge -> trigger remote validation -> poll every
	``poll_interval`` seconds, at most ``max_attempts`` times. Instances are
	cheap; create one per authorization so concurrent validations of the
	same order never share state. Cancelling the awaiting task aborts the
	poll loop.
	"""

	def __init__(
		self,
		client: AcmeProtocolClient,
		challenge_store: ChallengeResponseStore,
		*,
		poll_interval: float = POLL_INTERVAL_SECONDS,
		max_attempts: int = MAX_POLL_ATTEMPTS,
		sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
	) -> None:
		self.client = client
		self.challenge_store = challenge_store
		self.poll_interval = poll_interval
		self.max_attempts = max_attempts
		self._sleep = sleep
		self.state = ValidationState.NOT_STARTED

	async def validate(self, handle: AuthorizationHandle) -> None:
		"""Prove control of the authorization's domain.

		Raises:
			AuthorizationError: Invalid, revoked, expired or unexpected status
			ValidationTimeoutError: No terminal state within the poll budget
			ProtocolError: An ACA request failed
		"""
		authorization = await self.client.fetch_authorization(handle)
		domain = authorization.domain or handle.domain
		if authorization.status == AuthorizationStatus.VALID:
			# Short circuit if authorization is already complete
			self.state = ValidationState.VALID
			_log.debug("Authorization for %s already valid", domain)
			return

		challenge = await self.client.create_challenge(handle, HTTP01)
		self.challenge_store.put(challenge.token, challenge.key_authorization)
		try:
			self.state = ValidationState.CHALLENGE_PUBLISHED
			_log.info("CHALLENGE_PUBLISHED domain=%s token=%s", domain, challenge.token)
			await self.client.trigger_validation(challenge)
			await self._wait_for_result(handle, domain)
		finally:
			self.challenge_store.discard(challenge.token)

	async def _wait_for_result(self, handle: AuthorizationHandle, domain: str) -> None:
		self.state = ValidationState.POLLING
		for attempt in range(1, self.max_attempts + 1):
			authorization = await self.client.fetch_authorization(handle)
			status = authorization.status

			if status == AuthorizationStatus.VALID:
				self.state = ValidationState.VALID
				_log.info("VALIDATION_OK domain=%s attempts=%d", domain, attempt)
				return
			if status == AuthorizationStatus.PENDING:
				if attempt < self.max_attempts:
					await self._sleep(self.poll_interval)
				continue
			if status == AuthorizationStatus.INVALID:
				self.state = ValidationState.INVALID
				reason = describe_failure(authorization)
				_log.error("Failed to validate ownership of domain '%s'. Reason: %s", domain, reason)
				raise AuthorizationError(
					f"Failed to validate ownership of domain '{domain}': {reason}",
					domain=domain,
					status=status,
				)
			if status == AuthorizationStatus.REVOKED:
				self.state = ValidationState.REVOKED
				raise AuthorizationError(
					f"The authorization to verify domain '{domain}' has been revoked.",
					domain=domain,
					status=status,
				)
			if status == AuthorizationStatus.EXPIRED:
				self.state = ValidationState.EXPIRED
				raise AuthorizationError(
					f"The authorization to verify domain '{domain}' has expired.",
					domain=domain,
					status=status,
				)
			raise AuthorizationError(
				f"Unexpected authorization status {status!r} while validating domain '{domain}'",
				domain=domain,
				status=status,
			)

		self.state = ValidationState.TIMED_OUT
		raise ValidationTimeoutError(
			f"Timed out waiting for ownership validation of domain '{domain}'",
			domain=domain,
			status=AuthorizationStatus.PENDING.value,
		)
