#!/usr/bin/env python3
#
# certbuddy/acme/coordinator.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""End-to-end certificate issuance: account bootstrap, order, validation, storage."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from ..utils.time import ensure_utc, utcnow
from .accounts import AccountStore
from .challenges import ChallengeResponseStore
from .client import AcmeProtocolClient
from .errors import AccountError, CertError, ProtocolError
from .models import (
	Account,
	AuthorizationHandle,
	CachedCertificate,
	generate_private_key,
	normalize_domain,
)
from .repository import CertificateRepository
from .validator import DomainOwnershipValidator

_log = logging.getLogger(__name__)

# Skip issuance while the cached certificate is valid beyond this margin
RENEW_MARGIN = timedelta(days=7)

ClientFactory = Callable[[ec.EllipticCurvePrivateKey, Optional[str]], AcmeProtocolClient]
ValidatorFactory = Callable[[AcmeProtocolClient, ChallengeResponseStore], DomainOwnershipValidator]


def build_csr(domain: str, private_key: ec.EllipticCurvePrivateKey) -> bytes:
	"""DER encoded CSR for ``domain`` (CN + SAN, as Let's Encrypt requires)."""
	csr = (
		x509.CertificateSigningRequestBuilder()
		.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
		.add_extension(
			x509.SubjectAlternativeName([x509.DNSName(domain)]),
			critical=False,
		)
		.sign(private_key, hashes.SHA256())
	)
	return csr.public_bytes(serialization.Encoding.DER)


class CertificateIssuanceCoordinator:
	"""Single-flight certificate issuance per domain.

	The ACME client is created lazily, once per process, under a
	double-checked lock; afterwards it is read-only shared state. Every
	domain gets its own lock for the duration of one attempt; concurrent
	callers for a domain that is already in flight return immediately.
	"""

	def __init__(
		self,
		*,
		account_store: AccountStore,
		repository: CertificateRepository,
		challenge_store: ChallengeResponseStore,
		client_factory: ClientFactory,
		email: str,
		validator_factory: ValidatorFactory = DomainOwnershipValidator,
		renew_margin: timedelta = RENEW_MARGIN,
		clock: Callable[[], datetime] = utcnow,
	) -> None:
		self.account_store = account_store
		self.repository = repository
		self.challenge_store = challenge_store
		self.email = email
		self.renew_margin = renew_margin
		self._client_factory = client_factory
		self._validator_factory = validator_factory
		self._clock = clock
		self._client: Optional[AcmeProtocolClient] = None
		self._client_lock = asyncio.Lock()
		self._domain_locks: dict[str, asyncio.Lock] = {}

	@property
	def client(self) -> Optional[AcmeProtocolClient]:
		return self._client

	def in_flight(self) -> set[str]:
		"""Domains with an issuance attempt currently running."""
		return {domain for domain, lock in list(self._domain_locks.items()) if lock.locked()}

	async def aclose(self) -> None:
		client, self._client = self._client, None
		if client is not None:
			await client.aclose()

	# -----------------------------------------------------------------------
	# Account bootstrap
	# -----------------------------------------------------------------------

	async def _ensure_client(self) -> AcmeProtocolClient:
		if self._client is not None:
			return self._client
		async with self._client_lock:
			if self._client is None:  # Double-checked locking
				self._client = await self._bootstrap_account()
		return self._client

	async def _bootstrap_account(self) -> AcmeProtocolClient:
		account = await asyncio.to_thread(self.account_store.load)
		if account is None:
			_log.info("No ACME account found, registering a new one")
			return await self._register(generate_private_key())

		try:
			key = account.load_key()
		except ValueError as exc:
			raise AccountError(f"Stored account key is unusable: {exc}") from exc
		client = self._client_factory(key, account.id)
		try:
			valid = await self._account_is_valid(client)
		except BaseException:
			# Keep the stored account; the next request checks it again
			await client.aclose()
			raise
		if valid:
			_log.info("Using existing ACME account: %s", account.id)
			return client

		await client.aclose()
		return await self._register(generate_private_key())

	async def _account_is_valid(self, client: AcmeProtocolClient) -> bool:
		"""Double check that the stored account is still usable.

		Only an ACA answer counts as "invalid"; transport failures and other
		protocol errors propagate so the stored account is never replaced
		because of a network problem.
		"""
		try:
			status = await client.fetch_account_status()
		except AccountError as exc:
			_log.warning(
				"An account key was found, but could not be matched to a valid account. "
				"Validation error: %s",
				exc,
			)
			return False
		if status != "valid":
			_log.warning(
				"An account key was found, but the account is no longer valid. "
				"Account status: %s. A new account will be registered.",
				status,
			)
			return False
		return True

	async def _register(self, key: ec.EllipticCurvePrivateKey) -> AcmeProtocolClient:
		client = self._client_factory(key, None)
		try:
			try:
				account_id = await client.register_account(self.email)
			except ProtocolError as exc:
				raise AccountError(f"Account registration failed: {exc}") from exc
			account = Account.create(account_id, [self.email], key)
			await asyncio.to_thread(self.account_store.save, account)
		except BaseException:
			await client.aclose()
			raise
		_log.info("ACCOUNT_REGISTERED id=%s", account_id)
		return client

	# -----------------------------------------------------------------------
	# Issuance
	# -----------------------------------------------------------------------

	async def ensure_certificate(self, domain: str) -> bool:
		"""Make sure ``domain`` has a certificate valid beyond the renew margin.

		Never raises for issuance failures: they are logged and the domain
		stays eligible for the next attempt. Returns True only when a new
		certificate was issued and stored.
		"""
		key = normalize_domain(domain)
		if not key:
			return False

		try:
			client = await self._ensure_client()
		except CertError as exc:
			_log.error("CERT_ISSUE_FAILED domain=%s step=account error=%s", key, exc)
			return False
		except Exception:
			_log.exception("CERT_ISSUE_FAILED domain=%s step=account", key)
			return False

		lock = self._domain_locks.get(key)
		if lock is None:
			lock = self._domain_locks.setdefault(key, asyncio.Lock())
		if lock.locked():
			_log.debug("Issuance for %s already in progress", key)
			return False

		async with lock:
			try:
				return await self._attempt(client, key)
			finally:
				self._domain_locks.pop(key, None)

	async def _attempt(self, client: AcmeProtocolClient, domain: str) -> bool:
		step = "check"
		try:
			existing = self.repository.get_certificate(domain)
			if existing is not None and ensure_utc(existing.not_after) > self._clock() + self.renew_margin:
				_log.debug("Certificate for %s still valid until %s", domain, existing.not_after)
				return False

			_log.info("CERT_ISSUE_START domain=%s", domain)
			step = "order"
			order = await client.create_order(domain)
			step = "authorizations"
			handles = await client.list_authorizations(order)
			if not handles:
				raise ProtocolError(f"Order for {domain} has no authorizations")
			step = "validation"
			await self._validate_all(client, handles)

			step = "finalize"
			private_key = generate_private_key()
			chain_pem = await client.finalize_order(order, build_csr(domain, private_key))
			certificate = CachedCertificate.from_parts(domain, private_key, chain_pem)

			step = "save"
			await asyncio.to_thread(self.repository.save, certificate, domain)
		except CertError as exc:
			_log.error("CERT_ISSUE_FAILED domain=%s step=%s error=%s", domain, step, exc)
			return False
		except Exception:
			_log.exception("CERT_ISSUE_FAILED domain=%s step=%s", domain, step)
			return False

		_log.info(
			"CERT_ISSUE_OK domain=%s not_after=%s",
			domain, certificate.not_after.isoformat(),
		)
		return True

	async def _validate_all(self, client: AcmeProtocolClient, handles: list[AuthorizationHandle]) -> None:
		"""Validate every authorization concurrently; all must succeed.

		The first failure cancels the validations still polling.
		"""
		tasks = [
			asyncio.ensure_future(self._validator_factory(client, self.challenge_store).validate(h))
			for h in handles
		]
		try:
			done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
		finally:
			for task in tasks:
				if not task.done():
					task.cancel()
			await asyncio.gather(*tasks, return_exceptions=True)
		for task in tasks:
			if task in done and task.exception() is not None:
				raise task.exception()
