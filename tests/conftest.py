"""Shared fixtures for the CertBuddy test suite."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID

from certbuddy.acme.challenges import ChallengeResponseStore
from certbuddy.acme.client import AcmeProtocolClient
from certbuddy.acme.errors import ProtocolError
from certbuddy.acme.models import (
	AuthorizationHandle,
	AuthorizationState,
	CachedCertificate,
	ChallengeProblem,
	ChallengeState,
	HttpChallenge,
	OrderHandle,
	generate_private_key,
	serialize_private_key,
)
from certbuddy.acme.repository import bundle_filename
from certbuddy.utils.time import utcnow

# Fixed "now" for tests that control the clock (second precision, like X.509)
NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Certificate helpers
# ---------------------------------------------------------------------------

def make_certificate(
	domain: str,
	not_after: datetime,
	*,
	key=None,
	public_key=None,
	issuer_key=None,
	issuer_name: Optional[str] = None,
) -> x509.Certificate:
	"""Build a certificate for ``domain`` expiring at ``not_after``."""
	key = key or generate_private_key()
	subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
	issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name)]) if issuer_name else subject
	return (
		x509.CertificateBuilder()
		.subject_name(subject)
		.issuer_name(issuer)
		.public_key(public_key or key.public_key())
		.serial_number(x509.random_serial_number())
		.not_valid_before(not_after - timedelta(days=90))
		.not_valid_after(not_after)
		.add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
		.sign(issuer_key or key, hashes.SHA256())
	)


def make_bundle(domain: str, not_after: datetime) -> bytes:
	"""PEM bundle (private key + self-signed certificate)."""
	key = generate_private_key()
	cert = make_certificate(domain, not_after, key=key)
	return serialize_private_key(key) + cert.public_bytes(serialization.Encoding.PEM)


def make_cached(domain: str, not_after: datetime) -> CachedCertificate:
	return CachedCertificate.from_pem(make_bundle(domain, not_after), domain)


def write_bundle(certs_dir: Path, domain: str, not_after: datetime) -> Path:
	"""Store a bundle the way the repository names it and return its path."""
	cert = make_cached(domain, not_after)
	certs_dir.mkdir(parents=True, exist_ok=True)
	path = certs_dir / bundle_filename(domain, cert.identifier)
	path.write_bytes(cert.to_pem())
	return path


# ---------------------------------------------------------------------------
# Fake ACME protocol client
# ---------------------------------------------------------------------------

class FakeAcmeClient(AcmeProtocolClient):
	"""Scripted in-memory ACA.

	``statuses`` maps an authorization URL to the sequence of statuses it
	reports; the last one repeats forever. URLs not listed report
	``default_status``.
	"""

	def __init__(
		self,
		*,
		account_url: Optional[str] = None,
		account_status: str = "valid",
		authz_count: int = 1,
		statuses: Optional[dict[str, list[str]]] = None,
		default_status: str = "valid",
		errors: Optional[dict[str, list[ChallengeProblem]]] = None,
		validity: timedelta = timedelta(days=90),
	) -> None:
		self.account_url = account_url
		self.account_status = account_status
		self.authz_count = authz_count
		self.statuses = {k: list(v) for k, v in (statuses or {}).items()}
		self.default_status = default_status
		self.errors = errors or {}
		self.validity = validity
		self.calls: list[str] = []
		self.registered: list[str] = []
		self.order_gate: Optional[asyncio.Event] = None
		self.closed = False
		self._ca_key = generate_private_key()
		self._token_seq = 0

	async def register_account(self, email: str) -> str:
		self.calls.append("register_account")
		self.registered.append(email)
		self.account_url = f"https://acme.test/acct/{len(self.registered)}"
		return self.account_url

	async def fetch_account_status(self) -> str:
		self.calls.append("fetch_account_status")
		return self.account_status

	async def create_order(self, domain: str) -> OrderHandle:
		self.calls.append("create_order")
		if self.order_gate is not None:
			await self.order_gate.wait()
		return OrderHandle(
			url=f"https://acme.test/order/{domain}",
			domain=domain,
			authorizations=tuple(f"https://acme.test/authz/{domain}/{i}" for i in range(self.authz_count)),
			finalize_url=f"https://acme.test/finalize/{domain}",
		)

	async def list_authorizations(self, order: OrderHandle) -> list[AuthorizationHandle]:
		self.calls.append("list_authorizations")
		return [AuthorizationHandle(url=u, domain=order.domain) for u in order.authorizations]

	async def fetch_authorization(self, handle: AuthorizationHandle) -> AuthorizationState:
		self.calls.append("fetch_authorization")
		script = self.statuses.get(handle.url)
		if script:
			status = script.pop(0) if len(script) > 1 else script[0]
		else:
			status = self.default_status
		challenges = tuple(
			ChallengeState(type="http-01", url=f"{handle.url}/chall", token="tok", status="invalid", error=problem)
			for problem in self.errors.get(handle.url, [])
		)
		return AuthorizationState(domain=handle.domain, status=status, challenges=challenges)

	async def create_challenge(self, handle: AuthorizationHandle, challenge_type: str) -> HttpChallenge:
		self.calls.append("create_challenge")
		if challenge_type != "http-01":
			raise ProtocolError(f"unsupported challenge type {challenge_type}")
		self._token_seq += 1
		token = f"token-{self._token_seq}"
		return HttpChallenge(url=f"{handle.url}/chall", token=token, key_authorization=f"{token}.thumb")

	async def trigger_validation(self, challenge: HttpChallenge) -> None:
		self.calls.append("trigger_validation")

	async def finalize_order(self, order: OrderHandle, csr_der: bytes) -> bytes:
		self.calls.append("finalize_order")
		csr = x509.load_der_x509_csr(csr_der)
		not_after = utcnow().replace(microsecond=0) + self.validity
		cert = make_certificate(
			order.domain,
			not_after,
			public_key=csr.public_key(),
			issuer_key=self._ca_key,
			issuer_name="Fake ACME CA",
		)
		return cert.public_bytes(serialization.Encoding.PEM)

	async def aclose(self) -> None:
		self.closed = True


class RecordingStore(ChallengeResponseStore):
	"""Challenge store that logs every publish into a shared event list."""

	def __init__(self, events: list[str]) -> None:
		super().__init__()
		self.events = events
		self.published: list[str] = []

	def put(self, token: str, response: str) -> None:
		self.events.append("publish")
		self.published.append(token)
		super().put(token, response)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def certs_dir(tmp_path: Path) -> Path:
	path = tmp_path / "SSL" / "certs"
	path.mkdir(parents=True)
	return path


@pytest.fixture()
def fake_client() -> FakeAcmeClient:
	return FakeAcmeClient()
