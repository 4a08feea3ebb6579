#!/usr/bin/env python3
#
# certbuddy/acme/models.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Value types shared by the certificate lifecycle engine."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from pydantic import BaseModel, ConfigDict, EmailStr, Field

_PRIVATE_KEY_RE = re.compile(
	rb"-----BEGIN (?P<label>[A-Z ]*)PRIVATE KEY-----.*?-----END (?P=label)PRIVATE KEY-----",
	re.DOTALL,
)


def normalize_domain(domain: str) -> str:
	"""Canonical cache/lock key for a hostname (case-insensitive, IDNA)."""
	value = domain.strip().rstrip(".").lower()
	try:
		return value.encode("idna").decode("ascii")
	except UnicodeError:
		return value


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------

class Account(BaseModel):
	"""Persisted ACA account record."""
	model_config = ConfigDict(frozen=True)

	id: str = Field(..., min_length=1, description="Account URL assigned by the ACA")
	emails: list[EmailStr] = Field(..., min_length=1)
	private_key: str = Field(..., min_length=1, description="PEM encoded ES256 account key")

	@classmethod
	def create(cls, account_id: str, emails: list[str], key: ec.EllipticCurvePrivateKey) -> Account:
		return cls(id=account_id, emails=emails, private_key=serialize_private_key(key).decode("ascii"))

	def load_key(self) -> ec.EllipticCurvePrivateKey:
		key = serialization.load_pem_private_key(self.private_key.encode("ascii"), password=None)
		if not isinstance(key, ec.EllipticCurvePrivateKey):
			raise ValueError("Account key is not an EC key")
		return key


def generate_private_key() -> ec.EllipticCurvePrivateKey:
	"""New P-256 key (ES256), used for both accounts and certificates."""
	return ec.generate_private_key(ec.SECP256R1())


def serialize_private_key(key: ec.EllipticCurvePrivateKey) -> bytes:
	return key.private_bytes(
		encoding=serialization.Encoding.PEM,
		format=serialization.PrivateFormat.PKCS8,
		encryption_algorithm=serialization.NoEncryption(),
	)


# ---------------------------------------------------------------------------
# Orders, authorizations, challenges (transient, one issuance attempt)
# ---------------------------------------------------------------------------

class AuthorizationStatus(str, Enum):
	PENDING = "pending"
	VALID = "valid"
	INVALID = "invalid"
	REVOKED = "revoked"
	EXPIRED = "expired"
	DEACTIVATED = "deactivated"


@dataclass(frozen=True)
class OrderHandle:
	url: str
	domain: str
	authorizations: tuple[str, ...]
	finalize_url: str
	status: str = "pending"


@dataclass(frozen=True)
class AuthorizationHandle:
	url: str
	domain: str = ""


@dataclass(frozen=True)
class ChallengeProblem:
	"""Error document attached to a failed challenge."""
	type: str = ""
	detail: str = ""
	status: Optional[int] = None


@dataclass(frozen=True)
class ChallengeState:
	type: str
	url: str
	token: str
	status: str = "pending"
	error: Optional[ChallengeProblem] = None


@dataclass(frozen=True)
class AuthorizationState:
	domain: str
	status: str
	challenges: tuple[ChallengeState, ...] = ()


@dataclass(frozen=True)
class HttpChallenge:
	"""An HTTP-01 challenge ready to be published."""
	url: str
	token: str
	key_authorization: str


# ---------------------------------------------------------------------------
# Issued certificates
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CachedCertificate:
	"""Issued certificate material (chain + private key) for one domain.

	Immutable: a renewal produces a new instance that replaces the cached
	one wholesale.
	"""
	domain: str
	identifier: str
	not_after: datetime
	fullchain_pem: bytes = field(repr=False)
	key_pem: bytes = field(repr=False)
	path: Optional[Path] = None

	@classmethod
	def from_pem(cls, bundle: bytes, domain: str, path: Optional[Path] = None) -> CachedCertificate:
		"""Parse a PEM bundle holding one private key and the certificate chain.

		Raises:
			ValueError: If the bundle has no private key or no certificate
		"""
		match = _PRIVATE_KEY_RE.search(bundle)
		if match is None:
			raise ValueError("Bundle contains no private key")
		key_pem = match.group(0) + b"\n"
		# Validate the key parses before accepting the bundle
		serialization.load_pem_private_key(key_pem, password=None)

		chain = x509.load_pem_x509_certificates(bundle)
		if not chain:
			raise ValueError("Bundle contains no certificate")
		leaf = chain[0]
		return cls(
			domain=normalize_domain(domain),
			identifier=leaf.fingerprint(hashes.SHA256()).hex(),
			not_after=leaf.not_valid_after_utc,
			fullchain_pem=b"".join(c.public_bytes(serialization.Encoding.PEM) for c in chain),
			key_pem=key_pem,
			path=path,
		)

	@classmethod
	def from_parts(
		cls,
		domain: str,
		private_key: ec.EllipticCurvePrivateKey,
		chain_pem: bytes,
	) -> CachedCertificate:
		"""Package a freshly issued chain with its private key."""
		return cls.from_pem(serialize_private_key(private_key) + chain_pem, domain)

	def to_pem(self) -> bytes:
		"""Storable bundle: private key followed by the full chain."""
		return self.key_pem + self.fullchain_pem

	def with_path(self, path: Path) -> CachedCertificate:
		return replace(self, path=path)

	@property
	def leaf(self) -> x509.Certificate:
		return x509.load_pem_x509_certificate(self.fullchain_pem)
