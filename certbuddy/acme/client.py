#!/usr/bin/env python3
#
# certbuddy/acme/client.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME protocol client capability and its httpx implementation."""

from __future__ import annotations

import abc
import asyncio
import base64
import hashlib
import json
import logging
from typing import Any, Optional

import httpx
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from .errors import AccountError, ProtocolError
from .models import (
	AuthorizationHandle,
	AuthorizationState,
	ChallengeProblem,
	ChallengeState,
	HttpChallenge,
	OrderHandle,
)

_log = logging.getLogger(__name__)

# Let's Encrypt ACME endpoints
ACME_DIRECTORY_PROD = "https://acme-v02.api.letsencrypt.org/directory"
ACME_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

HTTP01 = "http-01"

_BAD_NONCE = "urn:ietf:params:acme:error:badNonce"
_ACCOUNT_DOES_NOT_EXIST = "urn:ietf:params:acme:error:accountDoesNotExist"


class AcmeProtocolClient(abc.ABC):
	"""Operations the issuance engine needs from the ACA.

	Every method may raise :class:`ProtocolError`.
	"""

	@abc.abstractmethod
	async def register_account(self, email: str) -> str:
		"""Register a new account; return its identifier (account URL)."""

	@abc.abstractmethod
	async def fetch_account_status(self) -> str:
		"""Return the ACA-side status of the account bound to this client."""

	@abc.abstractmethod
	async def create_order(self, domain: str) -> OrderHandle:
		...

	@abc.abstractmethod
	async def list_authorizations(self, order: OrderHandle) -> list[AuthorizationHandle]:
		...

	@abc.abstractmethod
	async def fetch_authorization(self, handle: AuthorizationHandle) -> AuthorizationState:
		...

	@abc.abstractmethod
	async def create_challenge(self, handle: AuthorizationHandle, challenge_type: str) -> HttpChallenge:
		...

	@abc.abstractmethod
	async def trigger_validation(self, challenge: HttpChallenge) -> None:
		"""Tell the ACA the challenge response is published."""

	@abc.abstractmethod
	async def finalize_order(self, order: OrderHandle, csr_der: bytes) -> bytes:
		"""Submit the CSR and return the issued PEM certificate chain."""

	async def aclose(self) -> None:
		"""Release transport resources."""


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

def _b64url(data: bytes) -> str:
	"""Base64url encode without padding."""
	return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _jwk(key: ec.EllipticCurvePrivateKey) -> dict:
	"""JWK representation of a P-256 public key."""
	numbers = key.public_key().public_numbers()
	# P-256 coordinates are 32 bytes each
	return {
		"kty": "EC",
		"crv": "P-256",
		"x": _b64url(numbers.x.to_bytes(32, "big")),
		"y": _b64url(numbers.y.to_bytes(32, "big")),
	}


def jwk_thumbprint(jwk: dict) -> str:
	"""Calculate JWK thumbprint (RFC 7638)."""
	if jwk.get("kty") != "EC":
		raise ValueError(f"Unsupported key type: {jwk.get('kty')}")
	canonical = {"crv": jwk["crv"], "kty": "EC", "x": jwk["x"], "y": jwk["y"]}
	canonical_json = json.dumps(canonical, separators=(",", ":"), sort_keys=True)
	return _b64url(hashlib.sha256(canonical_json.encode("utf-8")).digest())


def _problem(resp: httpx.Response) -> tuple[str, str]:
	"""Extract (type, detail) from an ACME problem document."""
	try:
		error = resp.json()
	except ValueError:
		return "", resp.text
	if not isinstance(error, dict):
		return "", resp.text
	return str(error.get("type", "")), str(error.get("detail", "") or resp.text)


def _protocol_error(action: str, resp: httpx.Response) -> ProtocolError:
	problem_type, detail = _problem(resp)
	message = f"Failed to {action}: {detail}"
	if problem_type:
		message += f" ({problem_type})"
	return ProtocolError(
		message,
		status_code=resp.status_code,
		problem_type=problem_type,
		detail=detail,
	)


def _parse_authorization(data: dict) -> AuthorizationState:
	challenges = []
	for item in data.get("challenges", []):
		error = item.get("error")
		problem = None
		if isinstance(error, dict):
			problem = ChallengeProblem(
				type=str(error.get("type", "")),
				detail=str(error.get("detail", "")),
				status=error.get("status"),
			)
		challenges.append(ChallengeState(
			type=item.get("type", ""),
			url=item.get("url", ""),
			token=item.get("token", ""),
			status=item.get("status", "pending"),
			error=problem,
		))
	return AuthorizationState(
		domain=str(data.get("identifier", {}).get("value", "")),
		status=str(data.get("status", "")),
		challenges=tuple(challenges),
	)


class HttpAcmeClient(AcmeProtocolClient):
	"""ACME v2 client speaking JWS (ES256) over httpx.

	Bound to one account key. ``account_url`` is set on registration or when
	constructed for an account loaded from disk.
	"""

	def __init__(
		self,
		directory_url: str,
		account_key: ec.EllipticCurvePrivateKey,
		*,
		account_url: Optional[str] = None,
		http_client: Optional[httpx.AsyncClient] = None,
		timeout: float = 30.0,
		poll_interval: float = 2.0,
		max_polls: int = 30,
	) -> None:
		self.directory_url = directory_url
		self.account_key = account_key
		self.account_url = account_url
		self.directory: dict = {}
		self.nonce: Optional[str] = None
		self.poll_interval = poll_interval
		self.max_polls = max_polls
		self._timeout = timeout
		self._http_client = http_client
		self._owns_http_client = http_client is None
		self._directory_lock = asyncio.Lock()
		self._jwk = _jwk(account_key)
		self.thumbprint = jwk_thumbprint(self._jwk)

	async def __aenter__(self) -> HttpAcmeClient:
		return self

	async def __aexit__(self, *args: Any) -> None:
		await self.aclose()

	async def aclose(self) -> None:
		if self._http_client is not None and self._owns_http_client:
			await self._http_client.aclose()
			self._http_client = None

	# -----------------------------------------------------------------------
	# Transport
	# -----------------------------------------------------------------------

	def _http(self) -> httpx.AsyncClient:
		if self._http_client is None:
			self._http_client = httpx.AsyncClient(timeout=self._timeout)
		return self._http_client

	async def _fetch_directory(self) -> dict:
		"""Fetch the ACME directory once."""
		if self.directory:
			return self.directory
		async with self._directory_lock:
			if not self.directory:
				try:
					resp = await self._http().get(self.directory_url)
				except httpx.HTTPError as exc:
					raise ProtocolError(f"Failed to fetch ACME directory: {exc}") from exc
				if resp.status_code != 200:
					raise _protocol_error("fetch ACME directory", resp)
				self.directory = resp.json()
		return self.directory

	async def _get_nonce(self) -> str:
		"""Get a fresh nonce with fallback."""
		if self.nonce:
			nonce = self.nonce
			self.nonce = None
			return nonce

		directory = await self._fetch_directory()
		try:
			resp = await self._http().head(directory["newNonce"])
			if "Replay-Nonce" in resp.headers:
				return resp.headers["Replay-Nonce"]
			# Fallback: GET request to newNonce
			resp = await self._http().get(directory["newNonce"])
		except httpx.HTTPError as exc:
			raise ProtocolError(f"Failed to obtain ACME nonce: {exc}") from exc
		if "Replay-Nonce" not in resp.headers:
			raise ProtocolError("Failed to obtain ACME nonce", status_code=resp.status_code)
		return resp.headers["Replay-Nonce"]

	def _sign(self, payload: bytes) -> bytes:
		"""Sign with the account key (ES256, r || s)."""
		sig_der = self.account_key.sign(payload, ec.ECDSA(hashes.SHA256()))
		r, s = decode_dss_signature(sig_der)
		return r.to_bytes(32, "big") + s.to_bytes(32, "big")

	async def _signed_request(
		self,
		url: str,
		payload: Optional[dict],
		*,
		use_jwk: bool = False,
		accept: Optional[str] = None,
	) -> httpx.Response:
		"""POST a JWS to the ACA; ``payload=None`` is POST-as-GET.

		A ``badNonce`` rejection is retried once with the nonce it carried.
		"""
		resp: Optional[httpx.Response] = None
		for _ in range(2):
			nonce = await self._get_nonce()
			protected: dict[str, Any] = {"alg": "ES256", "nonce": nonce, "url": url}
			if self.account_url and not use_jwk:
				protected["kid"] = self.account_url
			else:
				protected["jwk"] = self._jwk

			protected_b64 = _b64url(json.dumps(protected).encode("utf-8"))
			payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode("utf-8"))
			signature = self._sign(f"{protected_b64}.{payload_b64}".encode("ascii"))
			body = {
				"protected": protected_b64,
				"payload": payload_b64,
				"signature": _b64url(signature),
			}
			headers = {"Content-Type": "application/jose+json"}
			if accept:
				headers["Accept"] = accept

			try:
				resp = await self._http().post(url, json=body, headers=headers)
			except httpx.HTTPError as exc:
				raise ProtocolError(f"ACME request to {url} failed: {exc}") from exc

			# Store replay nonce for next request
			if "Replay-Nonce" in resp.headers:
				self.nonce = resp.headers["Replay-Nonce"]

			if resp.status_code == 400 and _problem(resp)[0] == _BAD_NONCE:
				_log.debug("ACME badNonce for %s, retrying", url)
				continue
			return resp
		assert resp is not None
		return resp

	# -----------------------------------------------------------------------
	# Accounts
	# -----------------------------------------------------------------------

	async def register_account(self, email: str) -> str:
		directory = await self._fetch_directory()
		payload = {
			"termsOfServiceAgreed": True,
			"contact": [f"mailto:{email}"],
		}
		resp = await self._signed_request(directory["newAccount"], payload, use_jwk=True)
		if resp.status_code not in (200, 201):
			raise _protocol_error("register account", resp)

		account_url = resp.headers.get("Location")
		if not account_url:
			raise ProtocolError("No account URL in response", status_code=resp.status_code)
		self.account_url = account_url
		_log.info("Registered ACME account: %s", account_url)
		return account_url

	async def fetch_account_status(self) -> str:
		"""Look up the account for this key (``onlyReturnExisting``).

		Raises:
			AccountError: If the ACA knows no account for this key
		"""
		directory = await self._fetch_directory()
		resp = await self._signed_request(
			directory["newAccount"], {"onlyReturnExisting": True}, use_jwk=True,
		)
		if resp.status_code != 200:
			error = _protocol_error("fetch account", resp)
			if error.problem_type == _ACCOUNT_DOES_NOT_EXIST:
				raise AccountError(str(error)) from error
			raise error
		account_url = resp.headers.get("Location")
		if account_url:
			self.account_url = account_url
		return str(resp.json().get("status", ""))

	# -----------------------------------------------------------------------
	# Orders and authorizations
	# -----------------------------------------------------------------------

	async def create_order(self, domain: str) -> OrderHandle:
		directory = await self._fetch_directory()
		payload = {"identifiers": [{"type": "dns", "value": domain}]}
		resp = await self._signed_request(directory["newOrder"], payload)
		if resp.status_code not in (200, 201):
			raise _protocol_error("create order", resp)

		order_url = resp.headers.get("Location")
		if not order_url:
			raise ProtocolError("No order URL in response", status_code=resp.status_code)
		order = resp.json()
		if not order.get("authorizations"):
			raise ProtocolError("No authorizations in order")
		return OrderHandle(
			url=order_url,
			domain=domain,
			authorizations=tuple(order["authorizations"]),
			finalize_url=order["finalize"],
			status=order.get("status", "pending"),
		)

	async def list_authorizations(self, order: OrderHandle) -> list[AuthorizationHandle]:
		return [AuthorizationHandle(url=url, domain=order.domain) for url in order.authorizations]

	async def fetch_authorization(self, handle: AuthorizationHandle) -> AuthorizationState:
		resp = await self._signed_request(handle.url, None)
		if resp.status_code != 200:
			raise _protocol_error("get authorization", resp)
		return _parse_authorization(resp.json())

	async def create_challenge(self, handle: AuthorizationHandle, challenge_type: str) -> HttpChallenge:
		authorization = await self.fetch_authorization(handle)
		for challenge in authorization.challenges:
			if challenge.type == challenge_type:
				return HttpChallenge(
					url=challenge.url,
					token=challenge.token,
					key_authorization=f"{challenge.token}.{self.thumbprint}",
				)
		raise ProtocolError(f"Did not receive challenge information for challenge type {challenge_type}")

	async def trigger_validation(self, challenge: HttpChallenge) -> None:
		resp = await self._signed_request(challenge.url, {})
		if resp.status_code not in (200, 202):
			raise _protocol_error("respond to challenge", resp)

	# -----------------------------------------------------------------------
	# Finalization
	# -----------------------------------------------------------------------

	async def _poll_order(self, order_url: str) -> dict:
		"""Poll order status until valid or failed."""
		for _ in range(self.max_polls):
			resp = await self._signed_request(order_url, None)
			if resp.status_code != 200:
				raise _protocol_error("poll order", resp)

			order = resp.json()
			status = order.get("status")
			if status == "valid":
				return order
			if status in ("invalid", "expired", "revoked"):
				raise ProtocolError(f"Order failed: {status}")

			await asyncio.sleep(self.poll_interval)

		raise ProtocolError("Timeout waiting for order to become valid")

	async def finalize_order(self, order: OrderHandle, csr_der: bytes) -> bytes:
		resp = await self._signed_request(order.finalize_url, {"csr": _b64url(csr_der)})
		if resp.status_code not in (200, 201):
			raise _protocol_error("finalize order", resp)

		data = resp.json()
		if data.get("status") != "valid":
			data = await self._poll_order(order.url)

		cert_url = data.get("certificate")
		if not cert_url:
			raise ProtocolError("No certificate URL in order")

		cert_resp = await self._signed_request(cert_url, None, accept="application/pem-certificate-chain")
		if cert_resp.status_code != 200:
			raise _protocol_error("download certificate", cert_resp)
		return cert_resp.content
