#!/usr/bin/env python3
#
# certbuddy/acme/repository.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""On-disk + in-memory cache of issued certificates (one per domain)."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from ..utils.files import atomic_write_bytes
from ..utils.time import ensure_utc, utcnow
from .errors import PersistenceError
from .models import CachedCertificate, normalize_domain

_log = logging.getLogger(__name__)

# A cached certificate is served only while it stays valid beyond this margin
MIN_REMAINING_VALIDITY = timedelta(days=1)

_BUNDLE_SUFFIX = ".pem"


def bundle_filename(domain: str, identifier: str) -> str:
	"""File name embedding the domain and the certificate identifier."""
	return f"{normalize_domain(domain)}_{identifier}{_BUNDLE_SUFFIX}"


def _domain_from_filename(path: Path) -> Optional[str]:
	stem = path.name[: -len(_BUNDLE_SUFFIX)]
	domain, sep, identifier = stem.rpartition("_")
	if not sep or not domain or not identifier:
		return None
	return normalize_domain(domain)


class CertificateRepository:
	"""Owns the certificate directory and the in-memory cache.

	Invariant: at most one cached certificate per domain, the one with the
	latest not-after. Lookups never touch the disk.
	"""

	def __init__(
		self,
		certs_dir: Path,
		*,
		clock: Callable[[], datetime] = utcnow,
	) -> None:
		self.certs_dir = certs_dir
		self._clock = clock
		self._cache: dict[str, CachedCertificate] = {}
		self._lock = threading.Lock()
		self._listeners: list[Callable[[CachedCertificate], None]] = []

	def subscribe(self, listener: Callable[[CachedCertificate], None]) -> None:
		"""Call ``listener`` for every certificate that becomes the cached one.

		Runs on the writing thread (startup scan or save), never on a lookup.
		"""
		self._listeners.append(listener)

	def _notify(self, certificate: CachedCertificate) -> None:
		for listener in self._listeners:
			try:
				listener(certificate)
			except Exception as exc:
				_log.warning("CERT_NOTIFY failed for %s: %s", certificate.domain, exc)

	# -----------------------------------------------------------------------
	# Startup
	# -----------------------------------------------------------------------

	def initialize(self) -> None:
		"""Scan the certificate directory once and rebuild the cache.

		Per domain the valid certificate with the latest not-after is kept;
		every other file of that domain (older reissues, expired ones) is
		deleted. Unreadable files and failed deletions are logged and
		skipped, never fatal.
		"""
		try:
			self.certs_dir.mkdir(parents=True, exist_ok=True)
			files = sorted(p for p in self.certs_dir.iterdir() if p.is_file() and p.name.endswith(_BUNDLE_SUFFIX))
		except OSError as exc:
			_log.error("CERT_INIT cannot scan %s: %s", self.certs_dir, exc)
			return

		by_domain: dict[str, list[CachedCertificate]] = {}
		for path in files:
			domain = _domain_from_filename(path)
			if domain is None:
				_log.warning("CERT_INIT skipping file with unexpected name: %s", path.name)
				continue
			try:
				cert = CachedCertificate.from_pem(path.read_bytes(), domain, path=path)
			except (OSError, ValueError) as exc:
				_log.warning("CERT_INIT skipping unreadable certificate %s: %s", path.name, exc)
				continue
			by_domain.setdefault(domain, []).append(cert)

		threshold = self._clock() + MIN_REMAINING_VALIDITY
		selected: dict[str, CachedCertificate] = {}
		deleted = 0
		for domain, certs in by_domain.items():
			valid = [c for c in certs if ensure_utc(c.not_after) > threshold]
			best = max(valid, key=lambda c: c.not_after) if valid else None
			if best is not None:
				selected[domain] = best
			for cert in certs:
				if best is not None and cert.path == best.path:
					continue
				if self._delete(cert.path):
					deleted += 1

		with self._lock:
			self._cache = selected
		_log.info("CERT_INIT kept=%d deleted=%d dir=%s", len(selected), deleted, self.certs_dir)
		for cert in selected.values():
			self._notify(cert)

	# -----------------------------------------------------------------------
	# Hot path
	# -----------------------------------------------------------------------

	def get_certificate(self, domain: str) -> Optional[CachedCertificate]:
		"""Return the cached certificate if it is valid beyond one day."""
		cert = self._cache.get(normalize_domain(domain))
		if cert is None:
			return None
		if ensure_utc(cert.not_after) <= self._clock() + MIN_REMAINING_VALIDITY:
			return None
		return cert

	def peek(self, domain: str) -> Optional[CachedCertificate]:
		"""Return the cached entry regardless of its remaining validity."""
		return self._cache.get(normalize_domain(domain))

	def cached(self) -> list[CachedCertificate]:
		"""Snapshot of every cached certificate."""
		with self._lock:
			return list(self._cache.values())

	# -----------------------------------------------------------------------
	# Writes
	# -----------------------------------------------------------------------

	def save(self, certificate: CachedCertificate, domain: str) -> Path:
		"""Persist a newly issued certificate and make it the cached one.

		Last write wins. Other files of the same domain are pruned afterwards
		(best effort).

		Raises:
			PersistenceError: If the bundle cannot be written
		"""
		key = normalize_domain(domain)
		path = self.certs_dir / bundle_filename(key, certificate.identifier)
		try:
			atomic_write_bytes(path, certificate.to_pem())
		except OSError as exc:
			raise PersistenceError(f"Cannot save certificate for {key} to {path}: {exc}") from exc

		stored = certificate.with_path(path)
		with self._lock:
			self._cache[key] = stored
		_log.info(
			"CERT_SAVED domain=%s not_after=%s file=%s",
			key, certificate.not_after.isoformat(), path.name,
		)
		self._prune(key, keep=path)
		self._notify(stored)
		return path

	def _prune(self, domain: str, *, keep: Path) -> None:
		try:
			candidates = list(self.certs_dir.glob(f"*{_BUNDLE_SUFFIX}"))
		except OSError as exc:
			_log.warning("CERT_PRUNE cannot list %s: %s", self.certs_dir, exc)
			return
		for path in candidates:
			if path != keep and _domain_from_filename(path) == domain:
				self._delete(path)

	def _delete(self, path: Optional[Path]) -> bool:
		if path is None:
			return False
		try:
			path.unlink()
		except FileNotFoundError:
			return False
		except OSError as exc:
			_log.warning("CERT_DELETE failed for %s: %s", path.name, exc)
			return False
		_log.debug("CERT_DELETE removed %s", path.name)
		return True
