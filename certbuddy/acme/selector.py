#!/usr/bin/env python3
#
# certbuddy/acme/selector.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Per-handshake certificate selection (SNI)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Callable, Optional

from ..utils.tasks import BackgroundRunner
from ..utils.time import ensure_utc, utcnow
from .coordinator import CertificateIssuanceCoordinator
from .models import CachedCertificate, normalize_domain
from .repository import CertificateRepository

_log = logging.getLogger(__name__)

# Start renewing once the served certificate expires within this window
RENEW_BEFORE = timedelta(days=5)


class CertificateSelector:
	"""Synchronous certificate lookup for the TLS handshake.

	Only reads the in-memory cache. A missing or soon-to-expire certificate
	schedules ``ensure_certificate`` in the background and the current
	(possibly absent) value is returned right away.
	"""

	def __init__(
		self,
		repository: CertificateRepository,
		coordinator: CertificateIssuanceCoordinator,
		runner: BackgroundRunner,
		*,
		renew_before: timedelta = RENEW_BEFORE,
		clock: Callable[[], datetime] = utcnow,
	) -> None:
		self.repository = repository
		self.coordinator = coordinator
		self.runner = runner
		self.renew_before = renew_before
		self._clock = clock

	def needs_renewal(self, certificate: Optional[CachedCertificate]) -> bool:
		if certificate is None:
			return True
		return ensure_utc(certificate.not_after) < self._clock() + self.renew_before

	def select(self, domain: Optional[str]) -> Optional[CachedCertificate]:
		if not domain:
			return None
		key = normalize_domain(domain)
		certificate = self.repository.get_certificate(key)
		if self.needs_renewal(certificate):
			self.request_renewal(key)
		return certificate

	def request_renewal(self, domain: str) -> bool:
		"""Fire-and-forget ``ensure_certificate``; never raises."""
		try:
			return self.runner.submit(
				f"ensure-certificate:{domain}",
				partial(self.coordinator.ensure_certificate, domain),
			)
		except Exception:
			_log.exception("Could not schedule certificate renewal for %s", domain)
			return False

	def schedule_due_renewals(self) -> int:
		"""Request renewal for every cached certificate inside the renewal window."""
		scheduled = 0
		for certificate in self.repository.cached():
			if self.needs_renewal(certificate) and self.request_renewal(certificate.domain):
				scheduled += 1
		return scheduled
