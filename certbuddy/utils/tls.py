#!/usr/bin/env python3
#
# certbuddy/utils/tls.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""SNI-aware ``ssl.SSLContext`` for the HTTPS listener."""

from __future__ import annotations

import logging
import ssl
import threading
from typing import Optional

from ..acme.models import CachedCertificate
from ..acme.repository import CertificateRepository
from ..acme.selector import CertificateSelector

_log = logging.getLogger(__name__)


def _new_context() -> ssl.SSLContext:
	ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
	ctx.minimum_version = ssl.TLSVersion.TLSv1_2
	ctx.set_alpn_protocols(["http/1.1"])
	return ctx


class SniContextProvider:
	"""Builds the listener context and swaps in per-certificate contexts.
	
	The server context carries no certificate of its own: the SNI callback
	asks the :class:`CertificateSelector` and, if it returns a certificate,
	replaces the connection's context. Contexts are cached per domain and
	rebuilt only when the certificate identifier changes. With
	:meth:`watch` they are built when the repository stores or loads a
	certificate, so handshakes do not touch the disk. A handshake for
	a domain without certificate fails; the selector has already scheduled
	issuance by then.
	"""

	def __init__(self, selector: CertificateSelector) -> None:
		self.selector = selector
		self._contexts: dict[str, tuple[str, ssl.SSLContext]] = {}
		self._lock = threading.Lock()

	def server_context(self) -> ssl.SSLContext:
		ctx = _new_context()
		ctx.sni_callback = self._on_sni
		return ctx

	def _on_sni(self, ssl_obj: ssl.SSLObject, server_name: Optional[str], _ctx: ssl.SSLContext) -> Optional[int]:
		try:
			certificate = self.selector.select(server_name)
			if certificate is not None:
				ssl_obj.context = self.context_for(certificate)
		except Exception as exc:
			_log.warning("SNI selection failed for %r: %s", server_name, exc)
		return None

	def watch(self, repository: CertificateRepository) -> None:
		"""Prepare a context for every certificate ``repository`` caches."""
		repository.subscribe(self.prepare)

	def context_for(self, certificate: CachedCertificate) -> ssl.SSLContext:
		"""Context serving ``certificate`` (loaded from its bundle file once)."""
		with self._lock:
			cached = self._contexts.get(certificate.domain)
		if cached is not None and cached[0] == certificate.identifier:
			return cached[1]
		return self.prepare(certificate)

	def prepare(self, certificate: CachedCertificate) -> ssl.SSLContext:
		"""Build and cache the context for ``certificate`` from its bundle file."""
		if certificate.path is None:
			raise ValueError(f"Certificate for {certificate.domain} has not been persisted")

		ctx = _new_context()
		ctx.load_cert_chain(certfile=str(certificate.path))
		with self._lock:
			self._contexts[certificate.domain] = (certificate.identifier, ctx)
		_log.debug("TLS context loaded for %s (%s)", certificate.domain, certificate.identifier[:16])
		return ctx
