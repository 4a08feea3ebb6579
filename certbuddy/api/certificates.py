#!/usr/bin/env python3
#
# certbuddy/api/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Read-only status of cached certificates."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ..utils.time import ensure_utc, utcnow

_log = logging.getLogger(__name__)

router = APIRouter(tags=["certificates"])


# ---------------------------------------------------------------------------
# Pydantic Models
# ---------------------------------------------------------------------------

class CertificateInfo(BaseModel):
	"""Certificate information."""
	domain: str
	identifier: str
	expires_at: str
	days_until_expiry: int
	needs_renewal: bool
	issuer: Optional[str] = None
	renewal_in_progress: bool = False


class CertificateList(BaseModel):
	status: str = "ok"
	total_certificates: int
	needs_renewal_count: int
	data: list[CertificateInfo]


def _issuer_name(cert) -> Optional[str]:
	try:
		attrs = cert.leaf.issuer.rfc4514_string()
	except ValueError as exc:
		_log.warning("Failed to parse certificate for %s: %s", cert.domain, exc)
		return None
	return attrs or None


# ---------------------------------------------------------------------------
# API Routes
# ---------------------------------------------------------------------------

@router.get("/certificates", response_model=CertificateList)
async def list_certificates(request: Request) -> CertificateList:
	"""List every cached certificate with its renewal state."""
	repository = request.app.state.repository
	selector = request.app.state.selector
	in_flight = request.app.state.coordinator.in_flight()
	now = utcnow()

	items = []
	for cert in sorted(repository.cached(), key=lambda c: c.domain):
		expires_at = ensure_utc(cert.not_after)
		items.append(CertificateInfo(
			domain=cert.domain,
			identifier=cert.identifier,
			expires_at=expires_at.isoformat(),
			days_until_expiry=(expires_at - now).days,
			needs_renewal=selector.needs_renewal(cert),
			issuer=_issuer_name(cert),
			renewal_in_progress=cert.domain in in_flight,
		))

	return CertificateList(
		total_certificates=len(items),
		needs_renewal_count=sum(1 for i in items if i.needs_renewal),
		data=items,
	)
