#!/usr/bin/env python3
#
# certbuddy/acme/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate lifecycle engine: ACME issuance, caching and SNI selection."""

from .accounts import AccountStore
from .challenges import ChallengeResponseStore
from .client import AcmeProtocolClient, HttpAcmeClient
from .coordinator import CertificateIssuanceCoordinator
from .errors import (
	AccountError,
	AuthorizationError,
	CertError,
	PersistenceError,
	ProtocolError,
	ValidationTimeoutError,
)
from .models import Account, CachedCertificate
from .repository import CertificateRepository
from .selector import CertificateSelector
from .validator import DomainOwnershipValidator

__all__ = [
	# Components
	"AccountStore",
	"ChallengeResponseStore",
	"AcmeProtocolClient",
	"HttpAcmeClient",
	"CertificateIssuanceCoordinator",
	"CertificateRepository",
	"CertificateSelector",
	"DomainOwnershipValidator",
	# Models
	"Account",
	"CachedCertificate",
	# Errors
	"CertError",
	"AccountError",
	"AuthorizationError",
	"ValidationTimeoutError",
	"PersistenceError",
	"ProtocolError",
]
