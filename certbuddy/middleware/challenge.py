#!/usr/bin/env python3
#
# certbuddy/middleware/challenge.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Serves ACME HTTP-01 challenge responses ahead of normal routing."""

from __future__ import annotations

import logging
import re
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..acme.challenges import ChallengeResponseStore

_log = logging.getLogger(__name__)

CHALLENGE_PREFIX = "/.well-known/acme-challenge/"

# base64url alphabet; anything else cannot be a token
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_\-]+$")


class ChallengeResponseMiddleware(BaseHTTPMiddleware):
	"""Answer ``GET /.well-known/acme-challenge/<token>`` for known tokens.
	
	The body is the raw key authorization (``application/octet-stream``).
	Unknown tokens fall through to the wrapped application so the host
	keeps its normal routing.
	"""

	def __init__(self, app: ASGIApp, store: ChallengeResponseStore):
		super().__init__(app)
		self.store = store

	async def dispatch(self, request: Request, call_next: Callable) -> Response:
		path = request.url.path
		if request.method in ("GET", "HEAD") and path.startswith(CHALLENGE_PREFIX):
			token = path[len(CHALLENGE_PREFIX):]
			if _TOKEN_RE.match(token):
				value = self.store.get(token)
				if value is not None:
					_log.debug("Confirmed challenge request for %s", token)
					return Response(content=value.encode("ascii"), media_type="application/octet-stream")
		return await call_next(request)
