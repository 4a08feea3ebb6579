#!/usr/bin/env python3
#
# certbuddy/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI application factory and startup lifecycle wiring."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .acme.accounts import AccountStore
from .acme.challenges import ChallengeResponseStore
from .acme.client import HttpAcmeClient
from .acme.coordinator import CertificateIssuanceCoordinator, ClientFactory
from .acme.repository import CertificateRepository
from .acme.selector import CertificateSelector
from .api import certificates as certificates_api
from .middleware.challenge import ChallengeResponseMiddleware
from .utils.config import Config, load_config
from .utils.tasks import BackgroundRunner

_log = logging.getLogger(__name__)

# ANSI color codes for log levels (if TTY)
_LOG_COLORS = {
	"DEBUG": "\033[36m",    # Cyan
	"INFO": "\033[32m",     # Green
	"WARNING": "\033[33m",  # Yellow
	"ERROR": "\033[31m",    # Red
	"CRITICAL": "\033[35m", # Magenta
}
_RESET = "\033[0m"
_RENEWAL_INITIAL_DELAY_SECONDS = 30.0


class _ColoredFormatter(logging.Formatter):
	"""Custom formatter that adds color to log levels in TTY."""

	def format(self, record):
		orig_levelname = record.levelname
		if orig_levelname in _LOG_COLORS:
			record.levelname = f"{_LOG_COLORS[orig_levelname]}{orig_levelname:<8}{_RESET}"
		else:
			record.levelname = f"{orig_levelname:<8}"
		try:
			return super().format(record)
		finally:
			record.levelname = orig_levelname


def _setup_logging(log_level: str) -> None:
	"""Configure unified logging for the entire application."""
	level = getattr(logging, log_level, logging.INFO)

	if sys.stdout.isatty():
		formatter: logging.Formatter = _ColoredFormatter(
			fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		)
	else:
		formatter = logging.Formatter(
			fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		)

	# force=True removes any pre-existing handlers (e.g. from uvicorn)
	logging.basicConfig(
		level=level,
		handlers=[logging.StreamHandler(sys.stdout)],
		force=True,
	)
	for handler in logging.root.handlers:
		handler.setFormatter(formatter)

	# Make sure uvicorn loggers use the root handler & level
	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		logger = logging.getLogger(name)
		logger.handlers.clear()
		logger.setLevel(level)
		logger.propagate = True

	# Quiet down noisy third-party libraries
	for name in ("httpcore", "httpx"):
		logging.getLogger(name).setLevel(logging.WARNING)


def _default_client_factory(cfg: Config) -> ClientFactory:
	def factory(key, account_url):
		return HttpAcmeClient(cfg.acme_directory_url, key, account_url=account_url)
	return factory


async def _run_renewal_sweep(app: FastAPI) -> None:
	"""Daemon task: renew cached certificates that entered the renewal window."""
	cfg: Config = app.state.cfg
	selector: CertificateSelector = app.state.selector
	await asyncio.sleep(_RENEWAL_INITIAL_DELAY_SECONDS)
	while True:
		try:
			scheduled = selector.schedule_due_renewals()
			_log.info("RENEWAL_SWEEP scheduled=%d in_flight=%d", scheduled, len(app.state.runner))
		except Exception as exc:
			_log.error("RENEWAL_SWEEP failed: %s", exc)
		await asyncio.sleep(cfg.renewal_interval)


@asynccontextmanager
async def _lifespan(app: FastAPI):
	"""Application lifespan manager."""
	# ─── BOOTSTRAP ───────────────────────────────────────────
	# Certificates must be cached before the first handshake arrives
	await asyncio.to_thread(app.state.repository.initialize)
	app.state.runner.start()
	app.state.renewal_task = asyncio.create_task(_run_renewal_sweep(app))

	_log.info("CertBuddy started successfully (pid=%d)", os.getpid())

	yield

	# ─── SHUTDOWN ────────────────────────────────────────────
	renewal_task = app.state.renewal_task
	if renewal_task and not renewal_task.done():
		renewal_task.cancel()
		await asyncio.gather(renewal_task, return_exceptions=True)

	# Abandon in-flight issuance; nothing is persisted before the final save
	await app.state.runner.shutdown(timeout=5.0)
	await app.state.coordinator.aclose()
	_log.info("CertBuddy shutdown complete")


def create_app(
	cfg: Optional[Config] = None,
	*,
	client_factory: Optional[ClientFactory] = None,
	configure_logging: bool = True,
) -> FastAPI:
	"""Application factory for CertBuddy."""
	cfg = cfg or load_config()
	if configure_logging:
		_setup_logging(cfg.log_level)

	app = FastAPI(
		title="CertBuddy",
		description="Automatic ACME certificates for SNI-based TLS termination",
		version="0.1.0",
		lifespan=_lifespan,
		docs_url="/api/docs",
		redoc_url="/api/redoc",
	)
	app.state.cfg = cfg

	# ─── CERTIFICATE ENGINE ──────────────────────────────────
	challenge_store = ChallengeResponseStore()
	repository = CertificateRepository(cfg.certs_dir)
	coordinator = CertificateIssuanceCoordinator(
		account_store=AccountStore(cfg.account_path),
		repository=repository,
		challenge_store=challenge_store,
		client_factory=client_factory or _default_client_factory(cfg),
		email=cfg.acme_email,
	)
	runner = BackgroundRunner()
	app.state.challenge_store = challenge_store
	app.state.repository = repository
	app.state.coordinator = coordinator
	app.state.runner = runner
	app.state.selector = CertificateSelector(repository, coordinator, runner)
	app.state.renewal_task = None

	# ─── MIDDLEWARE ──────────────────────────────────────────
	app.add_middleware(ChallengeResponseMiddleware, store=challenge_store)

	# ─── API ROUTES ──────────────────────────────────────────
	app.include_router(certificates_api.router, prefix="/api")

	return app
