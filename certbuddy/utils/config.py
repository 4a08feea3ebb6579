#!/usr/bin/env python3
#
# certbuddy/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Configuration loading and app-level defaults."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path

from ..acme.client import ACME_DIRECTORY_PROD, ACME_DIRECTORY_STAGING

_log = logging.getLogger(__name__)


class ConfigValidationError(Exception):
	"""Raised when critical configuration is missing or invalid."""


DEFAULT_RENEWAL_INTERVAL = 43200  # 12 h


@dataclass(frozen=True)
class Config:
	"""Resolved runtime configuration derived from env and defaults."""
	data_dir: Path
	acme_email: str
	acme_directory_url: str = ACME_DIRECTORY_PROD
	host: str = "0.0.0.0"
	http_port: int = 80
	https_port: int = 443
	renewal_interval: int = DEFAULT_RENEWAL_INTERVAL
	log_level: str = "INFO"

	@property
	def ssl_dir(self) -> Path:
		return self.data_dir / "SSL"

	@property
	def account_path(self) -> Path:
		return self.ssl_dir / "account.json"

	@property
	def certs_dir(self) -> Path:
		return self.ssl_dir / "certs"


def _parse_value(raw: str) -> str:
	"""Extract value, respecting quotes and stripping inline comments."""
	raw = raw.strip()
	if raw and raw[0] in ('"', "'"):
		quote = raw[0]
		end = raw.find(quote, 1)
		if end != -1:
			return raw[1:end]
		# Unterminated quote: fall through to unquoted handling
	if " #" in raw:
		raw = raw.split(" #", 1)[0]
	return raw.strip()


def load_dotenv(dotenv_path: Path | None = None) -> None:
	"""Load simple KEY=VALUE pairs from settings.env.

	Blank lines and comments are ignored, ``export KEY=VALUE`` is accepted
	and variables already present in the environment are never overridden.
	"""
	project_root = Path(__file__).resolve().parents[2]
	dotenv_path = dotenv_path or (project_root / "settings.env")
	if not dotenv_path.exists():
		return
	for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
		line = raw_line.strip()
		if not line or line.startswith("#") or "=" not in line:
			continue
		key, value = line.split("=", 1)
		key = key.strip()
		if key.startswith("export "):
			key = key[7:].strip()
		if not key:
			continue
		os.environ.setdefault(key, _parse_value(value))


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
	raw = os.getenv(name, "").strip()
	if not raw:
		return default
	try:
		value = int(raw)
	except ValueError as exc:
		raise ConfigValidationError(f"{name} must be an integer, got {raw!r}") from exc
	if value < minimum:
		raise ConfigValidationError(f"{name} must be >= {minimum}, got {value}")
	return value


def _env_bool(name: str) -> bool:
	return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


def load_config(dotenv_path: Path | None = None) -> Config:
	"""Load configuration from environment variables (optionally via settings.env)."""
	load_dotenv(dotenv_path)
	project_root = Path(__file__).resolve().parents[2]

	data_dir = Path(os.getenv("CERTBUDDY_DATA_DIR", str(project_root / "data"))).resolve()
	cfg_dirs = (data_dir, data_dir / "SSL", data_dir / "SSL" / "certs")

	# Self-healing: Ensure directories exist
	try:
		for d in cfg_dirs:
			if d.exists() and not d.is_dir():
				raise ConfigValidationError(f"Path exists but is not a directory: {d}")
			d.mkdir(parents=True, exist_ok=True)
	except OSError as exc:
		raise ConfigValidationError(f"Cannot create data directories: {exc}") from exc

	acme_email = os.getenv("CERTBUDDY_ACME_EMAIL", "").strip()
	if not acme_email or "@" not in acme_email:
		raise ConfigValidationError(
			"CERTBUDDY_ACME_EMAIL is not set. "
			"A contact address is required to register the ACME account."
		)

	directory_url = os.getenv("CERTBUDDY_ACME_DIRECTORY", "").strip()
	if not directory_url:
		directory_url = ACME_DIRECTORY_STAGING if _env_bool("CERTBUDDY_ACME_STAGING") else ACME_DIRECTORY_PROD

	# Validate log level
	allowed_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
	log_level = os.getenv("LOG_LEVEL", "INFO").upper()
	if log_level not in allowed_levels:
		log_level = "INFO"

	return Config(
		data_dir=data_dir,
		acme_email=acme_email,
		acme_directory_url=directory_url,
		host=os.getenv("CERTBUDDY_HOST", "0.0.0.0"),
		http_port=_env_int("CERTBUDDY_HTTP_PORT", 80),
		https_port=_env_int("CERTBUDDY_HTTPS_PORT", 443),
		renewal_interval=_env_int("CERTBUDDY_RENEWAL_INTERVAL", DEFAULT_RENEWAL_INTERVAL, minimum=60),
		log_level=log_level,
	)


# Global config singleton with thread-safe lazy initialization
_config: Config | None = None
_config_lock = threading.Lock()


def get_config() -> Config:
	"""Get the global config singleton (thread-safe)."""
	global _config
	if _config is None:
		with _config_lock:
			if _config is None:  # Double-checked locking
				_config = load_config()
	return _config


def reset_config() -> None:
	"""Reset the cached config. Intended for tests only."""
	global _config
	with _config_lock:
		_config = None
