#!/usr/bin/env python3
#
# main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

# CertBuddy - automatic ACME certificates for SNI-based TLS termination
# Entry point: plain HTTP (challenges) + HTTPS (SNI certificates)
#

import asyncio

import uvicorn
from certbuddy import create_app
from certbuddy.utils.config import Config, load_config
from certbuddy.utils.tls import SniContextProvider

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_STARTUP_POLL_SECONDS = 0.05

# Uvicorn logging dict-config that reuses the same format as the app
_UVICORN_LOG_CONFIG: dict = {
	"version": 1,
	"disable_existing_loggers": False,
	"formatters": {
		"default": {
			"format": _LOG_FORMAT,
			"datefmt": _DATE_FORMAT,
		},
	},
	"handlers": {
		"default": {
			"formatter": "default",
			"class": "logging.StreamHandler",
			"stream": "ext://sys.stderr",
		},
	},
	"loggers": {
		"uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
		"uvicorn.error": {"level": "INFO"},
		"uvicorn.access": {"handlers": ["default"], "level": "INFO", "propagate": False},
	},
}


async def serve(cfg: Config) -> None:
	"""Run the HTTP and the HTTPS listener on one event loop."""
	app = create_app(cfg)
	level = cfg.log_level.lower()

	# The HTTP listener owns the lifespan (cache init, renewal sweep)
	http_config = uvicorn.Config(
		app,
		host=cfg.host,
		port=cfg.http_port,
		log_level=level,
		log_config=_UVICORN_LOG_CONFIG,
		lifespan="on",
	)
	https_config = uvicorn.Config(
		app,
		host=cfg.host,
		port=cfg.https_port,
		log_level=level,
		log_config=_UVICORN_LOG_CONFIG,
		lifespan="off",
	)
	sni = SniContextProvider(app.state.selector)
	# Subscribe before the lifespan scans the certificate directory
	sni.watch(app.state.repository)

	http_server = uvicorn.Server(http_config)
	http_task = asyncio.create_task(http_server.serve())
	# No handshakes before the certificate cache is loaded and the runner started
	while not http_server.started:
		if http_task.done():
			await http_task
			return
		await asyncio.sleep(_STARTUP_POLL_SECONDS)

	https_config.load()
	https_config.ssl = sni.server_context()
	https_server = uvicorn.Server(https_config)

	servers = [http_server, https_server]
	tasks = [http_task, asyncio.create_task(https_server.serve())]
	await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
	# Whichever listener stops first takes the other one down with it
	for server in servers:
		server.should_exit = True
	await asyncio.gather(*tasks, return_exceptions=True)


if __name__ == "__main__":
	cfg = load_config()

	# Set levels in the uvicorn log-config to match the app
	_level = cfg.log_level.upper()
	for _logger in _UVICORN_LOG_CONFIG["loggers"].values():
		_logger["level"] = _level

	asyncio.run(serve(cfg))
