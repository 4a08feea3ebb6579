#!/usr/bin/env python3
#
# certbuddy/utils/tasks.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Fire-and-forget background tasks on the application event loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

_log = logging.getLogger(__name__)

__all__ = ["BackgroundRunner"]


class BackgroundRunner:
	"""Runs submitted coroutines as tasks nobody awaits.

	``submit`` is safe to call from any thread (including TLS handshake
	callbacks) and never blocks. The runner keeps strong references to its
	tasks, logs their failures and cancels them on shutdown.

	Usage::

		runner = BackgroundRunner()
		runner.start()                     # inside the running loop
		runner.submit("renew", lambda: coordinator.ensure_certificate(domain))
		await runner.shutdown()
	"""

	def __init__(self) -> None:
		self._loop: Optional[asyncio.AbstractEventLoop] = None
		self._tasks: set[asyncio.Task] = set()
		self._closed = False

	def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
		"""Bind to ``loop`` (default: the running loop)."""
		self._loop = loop or asyncio.get_running_loop()
		self._closed = False

	@property
	def running(self) -> bool:
		return self._loop is not None and not self._closed

	def submit(self, name: str, factory: Callable[[], Awaitable[Any]]) -> bool:
		"""Schedule ``factory()`` on the loop. Returns False if not accepted."""
		loop = self._loop
		if loop is None or self._closed or loop.is_closed():
			_log.debug("TASK_REJECTED name=%s (runner not running)", name)
			return False
		try:
			loop.call_soon_threadsafe(self._spawn, name, factory)
		except RuntimeError:
			# Loop closed between the check and the call
			_log.debug("TASK_REJECTED name=%s (loop closed)", name)
			return False
		return True

	def _spawn(self, name: str, factory: Callable[[], Awaitable[Any]]) -> None:
		if self._closed:
			return
		try:
			task = asyncio.ensure_future(factory())
		except Exception:
			_log.exception("TASK_FAILED name=%s could not be started", name)
			return
		task.set_name(name)
		self._tasks.add(task)
		task.add_done_callback(self._on_done)

	def _on_done(self, task: asyncio.Task) -> None:
		self._tasks.discard(task)
		if task.cancelled():
			_log.debug("TASK_CANCELLED name=%s", task.get_name())
			return
		exc = task.exception()
		if exc is not None:
			_log.error("TASK_FAILED name=%s error=%s", task.get_name(), exc, exc_info=exc)

	def __len__(self) -> int:
		return len(self._tasks)

	async def join(self) -> None:
		"""Wait until every submitted task (including queued ones) finished."""
		await asyncio.sleep(0)
		while self._tasks:
			await asyncio.gather(*list(self._tasks), return_exceptions=True)
			await asyncio.sleep(0)

	async def shutdown(self, timeout: float = 5.0) -> None:
		"""Stop accepting work and cancel whatever is still running."""
		self._closed = True
		pending = [t for t in self._tasks if not t.done()]
		if not pending:
			return
		_log.info("TASKS cancelling %d in-flight task(s)", len(pending))
		for task in pending:
			task.cancel()
		_, not_done = await asyncio.wait(pending, timeout=timeout)
		if not_done:
			_log.warning("TASKS %d task(s) did not stop within %.1fs", len(not_done), timeout)
