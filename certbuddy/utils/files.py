#!/usr/bin/env python3
#
# certbuddy/utils/files.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Crash-safe file writes."""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path
from typing import IO, Generator


@contextlib.contextmanager
def atomic_write(path: Path, *, mode: int = 0o600) -> Generator[IO[bytes], None, None]:
	"""Context manager for atomic binary writes with fsync.
	
	Yields a file handle for writing. On successful exit the temporary file
	gets ``mode``, is fsync'd and moved over ``path``; readers never see a
	partially written file. On error the target is left untouched.
	"""
	path.parent.mkdir(parents=True, exist_ok=True)
	fd, tmp_path = tempfile.mkstemp(
		dir=str(path.parent),
		prefix=f".{path.name}.",
		suffix=".tmp",
	)
	try:
		with os.fdopen(fd, "wb") as f:
			yield f
			f.flush()
			os.fsync(f.fileno())
		os.chmod(tmp_path, mode)
		os.replace(tmp_path, path)
	finally:
		with contextlib.suppress(OSError):
			if os.path.exists(tmp_path):
				os.unlink(tmp_path)


def atomic_write_bytes(path: Path, data: bytes, *, mode: int = 0o600) -> None:
	"""Atomically replace ``path`` with ``data``."""
	with atomic_write(path, mode=mode) as f:
		f.write(data)
