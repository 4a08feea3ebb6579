#!/usr/bin/env python3
#
# certbuddy/acme/accounts.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Persistence of the ACA account record."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..utils.files import atomic_write_bytes
from .errors import PersistenceError
from .models import Account

_log = logging.getLogger(__name__)


class AccountStore:
	"""Loads and saves the single account record (``account.json``).

	Pure persistence: nothing here talks to the ACA.
	"""

	def __init__(self, account_path: Path) -> None:
		self.account_path = account_path

	def load(self) -> Optional[Account]:
		"""Return the stored account, or None if none was saved yet.

		Raises:
			PersistenceError: If the file exists but cannot be read or parsed
		"""
		if not self.account_path.exists():
			return None
		try:
			return Account.model_validate_json(self.account_path.read_bytes())
		except (OSError, ValidationError) as exc:
			raise PersistenceError(f"Cannot load account from {self.account_path}: {exc}") from exc

	def save(self, account: Account) -> None:
		"""Write the account, replacing any previous record.

		Raises:
			PersistenceError: If the record cannot be written
		"""
		try:
			atomic_write_bytes(self.account_path, account.model_dump_json().encode("utf-8"))
		except OSError as exc:
			raise PersistenceError(f"Cannot save account to {self.account_path}: {exc}") from exc
		_log.info("ACCOUNT_SAVED id=%s path=%s", account.id, self.account_path)
