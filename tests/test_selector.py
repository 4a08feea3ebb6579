"""Tests for per-handshake certificate selection."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from certbuddy.acme.repository import CertificateRepository
from certbuddy.acme.selector import CertificateSelector

from conftest import NOW, make_cached


@pytest.fixture()
def repository(certs_dir):
	return CertificateRepository(certs_dir, clock=lambda: NOW)


@pytest.fixture()
def runner():
	runner = MagicMock()
	runner.submit.return_value = True
	return runner


@pytest.fixture()
def coordinator():
	return MagicMock()


@pytest.fixture()
def selector(repository, coordinator, runner):
	return CertificateSelector(repository, coordinator, runner, clock=lambda: NOW)


def _submitted_domains(runner):
	return [call.args[0] for call in runner.submit.call_args_list]


def test_fresh_certificate_is_returned_without_renewal(selector, repository, runner):
	repository.save(make_cached("a.example", NOW + timedelta(days=30)), "a.example")

	cert = selector.select("a.example")

	assert cert is not None
	assert cert.domain == "a.example"
	runner.submit.assert_not_called()


def test_certificate_expiring_soon_is_returned_and_renewed(selector, repository, runner, coordinator):
	repository.save(make_cached("a.example", NOW + timedelta(days=3)), "a.example")

	cert = selector.select("a.example")

	assert cert is not None
	assert _submitted_domains(runner) == ["ensure-certificate:a.example"]
	factory = runner.submit.call_args.args[1]
	factory()
	coordinator.ensure_certificate.assert_called_once_with("a.example")


def test_missing_certificate_triggers_issuance(selector, runner):
	assert selector.select("New.Example") is None
	assert _submitted_domains(runner) == ["ensure-certificate:new.example"]


def test_certificate_within_last_day_is_not_served(selector, repository, runner):
	repository.save(make_cached("a.example", NOW + timedelta(hours=6)), "a.example")

	assert selector.select("a.example") is None
	runner.submit.assert_called_once()


@pytest.mark.parametrize("server_name", [None, ""])
def test_missing_server_name_selects_nothing(selector, runner, server_name):
	assert selector.select(server_name) is None
	runner.submit.assert_not_called()


def test_renewal_scheduling_failure_does_not_break_selection(selector, repository, runner):
	repository.save(make_cached("a.example", NOW + timedelta(days=2)), "a.example")
	runner.submit.side_effect = RuntimeError("loop closed")

	assert selector.select("a.example") is not None


def test_needs_renewal_boundary(selector):
	assert selector.needs_renewal(None) is True
	assert selector.needs_renewal(make_cached("a.example", NOW + timedelta(days=4))) is True
	assert selector.needs_renewal(make_cached("a.example", NOW + timedelta(days=6))) is False


def test_schedule_due_renewals(selector, repository, runner):
	repository.save(make_cached("a.example", NOW + timedelta(days=2)), "a.example")
	repository.save(make_cached("b.example", NOW + timedelta(days=60)), "b.example")
	repository.save(make_cached("c.example", NOW + timedelta(days=4)), "c.example")

	assert selector.schedule_due_renewals() == 2
	assert sorted(_submitted_domains(runner)) == [
		"ensure-certificate:a.example",
		"ensure-certificate:c.example",
	]
