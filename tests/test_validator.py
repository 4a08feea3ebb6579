"""Tests for HTTP-01 ownership validation."""

from __future__ import annotations

import asyncio

import pytest

from certbuddy.acme.challenges import ChallengeResponseStore
from certbuddy.acme.errors import AuthorizationError, ValidationTimeoutError
from certbuddy.acme.models import AuthorizationHandle, ChallengeProblem
from certbuddy.acme.validator import (
	MAX_POLL_ATTEMPTS,
	DomainOwnershipValidator,
	ValidationState,
)

from conftest import FakeAcmeClient, RecordingStore

AUTHZ_URL = "https://acme.test/authz/a.example/0"
HANDLE = AuthorizationHandle(url=AUTHZ_URL, domain="a.example")


class _SleepRecorder:
	"""Replacement for asyncio.sleep that records the requested delays."""

	def __init__(self, events=None):
		self.delays = []
		self.events = events

	async def __call__(self, delay):
		self.delays.append(delay)
		if self.events is not None:
			self.events.append("sleep")


def _validator(client, store, sleep=None, **kwargs):
	return DomainOwnershipValidator(client, store, sleep=sleep or _SleepRecorder(), **kwargs)


@pytest.mark.asyncio
async def test_pending_then_valid_publishes_once_before_polling():
	events = []
	client = FakeAcmeClient(statuses={AUTHZ_URL: ["pending", "pending", "valid"]})
	store = RecordingStore(events)
	sleep = _SleepRecorder(events)
	validator = _validator(client, store, sleep)

	await validator.validate(HANDLE)

	assert validator.state == ValidationState.VALID
	assert events == ["publish", "sleep"]
	assert store.published == ["token-1"]
	assert sleep.delays == [2.0]
	# initial fetch + two polls
	assert client.calls.count("fetch_authorization") == 3
	assert client.calls.index("trigger_validation") > client.calls.index("create_challenge")


@pytest.mark.asyncio
async def test_published_response_is_key_authorization():
	seen = {}

	class _Spy(FakeAcmeClient):
		async def trigger_validation(self, challenge):
			seen["value"] = store.get(challenge.token)
			await super().trigger_validation(challenge)

	client = _Spy(statuses={AUTHZ_URL: ["pending", "valid"]})
	store = ChallengeResponseStore()

	await _validator(client, store).validate(HANDLE)

	assert seen["value"] == "token-1.thumb"


@pytest.mark.asyncio
async def test_token_is_discarded_after_success():
	client = FakeAcmeClient(statuses={AUTHZ_URL: ["pending", "valid"]})
	store = ChallengeResponseStore()

	await _validator(client, store).validate(HANDLE)

	assert store.get("token-1") is None
	assert len(store) == 0


@pytest.mark.asyncio
async def test_already_valid_authorization_short_circuits():
	client = FakeAcmeClient(default_status="valid")
	store = RecordingStore([])
	validator = _validator(client, store)

	await validator.validate(HANDLE)

	assert validator.state == ValidationState.VALID
	assert store.published == []
	assert client.calls == ["fetch_authorization"]


@pytest.mark.asyncio
async def test_pending_forever_times_out():
	client = FakeAcmeClient(default_status="pending")
	store = ChallengeResponseStore()
	sleep = _SleepRecorder()
	validator = _validator(client, store, sleep)

	with pytest.raises(ValidationTimeoutError) as excinfo:
		await validator.validate(HANDLE)

	assert isinstance(excinfo.value, TimeoutError)
	assert isinstance(excinfo.value, AuthorizationError)
	assert validator.state == ValidationState.TIMED_OUT
	assert client.calls.count("fetch_authorization") == 1 + MAX_POLL_ATTEMPTS
	assert len(sleep.delays) == MAX_POLL_ATTEMPTS - 1
	assert len(store) == 0


@pytest.mark.asyncio
async def test_invalid_reports_every_challenge_error():
	problems = [
		ChallengeProblem(type="urn:ietf:params:acme:error:connection", detail="refused", status=400),
		ChallengeProblem(type="urn:ietf:params:acme:error:dns", detail="NXDOMAIN", status=400),
	]
	client = FakeAcmeClient(
		statuses={AUTHZ_URL: ["pending", "invalid"]},
		errors={AUTHZ_URL: problems},
	)
	validator = _validator(client, ChallengeResponseStore())

	with pytest.raises(AuthorizationError) as excinfo:
		await validator.validate(HANDLE)

	message = str(excinfo.value)
	assert "a.example" in message
	assert (
		"urn:ietf:params:acme:error:connection: refused, Code = 400; "
		"urn:ietf:params:acme:error:dns: NXDOMAIN, Code = 400"
	) in message
	assert excinfo.value.status == "invalid"
	assert not isinstance(excinfo.value, TimeoutError)
	assert validator.state == ValidationState.INVALID


@pytest.mark.asyncio
async def test_invalid_without_errors_reports_unknown():
	client = FakeAcmeClient(statuses={AUTHZ_URL: ["pending", "invalid"]})

	with pytest.raises(AuthorizationError, match="unknown"):
		await _validator(client, ChallengeResponseStore()).validate(HANDLE)


@pytest.mark.asyncio
@pytest.mark.parametrize(
	("status", "phrase", "state"),
	[
		("revoked", "has been revoked", ValidationState.REVOKED),
		("expired", "has expired", ValidationState.EXPIRED),
	],
)
async def test_terminal_failures(status, phrase, state):
	client = FakeAcmeClient(statuses={AUTHZ_URL: ["pending", status]})
	store = ChallengeResponseStore()
	validator = _validator(client, store)

	with pytest.raises(AuthorizationError, match=phrase):
		await validator.validate(HANDLE)

	assert validator.state == state
	assert len(store) == 0


@pytest.mark.asyncio
async def test_unexpected_status_fails():
	client = FakeAcmeClient(statuses={AUTHZ_URL: ["pending", "deactivated"]})

	with pytest.raises(AuthorizationError, match="Unexpected authorization status"):
		await _validator(client, ChallengeResponseStore()).validate(HANDLE)


@pytest.mark.asyncio
async def test_cancellation_stops_polling_and_discards_token():
	client = FakeAcmeClient(default_status="pending")
	store = ChallengeResponseStore()
	validator = DomainOwnershipValidator(client, store, poll_interval=0.01)

	task = asyncio.create_task(validator.validate(HANDLE))
	for _ in range(50):
		await asyncio.sleep(0.01)
		if validator.state == ValidationState.POLLING:
			break
	task.cancel()

	with pytest.raises(asyncio.CancelledError):
		await task
	polls = client.calls.count("fetch_authorization")
	await asyncio.sleep(0.05)
	assert client.calls.count("fetch_authorization") == polls
	assert len(store) == 0
