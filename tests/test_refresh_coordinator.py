"""
Tests for single-flight token refresh.

Covers episode deduplication, failure classification, timeout handling and
the reset of the in-flight marker between episodes.
"""

import asyncio

import pytest

from conftest import REFRESH_PATH, FakeBackend, ScriptedTransport, json_response
from portal_client.auth.credential_store import InMemoryCredentialStore
from portal_client.auth.refresh_coordinator import RefreshCoordinator
from portal_shared.exceptions import CredentialStorageError, ErrorCode, NetworkError
from portal_shared.models import ApiResponse, CredentialPair, OutcomeKind


class FailingWriteStore(InMemoryCredentialStore):
    def write(self, pair):
        raise CredentialStorageError("disk full")


class TestSingleFlight:
    """Concurrent callers share one refresh episode."""

    @pytest.mark.asyncio
    async def test_concurrent_calls_make_one_network_call(self, store, backend, transport):
        backend.refresh_gate = asyncio.Event()
        coordinator = RefreshCoordinator(store, transport)

        tasks = [asyncio.ensure_future(coordinator.refresh()) for _ in range(5)]
        await asyncio.sleep(0)
        assert coordinator.in_flight

        backend.refresh_gate.set()
        outcomes = await asyncio.gather(*tasks)

        assert len(transport.sent_to(REFRESH_PATH)) == 1
        assert all(outcome is outcomes[0] for outcome in outcomes)
        assert outcomes[0].succeeded
        assert outcomes[0].pair == CredentialPair('access-2', 'refresh-2')
        assert coordinator.episode_count == 1
        assert not coordinator.in_flight

    @pytest.mark.asyncio
    async def test_concurrent_failures_share_reason(self, store, backend, transport):
        backend.refresh_response = json_response(401, {'success': False, 'error': 'Invalid refresh token'})
        backend.refresh_gate = asyncio.Event()
        coordinator = RefreshCoordinator(store, transport)

        tasks = [asyncio.ensure_future(coordinator.refresh()) for _ in range(3)]
        await asyncio.sleep(0)
        backend.refresh_gate.set()
        outcomes = await asyncio.gather(*tasks)

        assert len(transport.sent_to(REFRESH_PATH)) == 1
        assert {outcome.reason for outcome in outcomes} == {"Refresh rejected with status 401"}
        assert all(outcome.kind is OutcomeKind.FAILURE for outcome in outcomes)

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_episode(self, store, backend, transport):
        backend.refresh_gate = asyncio.Event()
        coordinator = RefreshCoordinator(store, transport)

        tasks = [asyncio.ensure_future(coordinator.refresh()) for _ in range(3)]
        await asyncio.sleep(0)
        tasks[0].cancel()
        backend.refresh_gate.set()

        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert isinstance(results[0], asyncio.CancelledError)
        assert results[1] is results[2]
        assert results[1].succeeded
        assert store.read().access_token == 'access-2'

    @pytest.mark.asyncio
    async def test_sequential_episodes_each_call_network(self, store, backend, transport):
        coordinator = RefreshCoordinator(store, transport)

        first = await coordinator.refresh()
        second = await coordinator.refresh()

        assert first.succeeded and second.succeeded
        assert (first.episode, second.episode) == (1, 2)
        assert len(transport.sent_to(REFRESH_PATH)) == 2

    @pytest.mark.asyncio
    async def test_failed_episode_does_not_stick(self, store, backend, transport):
        backend.refresh_response = json_response(500, {'success': False, 'error': 'boom'})
        coordinator = RefreshCoordinator(store, transport)

        failed = await coordinator.refresh()
        backend.refresh_response = json_response(200, {'accessToken': 'access-3'})
        recovered = await coordinator.refresh()

        assert not failed.succeeded
        assert recovered.succeeded
        assert recovered.pair.access_token == 'access-3'


class TestRefreshRequest:
    """Shape of the refresh call and handling of its response."""

    @pytest.mark.asyncio
    async def test_refresh_request_shape(self, store, transport):
        coordinator = RefreshCoordinator(store, transport)
        await coordinator.refresh()

        (envelope,) = transport.sent_to(REFRESH_PATH)
        assert envelope.method == 'POST'
        assert envelope.body == {'refreshToken': 'refresh-1'}
        assert envelope.header('content-type') == 'application/json'
        assert envelope.header('Authorization') is None

    @pytest.mark.asyncio
    async def test_missing_refresh_token_in_response_keeps_old_one(self, store):
        backend = FakeBackend(new_refresh_token=None)
        coordinator = RefreshCoordinator(store, ScriptedTransport(backend))

        outcome = await coordinator.refresh()

        assert outcome.succeeded
        assert store.read() == CredentialPair('access-2', 'refresh-1')

    @pytest.mark.asyncio
    async def test_envelope_response_is_unwrapped(self, store, backend, transport):
        backend.refresh_response = json_response(200, {
            'success': True,
            'data': {'accessToken': 'access-9', 'refreshToken': 'refresh-9'}
        })
        coordinator = RefreshCoordinator(store, transport)

        outcome = await coordinator.refresh()

        assert outcome.succeeded
        assert store.read() == CredentialPair('access-9', 'refresh-9')

    @pytest.mark.asyncio
    async def test_envelope_reporting_failure_is_a_failure(self, store, backend, transport):
        backend.refresh_response = json_response(200, {'success': False, 'error': 'Refresh token revoked'})
        coordinator = RefreshCoordinator(store, transport)

        outcome = await coordinator.refresh()

        assert outcome.kind is OutcomeKind.FAILURE
        assert 'Refresh token revoked' in outcome.reason
        assert store.read() == CredentialPair('access-1', 'refresh-1')

    @pytest.mark.asyncio
    @pytest.mark.parametrize('body', [
        b'not json',
        b'[]',
        b'{"refreshToken": "only-refresh"}',
        b'{"accessToken": ""}',
        b'',
    ])
    async def test_malformed_payload_is_failure_and_store_untouched(self, store, backend, transport, body):
        backend.refresh_response = ApiResponse(status=200, body=body)
        coordinator = RefreshCoordinator(store, transport)

        outcome = await coordinator.refresh()

        assert outcome.kind is OutcomeKind.FAILURE
        assert outcome.reason.startswith("Malformed refresh response")
        assert store.read() == CredentialPair('access-1', 'refresh-1')

    @pytest.mark.asyncio
    async def test_network_error_is_failure(self, store):
        transport = ScriptedTransport(lambda envelope: NetworkError("connection refused"))
        coordinator = RefreshCoordinator(store, transport)

        outcome = await coordinator.refresh()

        assert outcome.kind is OutcomeKind.FAILURE
        assert outcome.reason == "Refresh request failed: connection refused"
        assert not coordinator.in_flight

    @pytest.mark.asyncio
    async def test_transport_timeout_is_failure(self, store):
        error = NetworkError("timed out", error_code=ErrorCode.NETWORK_TIMEOUT)
        coordinator = RefreshCoordinator(store, ScriptedTransport(lambda envelope: error))

        outcome = await coordinator.refresh()

        assert outcome.kind is OutcomeKind.FAILURE

    @pytest.mark.asyncio
    async def test_hanging_refresh_times_out_and_clears_marker(self, store, backend, transport):
        backend.refresh_gate = asyncio.Event()
        coordinator = RefreshCoordinator(store, transport, timeout=0.05)

        outcome = await coordinator.refresh()

        assert outcome.kind is OutcomeKind.FAILURE
        assert 'timed out' in outcome.reason
        assert not coordinator.in_flight

        backend.refresh_gate.set()
        assert (await coordinator.refresh()).succeeded

    @pytest.mark.asyncio
    async def test_unexpected_error_is_failure(self, store):
        def explode(envelope):
            raise RuntimeError("bug in transport")

        coordinator = RefreshCoordinator(store, ScriptedTransport(explode))

        outcome = await coordinator.refresh()

        assert outcome.kind is OutcomeKind.FAILURE
        assert 'bug in transport' in outcome.reason
        assert not coordinator.in_flight

    @pytest.mark.asyncio
    async def test_storage_failure_is_failure(self, transport):
        store = FailingWriteStore(CredentialPair('access-1', 'refresh-1'))
        coordinator = RefreshCoordinator(store, transport)

        outcome = await coordinator.refresh()

        assert outcome.kind is OutcomeKind.FAILURE
        assert 'disk full' in outcome.reason


class TestNoCredential:
    """Missing refresh tokens short-circuit without network traffic."""

    @pytest.mark.asyncio
    async def test_empty_store(self, transport):
        coordinator = RefreshCoordinator(InMemoryCredentialStore(), transport)

        outcome = await coordinator.refresh()

        assert outcome.kind is OutcomeKind.NO_CREDENTIAL
        assert transport.sent == []
        assert not coordinator.in_flight

    @pytest.mark.asyncio
    async def test_access_token_without_refresh_token(self, transport):
        store = InMemoryCredentialStore(CredentialPair('access-1'))
        coordinator = RefreshCoordinator(store, transport)

        outcome = await coordinator.refresh()

        assert outcome.kind is OutcomeKind.NO_CREDENTIAL
        assert outcome.reason == "No refresh token available"
        assert transport.sent == []


class TestSessionEndClaim:
    """The session ends once per failed episode."""

    def test_first_claim_wins(self, store, transport):
        coordinator = RefreshCoordinator(store, transport)

        assert coordinator.claim_session_end(1) is True
        assert coordinator.claim_session_end(1) is False

    def test_older_episode_is_refused(self, store, transport):
        coordinator = RefreshCoordinator(store, transport)

        assert coordinator.claim_session_end(3) is True
        assert coordinator.claim_session_end(2) is False
        assert coordinator.claim_session_end(4) is True

    @pytest.mark.asyncio
    async def test_claim_follows_refresh_episodes(self, store, backend, transport):
        backend.refresh_response = json_response(401, {})
        coordinator = RefreshCoordinator(store, transport)

        first = await coordinator.refresh()
        assert coordinator.claim_session_end(first.episode) is True

        store.write(CredentialPair('access-1', 'refresh-1'))
        second = await coordinator.refresh()

        assert second.episode == first.episode + 1
        assert coordinator.claim_session_end(first.episode) is False
        assert coordinator.claim_session_end(second.episode) is True
