"""
Shared fixtures and fakes for the Portal API Client tests.
"""

import json
import inspect
from typing import Any, Callable, List, Optional

import pytest

from portal_client.auth.credential_store import InMemoryCredentialStore
from portal_shared.interfaces import ITransport
from portal_shared.models import ApiResponse, CredentialPair, RequestEnvelope

REFRESH_PATH = '/api/v1/auth/refresh'


def json_response(status: int, payload: Any) -> ApiResponse:
    """Build an ApiResponse carrying a JSON body."""
    return ApiResponse(
        status=status,
        headers={'Content-Type': 'application/json'},
        body=json.dumps(payload).encode()
    )


def bearer_of(envelope: RequestEnvelope) -> Optional[str]:
    """Return the bearer token attached to an envelope, if any."""
    value = envelope.header('Authorization')
    if not value or not value.startswith('Bearer '):
        return None
    return value[len('Bearer '):]


class ScriptedTransport(ITransport):
    """
    Transport fake that records every envelope and answers via a handler.

    The handler may be sync or async and may return an ApiResponse or an
    exception instance to raise.
    """

    def __init__(self, handler: Callable[[RequestEnvelope], Any]):
        self.handler = handler
        self.sent: List[RequestEnvelope] = []
        self.closed = False

    async def send(self, envelope: RequestEnvelope) -> ApiResponse:
        self.sent.append(envelope)
        result = self.handler(envelope)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, BaseException):
            raise result
        return result

    async def close(self) -> None:
        self.closed = True

    def sent_to(self, path: str) -> List[RequestEnvelope]:
        return [envelope for envelope in self.sent if envelope.path == path]


class FakeBackend:
    """
    Minimal stand-in for the portal backend.

    Protected routes answer 200 for tokens in `valid_tokens` and 401 for
    anything else. The refresh route answers `refresh_response`, optionally
    after waiting for `refresh_gate` to be set.
    """

    def __init__(self, new_access_token: str = 'access-2', new_refresh_token: Optional[str] = 'refresh-2'):
        self.valid_tokens = {new_access_token}
        payload = {'accessToken': new_access_token}
        if new_refresh_token:
            payload['refreshToken'] = new_refresh_token
        self.refresh_response: Any = json_response(200, payload)
        self.refresh_gate = None

    async def __call__(self, envelope: RequestEnvelope):
        if envelope.path == REFRESH_PATH:
            if self.refresh_gate is not None:
                await self.refresh_gate.wait()
            return self.refresh_response

        token = bearer_of(envelope)
        if token in self.valid_tokens:
            return json_response(200, {'path': envelope.path, 'token': token})
        return json_response(401, {'success': False, 'error': 'Unauthorized'})


@pytest.fixture
def expired_pair():
    return CredentialPair('access-1', 'refresh-1')


@pytest.fixture
def store(expired_pair):
    return InMemoryCredentialStore(expired_pair)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def transport(backend):
    return ScriptedTransport(backend)
