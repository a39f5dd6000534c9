"""
Refresh coordination for the Portal API Client.

This module makes sure that at most one token refresh is in flight at any
time. Every caller that asks for a refresh while an episode is running waits
on that same episode and receives the identical outcome object. Once the
episode settles the marker is cleared, so the next 401 starts a new episode.
"""

import asyncio
import logging
import time
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from portal_client.auth.token_info import parse_token_expiration
from portal_shared.exceptions import CredentialStorageError, NetworkError
from portal_shared.interfaces import ICredentialStore, IRefreshCoordinator, ITransport
from portal_shared.logging_config import AuditLogger, OperationLogger
from portal_shared.models import (
    CONTENT_TYPE_HEADER, JSON_CONTENT_TYPE, CredentialPair, RefreshOutcome,
    RequestEnvelope
)

logger = logging.getLogger(__name__)


class RefreshedTokens(BaseModel):
    """Token payload returned by the refresh endpoint."""
    access_token: str = Field(alias='accessToken', min_length=1)
    refresh_token: Optional[str] = Field(default=None, alias='refreshToken')


class RefreshEnvelope(BaseModel):
    """The backend's standard {success, data, error} wrapper."""
    success: bool
    data: Optional[RefreshedTokens] = None
    error: Optional[str] = None


class RefreshCoordinator(IRefreshCoordinator):
    """
    Single-flight token refresh.

    Owns the in-flight episode handle exclusively. The handle is an
    asyncio.Task that is checked and set without an intervening await, and
    cleared by the episode itself right before its outcome is published.

    One coordinator serves one credential store: every AuthenticatedClient
    working on the same store must be given the same coordinator.
    """

    def __init__(
        self,
        store: ICredentialStore,
        transport: ITransport,
        refresh_path: str = '/api/v1/auth/refresh',
        timeout: Optional[float] = None,
        audit_logger: Optional[AuditLogger] = None,
        operation_logger: Optional[OperationLogger] = None
    ):
        self.store = store
        self.transport = transport
        self.refresh_path = refresh_path
        self.timeout = timeout
        self.audit_logger = audit_logger or AuditLogger()
        self.operation_logger = operation_logger or OperationLogger()

        self._inflight: Optional[asyncio.Task] = None
        self._episode_count = 0
        self._last_ended_episode = 0

    @property
    def in_flight(self) -> bool:
        """True while a refresh episode is running."""
        return self._inflight is not None

    @property
    def episode_count(self) -> int:
        """Number of refresh episodes started so far."""
        return self._episode_count

    async def refresh(self) -> RefreshOutcome:
        """
        Join the running refresh episode, or start a new one.

        Returns:
            The episode's outcome. Concurrent callers get the same instance.
        """
        task = self._inflight
        if task is None:
            self._episode_count += 1
            episode = self._episode_count
            task = asyncio.ensure_future(self._run_episode(episode))
            self._inflight = task
            logger.info(f"Starting token refresh episode {episode}")
        else:
            logger.debug("Joining in-flight token refresh episode")

        # A cancelled waiter must not cancel the episode for everyone else
        return await asyncio.shield(task)

    def claim_session_end(self, episode: int) -> bool:
        """
        Claim the right to end the session after a failed episode.

        Every client sharing this coordinator asks before clearing credentials
        and signalling the host, so the session ends once per episode no
        matter how many clients or waiters saw the failure. Late waiters of an
        older episode are refused as well.

        Args:
            episode: Number of the failed episode

        Returns:
            True for the first claim of this episode
        """
        if episode <= self._last_ended_episode:
            return False
        self._last_ended_episode = episode
        return True

    async def _run_episode(self, episode: int) -> RefreshOutcome:
        operation_id = f"token-refresh-{episode}"
        self.operation_logger.log_operation_start('token_refresh', operation_id)
        started = time.monotonic()

        try:
            outcome = await self._attempt(episode)
        except Exception as e:
            logger.exception(f"Unexpected error during token refresh episode {episode}")
            outcome = RefreshOutcome.failure(episode, f"Unexpected refresh error: {e}")
        finally:
            if self._inflight is asyncio.current_task():
                self._inflight = None

        self.operation_logger.log_operation_complete(
            operation_id,
            success=outcome.succeeded,
            duration_seconds=time.monotonic() - started,
            result_summary=outcome.kind.value if outcome.succeeded else outcome.reason
        )
        self.audit_logger.log_token_refresh(episode, outcome.kind.value, outcome.reason)
        return outcome

    async def _attempt(self, episode: int) -> RefreshOutcome:
        current = self.store.read()
        if current is None or not current.refresh_token:
            logger.info("No refresh token stored, skipping token refresh")
            return RefreshOutcome.no_credential(episode)

        envelope = RequestEnvelope(
            method='POST',
            path=self.refresh_path,
            headers={CONTENT_TYPE_HEADER: JSON_CONTENT_TYPE},
            body={'refreshToken': current.refresh_token}
        )

        try:
            if self.timeout is not None:
                response = await asyncio.wait_for(self.transport.send(envelope), self.timeout)
            else:
                response = await self.transport.send(envelope)
        except asyncio.TimeoutError:
            logger.warning(f"Token refresh timed out after {self.timeout}s")
            return RefreshOutcome.failure(episode, f"Refresh timed out after {self.timeout}s")
        except NetworkError as e:
            logger.warning(f"Token refresh failed: {e}")
            return RefreshOutcome.failure(episode, f"Refresh request failed: {e.message}")

        if not response.ok:
            logger.warning(f"Token refresh rejected with status {response.status}")
            return RefreshOutcome.failure(episode, f"Refresh rejected with status {response.status}")

        try:
            new_pair = self._parse_response(response.json(), current)
        except (ValueError, PydanticValidationError) as e:
            logger.warning(f"Malformed token refresh response: {e}")
            return RefreshOutcome.failure(episode, f"Malformed refresh response: {e}")

        try:
            self.store.write(new_pair)
        except CredentialStorageError as e:
            return RefreshOutcome.failure(episode, f"Could not persist refreshed credentials: {e.message}")

        expires_at = parse_token_expiration(new_pair.access_token)
        if expires_at:
            logger.debug(f"Refreshed access token expires at {expires_at.isoformat()}")

        return RefreshOutcome.success(episode, new_pair)

    def _parse_response(self, payload, current: CredentialPair) -> CredentialPair:
        """
        Turn the refresh payload into the new credential pair.

        Raises:
            ValueError: If the payload is not a usable token response
        """
        if not isinstance(payload, dict):
            raise ValueError("Refresh response is not a JSON object")

        if 'success' in payload:
            wrapped = RefreshEnvelope.model_validate(payload)
            if not wrapped.success or wrapped.data is None:
                raise ValueError(wrapped.error or "Refresh response reported failure")
            tokens = wrapped.data
        else:
            tokens = RefreshedTokens.model_validate(payload)

        return CredentialPair(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or current.refresh_token
        )
