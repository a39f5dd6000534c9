"""
Authenticated HTTP API client for the Portal API Client.

This module provides the one entry point application code uses to talk to
the backend. It attaches the stored access token, recovers from expired
credentials by refreshing once and replaying the request, and ends the
session cleanly when the credentials cannot be renewed.
"""

import inspect
import logging
from typing import Optional, Dict, Any, Callable, List, Mapping

from portal_client.auth.credential_store import create_credential_store
from portal_client.auth.refresh_coordinator import RefreshCoordinator
from portal_client.transport import HttpTransport
from portal_shared.interfaces import ICredentialStore, IRefreshCoordinator, ITransport
from portal_shared.logging_config import AuditLogger
from portal_shared.models import (
    CONTENT_TYPE_HEADER, JSON_CONTENT_TYPE, ApiResponse, RefreshOutcome,
    RequestEnvelope, SessionState
)

logger = logging.getLogger(__name__)

UNAUTHORIZED = 401

SessionEndedCallback = Callable[[RefreshOutcome], Any]
LocationProvider = Callable[[], Optional[str]]


class AuthenticatedClient:
    """
    Request issuer with transparent token refresh.

    Protocol per request: attach the current access token (if any), send,
    pass through anything that is not a 401. A 401 on a request that carried
    a token triggers one shared refresh; on success the request is replayed
    exactly once with the new token, otherwise the session is ended and the
    original 401 is returned.
    """

    def __init__(
        self,
        transport: ITransport,
        store: ICredentialStore,
        coordinator: Optional[IRefreshCoordinator] = None,
        refresh_path: str = '/api/v1/auth/refresh',
        on_session_ended: Optional[SessionEndedCallback] = None,
        current_location: Optional[LocationProvider] = None,
        login_route: str = '/login',
        refresh_timeout: Optional[float] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.transport = transport
        self.store = store
        self.audit_logger = audit_logger or AuditLogger()
        self.coordinator = coordinator or RefreshCoordinator(
            store,
            transport,
            refresh_path=refresh_path,
            timeout=refresh_timeout,
            audit_logger=self.audit_logger
        )
        self.login_route = login_route

        self._on_session_ended = on_session_ended
        self._current_location = current_location
        self._session_callbacks: List[Callable[[SessionState], None]] = []
        self._state = (
            SessionState.AUTHENTICATED if store.read() is not None else SessionState.LOGGED_OUT
        )

    @classmethod
    def from_config(
        cls,
        config,
        store: Optional[ICredentialStore] = None,
        coordinator: Optional[IRefreshCoordinator] = None,
        on_session_ended: Optional[SessionEndedCallback] = None,
        current_location: Optional[LocationProvider] = None
    ) -> 'AuthenticatedClient':
        """
        Build a client wired to the configured backend and credential store.

        Args:
            config: ClientConfiguration instance
            store: Credential store to use instead of the configured one
            coordinator: Refresh coordinator to share with other clients of
                the same store. Clients on one store must share one
                coordinator, otherwise each runs its own refresh episodes.
            on_session_ended: Called once per failed refresh episode
            current_location: Returns the host's current location

        Returns:
            Configured AuthenticatedClient
        """
        transport = HttpTransport(
            config.get_server_url(),
            timeout=config.get_server_timeout(),
            user_agent=config.get_user_agent()
        )
        return cls(
            transport,
            store or create_credential_store(config),
            coordinator=coordinator,
            refresh_path=config.get_auth_path('refresh'),
            on_session_ended=on_session_ended,
            current_location=current_location,
            login_route=config.get_login_route()
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """Close the underlying transport."""
        await self.transport.close()

    @property
    def session_state(self) -> SessionState:
        return self._state

    def add_session_callback(self, callback: Callable[[SessionState], None]) -> None:
        """
        Add callback for session state changes.

        Args:
            callback: Function called with the new SessionState
        """
        self._session_callbacks.append(callback)

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.debug(f"Session state {self._state.value} -> {state.value}")
        self._state = state
        for callback in self._session_callbacks:
            try:
                callback(state)
            except Exception as e:
                logger.error(f"Error in session callback: {e}")

    def mark_authenticated(self) -> None:
        """Record that fresh credentials were stored, e.g. after login."""
        self._set_state(SessionState.AUTHENTICATED)

    def mark_logged_out(self) -> None:
        """Record an explicit logout."""
        self._set_state(SessionState.LOGGED_OUT)

    async def request(self, envelope: RequestEnvelope) -> ApiResponse:
        """
        Send a request with the current credentials.

        Args:
            envelope: Request to send

        Returns:
            The backend response. Status codes other than 401 are returned
            untouched; an unrecoverable 401 is returned as received.

        Raises:
            NetworkError: When the transport fails on the request or replay
        """
        pair = self.store.read()
        access_token = pair.access_token if pair else None

        outbound = envelope.with_default_header(CONTENT_TYPE_HEADER, JSON_CONTENT_TYPE)
        if access_token:
            outbound = outbound.with_bearer(access_token)

        response = await self.transport.send(outbound)

        if response.status != UNAUTHORIZED:
            return response

        if not access_token:
            # Nothing to refresh; the endpoint is answering an anonymous call
            logger.debug(f"401 without credentials for {envelope.method} {envelope.path}")
            return response

        logger.info(f"Access token rejected for {envelope.method} {envelope.path}, refreshing")
        previous_state = self._state
        self._set_state(SessionState.REFRESHING)
        try:
            outcome = await self.coordinator.refresh()
        except BaseException:
            # Cancelled or broken refresh leaves the session as it was
            self._set_state(previous_state)
            raise

        if outcome.succeeded:
            self._set_state(SessionState.AUTHENTICATED)
            replay = outbound.with_bearer(outcome.pair.access_token)
            return await self.transport.send(replay)

        self._set_state(SessionState.LOGGED_OUT)
        await self._end_session(outcome)
        return response

    async def _end_session(self, outcome: RefreshOutcome) -> None:
        """Clear credentials and signal the host once per failed episode."""
        if not self.coordinator.claim_session_end(outcome.episode):
            return

        logger.warning(f"Session ended: {outcome.reason}")
        self.store.clear()

        signalled = False
        if self._at_login_route():
            logger.info("Already at the login route, not signalling session end")
        else:
            signalled = await self._signal_session_ended(outcome)

        self.audit_logger.log_session_ended(outcome.episode, outcome.reason, signalled)

    def _at_login_route(self) -> bool:
        if self._current_location is None:
            return False
        try:
            return self._current_location() == self.login_route
        except Exception as e:
            logger.error(f"Error reading current location: {e}")
            return False

    async def _signal_session_ended(self, outcome: RefreshOutcome) -> bool:
        if self._on_session_ended is None:
            return False
        try:
            result = self._on_session_ended(outcome)
            if inspect.isawaitable(result):
                await result
            return True
        except Exception as e:
            logger.error(f"Error in session ended callback: {e}")
            return False

    # Convenience methods building request envelopes

    async def get(
        self,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> ApiResponse:
        return await self.request(RequestEnvelope('GET', path, headers or {}, params=params))

    async def post(
        self,
        path: str,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None
    ) -> ApiResponse:
        return await self.request(RequestEnvelope('POST', path, headers or {}, data, params))

    async def put(
        self,
        path: str,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None
    ) -> ApiResponse:
        return await self.request(RequestEnvelope('PUT', path, headers or {}, data, params))

    async def patch(
        self,
        path: str,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None
    ) -> ApiResponse:
        return await self.request(RequestEnvelope('PATCH', path, headers or {}, data, params))

    async def delete(
        self,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None
    ) -> ApiResponse:
        return await self.request(RequestEnvelope('DELETE', path, headers or {}, params=params))
