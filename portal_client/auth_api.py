"""
Session endpoints of the portal backend: login, logout and current user.

Login populates the credential store, logout empties it. Both talk to the
transport directly so that a stale stored token can never trigger a refresh
while the user is signing in or out.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from portal_client.api_client import AuthenticatedClient, UNAUTHORIZED
from portal_shared.exceptions import (
    ApiResponseError, AuthenticationError, ErrorCode, NetworkError, ValidationError
)
from portal_shared.logging_config import AuditLogger
from portal_shared.models import (
    CONTENT_TYPE_HEADER, JSON_CONTENT_TYPE, ApiResponse, CredentialPair, PortalType,
    RequestEnvelope
)

logger = logging.getLogger(__name__)


class LoginData(BaseModel):
    """Payload of a successful login."""
    access_token: str = Field(alias='accessToken', min_length=1)
    refresh_token: str = Field(alias='refreshToken', min_length=1)
    user: Dict[str, Any] = Field(default_factory=dict)


def unwrap_envelope(response: ApiResponse) -> Any:
    """
    Extract `data` from the backend's {success, data, error} wrapper.

    Args:
        response: Response to unwrap

    Returns:
        The `data` member (None when absent)

    Raises:
        ApiResponseError: On non-2xx status, non-JSON body or success=false
    """
    try:
        payload = response.json()
    except ValueError as e:
        raise ApiResponseError(
            f"Response is not valid JSON (status {response.status})",
            status=response.status,
            error_code=ErrorCode.API_UNEXPECTED_PAYLOAD,
            cause=e
        )

    if not isinstance(payload, dict):
        raise ApiResponseError(
            "Response is not a JSON object",
            status=response.status,
            error_code=ErrorCode.API_UNEXPECTED_PAYLOAD
        )

    if not response.ok or payload.get('success') is False:
        message = payload.get('error') or payload.get('message') or f"Request failed with status {response.status}"
        raise ApiResponseError(message, status=response.status)

    return payload.get('data')


class AuthApi:
    """Login, logout and identity calls bound to an AuthenticatedClient."""

    def __init__(
        self,
        client: AuthenticatedClient,
        login_path: str = '/api/v1/auth/login',
        logout_path: str = '/api/v1/auth/logout',
        me_path: str = '/api/v1/auth/me',
        audit_logger: Optional[AuditLogger] = None
    ):
        self.client = client
        self.login_path = login_path
        self.logout_path = logout_path
        self.me_path = me_path
        self.audit_logger = audit_logger or client.audit_logger

    @classmethod
    def from_config(cls, client: AuthenticatedClient, config) -> 'AuthApi':
        return cls(
            client,
            login_path=config.get_auth_path('login'),
            logout_path=config.get_auth_path('logout'),
            me_path=config.get_auth_path('me'),
        )

    async def login(
        self,
        email: str,
        password: str,
        portal_type: PortalType = PortalType.ADMIN
    ) -> Dict[str, Any]:
        """
        Sign in and store the returned credential pair.

        Args:
            email: Account email
            password: Account password
            portal_type: Portal the user signs in to

        Returns:
            The user object returned by the backend

        Raises:
            ValidationError: If email or password is empty
            AuthenticationError: If the backend rejects the login
            NetworkError: If the backend cannot be reached
        """
        if not email:
            raise ValidationError("Email is required", field_name='email',
                                  error_code=ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD)
        if not password:
            raise ValidationError("Password is required", field_name='password',
                                  error_code=ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD)

        portal = PortalType(portal_type).value
        logger.info(f"Logging in {email} to the {portal} portal")

        envelope = RequestEnvelope(
            method='POST',
            path=self.login_path,
            headers={CONTENT_TYPE_HEADER: JSON_CONTENT_TYPE},
            body={'email': email, 'password': password, 'portalType': portal}
        )
        response = await self.client.transport.send(envelope)

        try:
            data = LoginData.model_validate(unwrap_envelope(response))
        except ApiResponseError as e:
            self.audit_logger.log_authentication(email, portal, success=False, failure_reason=e.message)
            raise AuthenticationError(
                f"Login failed: {e.message}",
                error_code=ErrorCode.AUTH_LOGIN_FAILED,
                context={'status': response.status},
                cause=e,
                user_message=e.message
            )
        except PydanticValidationError as e:
            self.audit_logger.log_authentication(email, portal, success=False,
                                                 failure_reason="malformed login response")
            raise AuthenticationError(
                "Login failed: malformed response from server",
                error_code=ErrorCode.AUTH_LOGIN_FAILED,
                cause=e
            )

        self.client.store.write(CredentialPair(data.access_token, data.refresh_token))
        self.client.mark_authenticated()

        user_id = data.user.get('id')
        self.audit_logger.log_authentication(email, portal, user_id=user_id, success=True)
        return data.user

    async def logout(self) -> bool:
        """
        Revoke the session on the server and clear local credentials.

        The server blacklists the bearer access token and revokes the refresh
        token when one is stored. Local credentials are cleared even if the
        server call fails.

        Returns:
            True if the server acknowledged the logout
        """
        pair = self.client.store.read()
        remote_revoked = False

        if pair is not None:
            envelope = RequestEnvelope(
                method='POST',
                path=self.logout_path,
                headers={CONTENT_TYPE_HEADER: JSON_CONTENT_TYPE},
                body={'refreshToken': pair.refresh_token or ''}
            ).with_bearer(pair.access_token)
            try:
                response = await self.client.transport.send(envelope)
                remote_revoked = response.ok
                if not response.ok:
                    logger.warning(f"Server rejected logout with status {response.status}")
            except NetworkError as e:
                logger.warning(f"Logout request failed, clearing local credentials anyway: {e}")

        self.client.store.clear()
        self.client.mark_logged_out()
        self.audit_logger.log_logout(remote_revoked)
        return remote_revoked

    async def me(self) -> Dict[str, Any]:
        """
        Fetch the signed-in user and their permissions.

        Returns:
            The `data` object of the /auth/me response

        Raises:
            AuthenticationError: If the session is not (or no longer) valid
            ApiResponseError: On other failures
        """
        response = await self.client.get(self.me_path)
        if response.status == UNAUTHORIZED:
            raise AuthenticationError("Not authenticated", error_code=ErrorCode.AUTH_NOT_AUTHENTICATED)

        data = unwrap_envelope(response)
        if not isinstance(data, dict):
            raise ApiResponseError(
                "Unexpected /auth/me payload",
                status=response.status,
                error_code=ErrorCode.API_UNEXPECTED_PAYLOAD
            )
        return data
