"""
Core data models for the Portal API Client.

This module defines the credential pair, request and response envelopes,
and the refresh outcome exchanged between the client components.
"""

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional


AUTHORIZATION_HEADER = "Authorization"
CONTENT_TYPE_HEADER = "Content-Type"
JSON_CONTENT_TYPE = "application/json"

# Durable slot names shared with the web portals' storage layout.
ACCESS_TOKEN_SLOT = "accessToken"
REFRESH_TOKEN_SLOT = "refreshToken"


class PortalType(Enum):
    """Portals a user can sign in to."""
    ADMIN = "admin"
    CUSTOMER = "customer"
    VENDOR = "vendor"
    TECH = "tech"


class SessionState(Enum):
    """Client side view of the logical session."""
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    LOGGED_OUT = "logged_out"


class OutcomeKind(Enum):
    """Result kinds of a refresh episode."""
    SUCCESS = "success"
    FAILURE = "failure"
    NO_CREDENTIAL = "no_credential"


@dataclass(frozen=True)
class CredentialPair:
    """Access/refresh token pair, always stored and loaded as one unit."""
    access_token: str
    refresh_token: Optional[str] = None

    def __post_init__(self):
        if not self.access_token:
            raise ValueError("Access token cannot be empty")

    def to_slots(self) -> Dict[str, Optional[str]]:
        """Serialize to the named durable slots."""
        return {
            ACCESS_TOKEN_SLOT: self.access_token,
            REFRESH_TOKEN_SLOT: self.refresh_token,
        }

    @classmethod
    def from_slots(cls, slots: Mapping[str, Any]) -> Optional['CredentialPair']:
        """Build a pair from stored slots, or None when no access token is stored."""
        access_token = slots.get(ACCESS_TOKEN_SLOT)
        if not isinstance(access_token, str) or not access_token:
            return None

        refresh_token = slots.get(REFRESH_TOKEN_SLOT)
        if not isinstance(refresh_token, str) or not refresh_token:
            refresh_token = None

        return cls(access_token=access_token, refresh_token=refresh_token)

    def __repr__(self) -> str:
        # Tokens never end up in logs through repr().
        return (
            f"CredentialPair(access_token='***', "
            f"refresh_token={'***' if self.refresh_token else None!r})"
        )


@dataclass(frozen=True)
class RequestEnvelope:
    """
    An outbound request. Immutable once issued.

    A replay is a new envelope produced with with_header(), carrying the same
    method, path and body.
    """
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    params: Optional[Mapping[str, Any]] = None

    def __post_init__(self):
        if not self.method:
            raise ValueError("Request method cannot be empty")
        object.__setattr__(self, 'method', self.method.upper())
        object.__setattr__(self, 'headers', dict(self.headers))

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def with_header(self, name: str, value: str) -> 'RequestEnvelope':
        """Return a copy with `name` set to `value`, replacing any casing variant."""
        lowered = name.lower()
        headers = {k: v for k, v in self.headers.items() if k.lower() != lowered}
        headers[name] = value
        return replace(self, headers=headers)

    def with_default_header(self, name: str, value: str) -> 'RequestEnvelope':
        """Return a copy with `name` set only if the caller did not set it."""
        if self.header(name) is not None:
            return self
        return self.with_header(name, value)

    def with_bearer(self, access_token: str) -> 'RequestEnvelope':
        return self.with_header(AUTHORIZATION_HEADER, f"Bearer {access_token}")


@dataclass(frozen=True)
class ApiResponse:
    """
    A fully read HTTP response.

    The transport fills `headers` with a read-only CIMultiDictProxy, so
    repeated headers such as Set-Cookie survive and lookups ignore case.
    """
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode('utf-8', errors='replace')

    def json(self) -> Any:
        """
        Decode the body as JSON.

        Raises:
            ValueError: If the body is not valid JSON
        """
        if not self.body:
            return None
        return json.loads(self.body)


@dataclass(frozen=True)
class RefreshOutcome:
    """
    The single result of one refresh episode.

    The same instance is handed to every caller that waited on the episode.
    """
    kind: OutcomeKind
    episode: int
    pair: Optional[CredentialPair] = None
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @classmethod
    def success(cls, episode: int, pair: CredentialPair) -> 'RefreshOutcome':
        return cls(kind=OutcomeKind.SUCCESS, episode=episode, pair=pair)

    @classmethod
    def failure(cls, episode: int, reason: str) -> 'RefreshOutcome':
        return cls(kind=OutcomeKind.FAILURE, episode=episode, reason=reason)

    @classmethod
    def no_credential(cls, episode: int) -> 'RefreshOutcome':
        return cls(kind=OutcomeKind.NO_CREDENTIAL, episode=episode,
                   reason="No refresh token available")
