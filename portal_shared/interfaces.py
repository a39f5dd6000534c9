"""
Core interfaces for the Portal API Client.

This module defines the abstract interfaces that components must implement
so that storage media, transports and the refresh coordinator can be swapped
independently (for example for fakes in tests).
"""

from abc import ABC, abstractmethod
from typing import Optional

from .models import ApiResponse, CredentialPair, RefreshOutcome, RequestEnvelope


class ICredentialStore(ABC):
    """Single source of truth for the access/refresh credential pair."""

    @abstractmethod
    def read(self) -> Optional[CredentialPair]:
        """Return the stored pair, or None. Never raises."""
        pass

    @abstractmethod
    def write(self, pair: CredentialPair) -> None:
        """Persist both tokens as one atomic unit."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove both tokens. Idempotent."""
        pass


class ITransport(ABC):
    """Sends one request envelope and returns the fully read response."""

    @abstractmethod
    async def send(self, envelope: RequestEnvelope) -> ApiResponse:
        """Send the envelope over the network."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        pass


class IRefreshCoordinator(ABC):
    """Deduplicates concurrent refresh attempts into one outcome."""

    @abstractmethod
    async def refresh(self) -> RefreshOutcome:
        """Join the in-flight refresh episode, or start one."""
        pass

    @abstractmethod
    def claim_session_end(self, episode: int) -> bool:
        """Return True for the first caller ending the session after `episode`."""
        pass
