"""
HTTP transport for the Portal API Client.

This module owns the aiohttp session and turns request envelopes into fully
read responses. It does not interpret status codes; that is left to the
authenticated client and its callers.
"""

import asyncio
import json
import logging
from typing import Optional

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError
from multidict import CIMultiDict, CIMultiDictProxy

from portal_shared.exceptions import ErrorCode, NetworkError
from portal_shared.interfaces import ITransport
from portal_shared.models import ApiResponse, RequestEnvelope

logger = logging.getLogger(__name__)


class HttpTransport(ITransport):
    """
    aiohttp based transport bound to one backend base URL.

    The session is created lazily on first use so the transport can be built
    outside a running event loop.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        user_agent: str = 'PortalApiClient/1.0'
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = ClientTimeout(total=timeout)
        self.user_agent = user_agent
        self._session: Optional[ClientSession] = None

        logger.info(f"HTTP transport initialized for server: {self.base_url}")

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> ClientSession:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={'User-Agent': self.user_agent}
            )
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def build_url(self, path: str) -> str:
        if path.startswith(('http://', 'https://')):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def send(self, envelope: RequestEnvelope) -> ApiResponse:
        """
        Send one request and read the whole response.

        Args:
            envelope: Request to send

        Returns:
            The response, whatever its status code

        Raises:
            NetworkError: On connection failures and timeouts
        """
        session = await self._ensure_session()
        url = self.build_url(envelope.path)

        data = envelope.body
        if isinstance(data, (dict, list)):
            data = json.dumps(data)

        logger.debug(f"{envelope.method} {url}")

        try:
            async with session.request(
                method=envelope.method,
                url=url,
                data=data,
                params=envelope.params,
                headers=dict(envelope.headers)
            ) as response:
                body = await response.read()
                return ApiResponse(
                    status=response.status,
                    headers=CIMultiDictProxy(CIMultiDict(response.headers)),
                    body=body,
                    url=str(response.url)
                )

        except asyncio.TimeoutError as e:
            logger.warning(f"Request timed out: {envelope.method} {url}")
            raise NetworkError(
                f"Request timed out after {self.timeout.total}s: {envelope.method} {envelope.path}",
                error_code=ErrorCode.NETWORK_TIMEOUT,
                context={'method': envelope.method, 'path': envelope.path},
                cause=e
            ) from e

        except (ClientError, OSError) as e:
            logger.warning(f"Network error on {envelope.method} {url}: {e}")
            raise NetworkError(
                f"Network request failed: {e}",
                error_code=ErrorCode.NETWORK_CONNECTION_FAILED,
                context={'method': envelope.method, 'path': envelope.path},
                cause=e
            ) from e
