"""
Portal API Client.

Authenticated HTTP client for the portal backend with transparent,
single-flight access token refresh.
"""

from portal_client.api_client import AuthenticatedClient
from portal_client.auth_api import AuthApi
from portal_client.config import ClientConfiguration

__all__ = ['AuthenticatedClient', 'AuthApi', 'ClientConfiguration']
__version__ = '1.0.0'
