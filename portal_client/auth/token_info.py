"""
Read-only inspection of access tokens.

Tokens stay opaque to the refresh logic; these helpers only look inside
JWTs for diagnostics such as the CLI status output.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from jose import jwt, JWTError

from portal_shared.models import CredentialPair

logger = logging.getLogger(__name__)


def parse_token_expiration(token: str) -> Optional[datetime]:
    """
    Parse expiration time from a JWT without verifying it.

    Args:
        token: Access token string

    Returns:
        Expiration as an aware UTC datetime, or None if the token is not a
        JWT or carries no expiry claim
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.debug(f"Token is not a parseable JWT: {e}")
        return None

    timestamp = claims.get('exp') or claims.get('expires_at')
    if not isinstance(timestamp, (int, float)):
        return None

    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def describe_credentials(pair: Optional[CredentialPair], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Summarize stored credentials without exposing token values.

    Args:
        pair: Stored credential pair, if any
        now: Reference time (defaults to current UTC time)

    Returns:
        Dictionary suitable for status output
    """
    if pair is None:
        return {
            'authenticated': False,
            'has_refresh_token': False,
            'access_token_expires_at': None,
            'access_token_expired': None,
        }

    now = now or datetime.now(timezone.utc)
    expires_at = parse_token_expiration(pair.access_token)

    return {
        'authenticated': True,
        'has_refresh_token': bool(pair.refresh_token),
        'access_token_expires_at': expires_at.isoformat() if expires_at else None,
        'access_token_expired': (now >= expires_at) if expires_at else None,
    }
