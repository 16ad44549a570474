from __future__ import annotations

"""Bearer-token credentials consumed by pollers and executors.

Tokens are obtained by an external login flow. This module only checks
whether they are about to expire and exchanges a refresh token for a new
pair when needed.
"""

import base64
import json
import logging
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from .errors import TokenRefreshError

if TYPE_CHECKING:
    from .request import RequestClient

logger = logging.getLogger(__name__)

TOKEN_URL = "/SASLogon/oauth/token"
ACCESS_TOKEN_MARGIN = 60 * 60
REFRESH_TOKEN_MARGIN = 30


@dataclass
class AuthConfig:
    """Client credentials plus the current access/refresh token pair."""

    client: str
    secret: str
    access_token: str
    refresh_token: str


def _decode_expiry(token: str) -> int | None:
    """Read the `exp` claim of a JWT without verifying its signature."""
    parts = token.split(".") if token else []
    if len(parts) < 2:
        return None
    payload = parts[1]
    payload += "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("utf-8")).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    if not isinstance(exp, (int, float)):
        return None
    return int(exp)


def _expires_within(token: str, margin: int, now: float | None = None) -> bool:
    expiry = _decode_expiry(token)
    if expiry is None:
        return True
    current = time.time() if now is None else now
    return expiry - current <= margin


def is_access_token_expiring(token: str, now: float | None = None) -> bool:
    """Return whether an access token expires within the next hour."""
    return _expires_within(token, ACCESS_TOKEN_MARGIN, now)


def is_refresh_token_expiring(token: str, now: float | None = None) -> bool:
    """Return whether a refresh token expires within the next 30 seconds."""
    return _expires_within(token, REFRESH_TOKEN_MARGIN, now)


def has_token_expired(token: str, now: float | None = None) -> bool:
    return _expires_within(token, 0, now)


async def refresh_tokens(
    request_client: "RequestClient",
    client_id: str,
    client_secret: str,
    refresh_token: str,
) -> dict[str, str]:
    """Exchange a refresh token for a new access/refresh pair."""
    basic = base64.b64encode(f"{client_id}:{client_secret}".encode("utf-8")).decode("ascii")
    response = await request_client.post(
        TOKEN_URL,
        {"grant_type": "refresh_token", "refresh_token": refresh_token},
        None,
        "application/x-www-form-urlencoded",
        {"Authorization": f"Basic {basic}"},
    )
    if not isinstance(response.result, dict) or "access_token" not in response.result:
        raise TokenRefreshError("Error while refreshing tokens: unexpected token response")
    return response.result


async def get_tokens(request_client: "RequestClient", auth_config: AuthConfig) -> AuthConfig:
    """Return `auth_config`, refreshed when either token is close to expiry."""
    if not (
        is_access_token_expiring(auth_config.access_token)
        or is_refresh_token_expiring(auth_config.refresh_token)
    ):
        return auth_config

    if has_token_expired(auth_config.refresh_token):
        message = "Unable to obtain new access token. Your refresh token has expired."
        logger.error(message)
        raise TokenRefreshError(message)

    logger.info("Refreshing access and refresh tokens.")
    tokens = await refresh_tokens(
        request_client, auth_config.client, auth_config.secret, auth_config.refresh_token
    )
    return replace(
        auth_config,
        access_token=tokens["access_token"],
        refresh_token=tokens.get("refresh_token", auth_config.refresh_token),
    )
