"""
Strava API client

Thin async wrapper over the Strava REST API used by the enrichment pipeline,
the OAuth callback and account revocation. Tokens passed in and returned are
plaintext; encryption at rest is handled by the model layer.

HTTP failures are raised as StravaAPIError subclasses so callers can branch on
the kind of failure instead of parsing messages.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx

from ..config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class StravaAPIError(Exception):
    """Non-2xx response (or transport failure) from Strava."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StravaNotFoundError(StravaAPIError):
    # A freshly created activity can 404 for a few seconds after the webhook fires
    retryable = True


class StravaUnauthorizedError(StravaAPIError):
    pass


class StravaForbiddenError(StravaAPIError):
    pass


class StravaRateLimitError(StravaAPIError):
    pass


class TokenRefreshError(StravaAPIError):
    pass


@dataclass
class TokenData:
    access_token: str
    refresh_token: str
    expires_at: datetime  # naive UTC
    was_refreshed: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _from_unix(ts: int) -> datetime:
    return datetime.fromtimestamp(int(ts), timezone.utc).replace(tzinfo=None)


def raise_for_strava_status(response: httpx.Response, operation: str) -> None:
    if response.is_success:
        return

    status = response.status_code
    body = response.text[:500]
    logger.error(f"Strava {operation} failed: {status} - {body}")

    if status == 401:
        raise StravaUnauthorizedError("Strava access token expired or invalid", status)
    if status == 403:
        raise StravaForbiddenError("Not authorized to perform this action", status)
    if status == 404:
        raise StravaNotFoundError("Resource not found or not accessible", status)
    if status == 429:
        raise StravaRateLimitError("Rate limit exceeded", status)
    raise StravaAPIError(f"Strava API error ({status}): {body}", status)


class StravaClient:
    def __init__(
        self,
        config: Settings = default_settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.base_url = config.STRAVA_API_BASE_URL.rstrip("/")
        self.oauth_url = config.STRAVA_OAUTH_BASE_URL.rstrip("/")
        self.refresh_buffer = timedelta(seconds=config.TOKEN_REFRESH_BUFFER_S)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.STRAVA_API_TIMEOUT_S, transport=self._transport)

    async def _request(self, method: str, url: str, operation: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise StravaAPIError(f"Strava {operation} timed out") from e
        except httpx.RequestError as e:
            raise StravaAPIError(f"Strava connection error: {e}") from e
        raise_for_strava_status(response, operation)
        return response

    async def get_activity(self, activity_id: str, access_token: str) -> Dict[str, Any]:
        response = await self._request(
            "GET",
            f"{self.base_url}/activities/{activity_id}",
            "getActivity",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        activity = response.json()
        logger.info(f"Fetched activity {activity_id} ({activity.get('type')}: {activity.get('name')})")
        return activity

    async def update_activity(self, activity_id: str, access_token: str, update_data: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "PUT",
            f"{self.base_url}/activities/{activity_id}",
            "updateActivity",
            headers={"Authorization": f"Bearer {access_token}"},
            json=update_data,
        )
        logger.info(f"Updated activity {activity_id} fields={sorted(update_data)}")
        return response.json()

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """Authorization-code grant. Returns Strava's payload including the athlete."""
        response = await self._request(
            "POST",
            f"{self.oauth_url}/token",
            "exchangeCode",
            data={
                "client_id": self.config.STRAVA_CLIENT_ID,
                "client_secret": self.config.STRAVA_CLIENT_SECRET,
                "code": code,
                "grant_type": "authorization_code",
            },
        )
        return response.json()

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.oauth_url}/token",
                    data={
                        "client_id": self.config.STRAVA_CLIENT_ID,
                        "client_secret": self.config.STRAVA_CLIENT_SECRET,
                        "refresh_token": refresh_token,
                        "grant_type": "refresh_token",
                    },
                )
        except httpx.RequestError as e:
            raise TokenRefreshError(f"Token refresh failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"Token refresh failed: {response.status_code} - {response.text[:200]}")
            raise TokenRefreshError(
                f"Token refresh failed ({response.status_code}): {response.text[:200]}",
                response.status_code,
            )

        data = response.json()
        logger.info(f"Access token refreshed, expires at {_from_unix(data['expires_at']).isoformat()}")
        return data

    async def ensure_valid_token(self, access_token: str, refresh_token: str, expires_at: datetime) -> TokenData:
        """Refresh the token pair if it expires within the refresh buffer."""
        now = _utcnow()
        if expires_at <= now + self.refresh_buffer:
            logger.info(f"Access token expiring soon ({expires_at.isoformat()}), refreshing")
            data = await self.refresh_access_token(refresh_token)
            return TokenData(
                access_token=data["access_token"],
                refresh_token=data["refresh_token"],
                expires_at=_from_unix(data["expires_at"]),
                was_refreshed=True,
            )

        return TokenData(access_token, refresh_token, expires_at, was_refreshed=False)

    async def revoke_token(self, access_token: str) -> None:
        """Deauthorize at Strava. Failures are logged, never raised."""
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.oauth_url}/deauthorize",
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            if response.is_success:
                logger.info("Access token revoked successfully")
            else:
                logger.warning(f"Token revocation returned {response.status_code}")
        except httpx.RequestError as e:
            logger.warning(f"Failed to revoke access token: {e}")
