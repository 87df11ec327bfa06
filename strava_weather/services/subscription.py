"""
Strava push subscription lifecycle.

Strava allows exactly one webhook subscription per application. On startup we
make sure it exists (production only by default); in development it can be torn
down again on shutdown so ngrok URLs don't linger.
"""
import logging
import secrets
from typing import Any, Dict, Optional

import httpx

from ..config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

VERIFY_TIMEOUT_S = 5.0


class SubscriptionError(Exception):
    pass


class SubscriptionManager:
    def __init__(
        self,
        config: Settings = default_settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.subscription_url = f"{config.STRAVA_API_BASE_URL.rstrip('/')}/push_subscriptions"
        self._transport = transport

    def _client(self, timeout: float = 10.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise SubscriptionError("Strava subscription request timed out") from e
        except httpx.RequestError as e:
            raise SubscriptionError(f"Strava connection error: {e}") from e

    def _credentials(self) -> Dict[str, str]:
        return {
            "client_id": self.config.STRAVA_CLIENT_ID,
            "client_secret": self.config.STRAVA_CLIENT_SECRET,
        }

    async def view_subscription(self) -> Optional[Dict[str, Any]]:
        """Return the current subscription or None. Raises SubscriptionError on API failure."""
        response = await self._request(
            "GET", self.subscription_url, params=self._credentials(), headers={"Accept": "application/json"}
        )

        if response.status_code != 200:
            logger.error(f"Failed to retrieve webhook subscription: {response.status_code} - {response.text[:200]}")
            raise SubscriptionError(f"Failed to view subscription: {response.status_code}")

        data = response.json()
        if isinstance(data, list) and data:
            subscription = data[0]
            logger.info(
                f"Found webhook subscription {subscription.get('id')} -> {subscription.get('callback_url')}"
            )
            return subscription

        logger.debug("No existing webhook subscription found")
        return None

    async def create_subscription(self, callback_url: str) -> Dict[str, Any]:
        existing = await self.view_subscription()
        if existing:
            logger.warning(f"Cannot create subscription, {existing.get('id')} already exists")
            raise SubscriptionError("Subscription already exists. Delete existing subscription first.")

        if not callback_url.startswith("https://"):
            raise SubscriptionError("Callback URL must use HTTPS protocol")

        logger.info(f"Creating webhook subscription for {callback_url}")
        response = await self._request(
            "POST",
            self.subscription_url,
            data={
                **self._credentials(),
                "callback_url": callback_url,
                "verify_token": self.config.STRAVA_WEBHOOK_VERIFY_TOKEN,
            },
        )

        if not response.is_success:
            message = response.text or str(response.status_code)
            try:
                message = response.json().get("message") or message
            except ValueError:
                pass
            logger.error(f"Failed to create webhook subscription: {response.status_code} - {message}")
            raise SubscriptionError(f"Failed to create subscription: {message}")

        subscription = response.json()
        logger.info(f"Webhook subscription {subscription.get('id')} created")
        return subscription

    async def delete_subscription(self, subscription_id: int) -> None:
        response = await self._request(
            "DELETE", f"{self.subscription_url}/{subscription_id}", params=self._credentials()
        )

        if not response.is_success:
            logger.error(f"Failed to delete subscription {subscription_id}: {response.status_code} - {response.text[:200]}")
            raise SubscriptionError(f"Failed to delete subscription: {response.status_code}")

        logger.info(f"Webhook subscription {subscription_id} deleted")

    async def verify_endpoint(self, callback_url: str) -> bool:
        """Run the verification handshake against our own callback URL."""
        challenge = f"test_challenge_{secrets.token_hex(8)}"
        params = {
            "hub.mode": "subscribe",
            "hub.verify_token": self.config.STRAVA_WEBHOOK_VERIFY_TOKEN,
            "hub.challenge": challenge,
        }
        try:
            async with self._client(timeout=VERIFY_TIMEOUT_S) as client:
                response = await client.get(callback_url, params=params, headers={"Accept": "application/json"})
            if response.status_code != 200:
                logger.warning(f"Webhook endpoint {callback_url} returned {response.status_code}")
                return False
            if response.json().get("hub.challenge") == challenge:
                logger.info(f"Webhook endpoint {callback_url} verified")
                return True
            logger.warning(f"Webhook endpoint {callback_url} returned an incorrect challenge")
            return False
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to verify webhook endpoint {callback_url}: {e}")
            return False

    def determine_callback_url(self) -> Optional[str]:
        if self.config.is_production:
            return self.config.webhook_callback_url

        ngrok_url = self.config.NGROK_URL
        if not ngrok_url:
            logger.warning(
                "Development mode: no NGROK_URL configured, webhooks disabled. "
                "Run `ngrok http 8000` and set NGROK_URL to the https URL."
            )
            return None
        if not ngrok_url.startswith("https://"):
            logger.error(f"Invalid NGROK_URL {ngrok_url}, expected https://<subdomain>.ngrok.io")
            return None
        return f"{ngrok_url.rstrip('/')}/api/strava/webhook"

    async def ensure_subscription(self) -> Optional[Dict[str, Any]]:
        """
        Make sure a subscription exists. Never raises: without a subscription the
        app still works, activities just have to be processed manually.
        """
        try:
            existing = await self.view_subscription()
            if existing:
                return existing

            callback_url = self.determine_callback_url()
            if not callback_url:
                return None

            if not await self.verify_endpoint(callback_url):
                logger.error(f"Webhook endpoint {callback_url} is not publicly accessible, skipping subscription")
                return None

            return await self.create_subscription(callback_url)
        except Exception as e:
            logger.error(f"Failed to setup webhook subscription, continuing without webhooks: {e}")
            return None

    async def cleanup_on_shutdown(self) -> None:
        if not (self.config.is_development or self.config.CLEANUP_WEBHOOK_ON_SHUTDOWN):
            logger.debug("Webhook cleanup skipped")
            return

        try:
            subscription = await self.view_subscription()
            if not subscription:
                return
            await self.delete_subscription(subscription["id"])
        except Exception as e:
            logger.error(f"Failed to cleanup webhook subscription: {e}")
