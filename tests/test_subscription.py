"""Tests for the webhook subscription lifecycle against a fake Strava push_subscriptions API."""
import httpx
import pytest

from strava_weather.config import Settings
from strava_weather.services.subscription import SubscriptionError, SubscriptionManager

EXISTING = {"id": 7, "callback_url": "https://app.example.com/api/strava/webhook"}


class FakeStrava:
    def __init__(self, subscriptions=None, echo_challenge=True):
        self.subscriptions = list(subscriptions or [])
        self.echo_challenge = echo_challenge
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/api/strava/webhook"):
            if not self.echo_challenge:
                return httpx.Response(403, json={"error": "Verification failed"})
            return httpx.Response(200, json={"hub.challenge": request.url.params["hub.challenge"]})
        if path == "/api/v3/push_subscriptions" and request.method == "GET":
            return httpx.Response(200, json=self.subscriptions)
        if path == "/api/v3/push_subscriptions" and request.method == "POST":
            created = {"id": 99, "callback_url": "https://app.example.com/api/strava/webhook"}
            self.subscriptions.append(created)
            return httpx.Response(201, json=created)
        if path.startswith("/api/v3/push_subscriptions/") and request.method == "DELETE":
            self.subscriptions = []
            return httpx.Response(204)
        return httpx.Response(404)

    def methods(self):
        return [(r.method, r.url.path) for r in self.requests]


def make_manager(fake, **config):
    settings = Settings(
        ENVIRONMENT=config.pop("ENVIRONMENT", "production"),
        APP_URL="https://app.example.com",
        STRAVA_CLIENT_ID="12345",
        STRAVA_CLIENT_SECRET="s3cret",
        STRAVA_WEBHOOK_VERIFY_TOKEN="verify-me",
        **config,
    )
    return SubscriptionManager(settings, transport=httpx.MockTransport(fake))


@pytest.mark.asyncio
async def test_view_returns_first_subscription():
    assert await make_manager(FakeStrava([EXISTING])).view_subscription() == EXISTING
    assert await make_manager(FakeStrava()).view_subscription() is None


@pytest.mark.asyncio
async def test_view_failure_raises():
    manager = make_manager(lambda request: httpx.Response(500, text="oops"))

    with pytest.raises(SubscriptionError):
        await manager.view_subscription()


@pytest.mark.asyncio
async def test_network_errors_raise_subscription_error():
    def unreachable(request):
        raise httpx.ConnectError("no route", request=request)

    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(SubscriptionError, match="connection error"):
        await make_manager(unreachable).view_subscription()
    with pytest.raises(SubscriptionError, match="timed out"):
        await make_manager(slow).delete_subscription(7)


@pytest.mark.asyncio
async def test_create_refuses_when_one_exists():
    with pytest.raises(SubscriptionError, match="already exists"):
        await make_manager(FakeStrava([EXISTING])).create_subscription("https://app.example.com/api/strava/webhook")


@pytest.mark.asyncio
async def test_create_requires_https():
    with pytest.raises(SubscriptionError, match="HTTPS"):
        await make_manager(FakeStrava()).create_subscription("http://app.example.com/api/strava/webhook")


@pytest.mark.asyncio
async def test_ensure_creates_after_verifying_endpoint():
    fake = FakeStrava()

    subscription = await make_manager(fake).ensure_subscription()

    assert subscription["id"] == 99
    assert ("GET", "/api/strava/webhook") in fake.methods()
    assert fake.methods()[-1] == ("POST", "/api/v3/push_subscriptions")


@pytest.mark.asyncio
async def test_ensure_keeps_existing_subscription():
    fake = FakeStrava([EXISTING])

    assert await make_manager(fake).ensure_subscription() == EXISTING
    assert fake.methods() == [("GET", "/api/v3/push_subscriptions")]


@pytest.mark.asyncio
async def test_ensure_skips_unreachable_endpoint():
    fake = FakeStrava(echo_challenge=False)

    assert await make_manager(fake).ensure_subscription() is None
    assert ("POST", "/api/v3/push_subscriptions") not in fake.methods()


@pytest.mark.asyncio
async def test_ensure_swallows_network_errors():
    def handler(request):
        raise httpx.ConnectError("no route", request=request)

    assert await make_manager(handler).ensure_subscription() is None


@pytest.mark.asyncio
async def test_verify_endpoint_checks_challenge():
    def wrong_challenge(request):
        return httpx.Response(200, json={"hub.challenge": "something-else"})

    manager = make_manager(wrong_challenge)

    assert await manager.verify_endpoint("https://app.example.com/api/strava/webhook") is False


def test_callback_url_by_environment():
    assert make_manager(FakeStrava()).determine_callback_url() == "https://app.example.com/api/strava/webhook"

    dev = make_manager(FakeStrava(), ENVIRONMENT="development", NGROK_URL="https://abc.ngrok.io/")
    assert dev.determine_callback_url() == "https://abc.ngrok.io/api/strava/webhook"

    assert make_manager(FakeStrava(), ENVIRONMENT="development").determine_callback_url() is None
    insecure = make_manager(FakeStrava(), ENVIRONMENT="development", NGROK_URL="http://abc.ngrok.io")
    assert insecure.determine_callback_url() is None


@pytest.mark.asyncio
async def test_cleanup_only_in_development():
    prod = FakeStrava([EXISTING])
    await make_manager(prod).cleanup_on_shutdown()
    assert prod.requests == []

    dev = FakeStrava([EXISTING])
    await make_manager(dev, ENVIRONMENT="development").cleanup_on_shutdown()
    assert dev.methods()[-1] == ("DELETE", "/api/v3/push_subscriptions/7")
