"""Pytest configuration and shared fixtures."""

import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.notifications.config import GatewayOutcome, NotificationConfig  # noqa: E402
from src.notifications.gateways import BrowserPushGateway, MobilePushGateway  # noqa: E402


class _RecordingGateway:
    """Gateway double: returns scripted outcomes per endpoint and records calls.

    An outcome may be a GatewayOutcome, an exception instance to raise, or a
    list of either consumed one call at a time.
    """

    def __init__(self, default: GatewayOutcome = GatewayOutcome.DELIVERED, delay: float = 0.0):
        self.default = default
        self.delay = delay
        self.outcomes: dict = {}
        self.calls: list = []
        self.in_flight = 0
        self.max_in_flight = 0

    def script(self, endpoint: str, *outcomes) -> None:
        self.outcomes[endpoint] = list(outcomes)

    def calls_for(self, endpoint: str) -> list:
        return [payload for sub, payload in self.calls if sub.endpoint_or_token == endpoint]

    async def send(self, subscription, payload):
        self.calls.append((subscription, payload))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            scripted = self.outcomes.get(subscription.endpoint_or_token)
            outcome = scripted.pop(0) if scripted else self.default
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1


class FakeBrowserGateway(_RecordingGateway, BrowserPushGateway):
    pass


class FakeMobileGateway(_RecordingGateway, MobilePushGateway):
    pass


BROWSER_KEYS = {"p256dh": "BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA", "auth": "tBHItJI5svbpez7KI4CCXg"}


@pytest.fixture(autouse=True)
def reset_settings():
    """Clear cached settings before and after each test."""
    from src.settings import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def now():
    """A fixed Monday noon UTC."""
    return datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def config():
    return NotificationConfig(send_timeout_seconds=0.5)


@pytest.fixture
def browser_gateway():
    return FakeBrowserGateway()


@pytest.fixture
def mobile_gateway():
    return FakeMobileGateway()


@pytest.fixture
def browser_keys():
    return dict(BROWSER_KEYS)


@pytest.fixture
def service(config, browser_gateway, mobile_gateway):
    from src.notifications.service import NotificationService

    return NotificationService(
        config=config,
        browser_gateway=browser_gateway,
        mobile_gateway=mobile_gateway,
    )
