"""Outbound push gateways.

Browser subscriptions go through Web Push (VAPID, via pywebpush). Mobile
tokens go through the FCM HTTP v1 API (via httpx). Gateways report a
GatewayOutcome per subscription; they may also raise InvalidEndpoint or
TransientDeliveryFailure, which the dispatcher treats the same as the
corresponding outcome.
"""

from abc import ABC, abstractmethod
from typing import Optional
import asyncio
import json
import logging

import httpx
from pywebpush import WebPushException, webpush

from src.notifications.config import GatewayOutcome
from src.notifications.models import Subscription

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"

# FCM error codes meaning the token will never work again
FCM_INVALID_CODES = {"UNREGISTERED", "INVALID_ARGUMENT", "NOT_FOUND"}


def _short(endpoint: str) -> str:
    return endpoint[:50] + "..." if len(endpoint) > 50 else endpoint


class BrowserPushGateway(ABC):
    """Delivers to browser push subscriptions."""

    @abstractmethod
    async def send(self, subscription: Subscription, payload: dict) -> GatewayOutcome:
        """Deliver payload. Returns DELIVERED, TRANSIENT or GONE."""

    async def aclose(self) -> None:
        pass


class MobilePushGateway(ABC):
    """Delivers to mobile device tokens."""

    @abstractmethod
    async def send(self, subscription: Subscription, payload: dict) -> GatewayOutcome:
        """Deliver payload. Returns DELIVERED, TRANSIENT or INVALID."""

    async def aclose(self) -> None:
        pass


class WebPushGateway(BrowserPushGateway):
    """Web Push delivery using VAPID credentials.

    pywebpush is synchronous, so each call runs in a worker thread.
    """

    def __init__(
        self,
        vapid_private_key: str,
        vapid_subject: str,
        ttl_seconds: int = 3600,
        timeout: float = 10.0,
    ):
        if not vapid_private_key:
            raise ValueError("vapid_private_key is required for Web Push")
        # PEM keys supplied through env vars often carry literal \n
        self.vapid_private_key = vapid_private_key.replace("\\n", "\n")
        self.vapid_subject = vapid_subject
        self.ttl_seconds = ttl_seconds
        # Applied to the HTTP request inside the worker thread
        self.timeout = timeout

    async def send(self, subscription: Subscription, payload: dict) -> GatewayOutcome:
        subscription_info = {
            "endpoint": subscription.endpoint_or_token,
            "keys": {
                "p256dh": (subscription.keys or {}).get("p256dh"),
                "auth": (subscription.keys or {}).get("auth"),
            },
        }
        try:
            await asyncio.to_thread(
                webpush,
                subscription_info=subscription_info,
                data=json.dumps(payload),
                vapid_private_key=self.vapid_private_key,
                vapid_claims={"sub": self.vapid_subject},
                ttl=self.ttl_seconds,
                timeout=self.timeout,
            )
        except WebPushException as e:
            status_code = getattr(getattr(e, "response", None), "status_code", None)
            if status_code in (404, 410):
                logger.info("Browser endpoint gone (%s): %s", status_code, _short(subscription.endpoint_or_token))
                return GatewayOutcome.GONE
            logger.warning("Web Push failed (%s) for %s: %s", status_code, subscription.subscription_id, e)
            return GatewayOutcome.TRANSIENT
        return GatewayOutcome.DELIVERED


class FCMGateway(MobilePushGateway):
    """FCM HTTP v1 delivery for Android and iOS tokens."""

    def __init__(
        self,
        project_id: str,
        access_token: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        if not project_id:
            raise ValueError("project_id is required for FCM")
        self.project_id = project_id
        self.access_token = access_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def url(self) -> str:
        return FCM_SEND_URL.format(project_id=self.project_id)

    async def send(self, subscription: Subscription, payload: dict) -> GatewayOutcome:
        message = {"token": subscription.endpoint_or_token, **payload}
        try:
            response = await self._client.post(
                self.url,
                json={"message": message},
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        except httpx.HTTPError as e:
            logger.warning("FCM request failed for %s: %s", subscription.subscription_id, e)
            return GatewayOutcome.TRANSIENT

        if response.status_code == 200:
            return GatewayOutcome.DELIVERED

        error_codes = self._error_codes(response)
        if response.status_code == 404 or error_codes & FCM_INVALID_CODES:
            logger.info("FCM token rejected (%s %s) for %s", response.status_code, sorted(error_codes), subscription.subscription_id)
            return GatewayOutcome.INVALID

        logger.warning("FCM returned %s for %s", response.status_code, subscription.subscription_id)
        return GatewayOutcome.TRANSIENT

    @staticmethod
    def _error_codes(response: httpx.Response) -> set[str]:
        try:
            error = response.json().get("error", {})
        except ValueError:
            return set()
        codes = {error.get("status")} if error.get("status") else set()
        for detail in error.get("details", []):
            if detail.get("errorCode"):
                codes.add(detail["errorCode"])
        return codes

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class SimulatedBrowserGateway(BrowserPushGateway):
    """Records payloads instead of sending. Used when no VAPID key is configured."""

    def __init__(self):
        self.sent: list[tuple[str, dict]] = []

    async def send(self, subscription: Subscription, payload: dict) -> GatewayOutcome:
        self.sent.append((subscription.subscription_id, payload))
        logger.debug("Simulated browser push to %s", subscription.subscription_id)
        return GatewayOutcome.DELIVERED


class SimulatedMobileGateway(MobilePushGateway):
    """Records payloads instead of sending. Used when FCM is not configured."""

    def __init__(self):
        self.sent: list[tuple[str, dict]] = []

    async def send(self, subscription: Subscription, payload: dict) -> GatewayOutcome:
        self.sent.append((subscription.subscription_id, payload))
        logger.debug("Simulated mobile push to %s", subscription.subscription_id)
        return GatewayOutcome.DELIVERED
