"""
Delivery collaborator: hands a rendered message to the external draft/send
service and reports back a reference for the message record.
"""
import uuid
from dataclasses import dataclass
from typing import Optional

import httpx

from comms_scheduler.config import get_settings
from comms_scheduler.services.gateway import get_gateway
from comms_scheduler.utils.logger import get_logger

logger = get_logger("delivery")


class DeliveryError(Exception):
    """The message could not be handed to the delivery service."""


@dataclass
class DeliveryResult:
    success: bool
    reference: Optional[str] = None


class DeliveryClient:
    async def send(self, address: str, subject: str, body: str, channel: str) -> DeliveryResult:
        raise NotImplementedError


class HttpDeliveryClient(DeliveryClient):
    """POSTs messages to the configured send service."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 20.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    async def _post(self, payload: dict) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(f"{self.base_url}/messages", json=payload, headers=headers)
        if response.status_code >= 400:
            raise DeliveryError(f"Delivery service returned {response.status_code}: {response.text[:200]}")
        return response.json() if response.content else {}

    async def send(self, address: str, subject: str, body: str, channel: str) -> DeliveryResult:
        payload = {"to": address, "subject": subject, "body": body, "channel": channel}
        try:
            data = await get_gateway().execute("delivery", self._post, payload)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Delivery request failed: {exc}") from exc
        reference = data.get("id") or data.get("reference")
        return DeliveryResult(success=True, reference=str(reference) if reference else None)


class LoggingDeliveryClient(DeliveryClient):
    """Test-mode client: records the send in the log and succeeds."""

    async def send(self, address: str, subject: str, body: str, channel: str) -> DeliveryResult:
        reference = f"test-{uuid.uuid4()}"
        logger.info(f"delivery.test_mode channel={channel} to={address} subject={subject[:80]!r}")
        return DeliveryResult(success=True, reference=reference)


class UnconfiguredDeliveryClient(DeliveryClient):
    async def send(self, address: str, subject: str, body: str, channel: str) -> DeliveryResult:
        raise DeliveryError("Delivery service is not configured (DELIVERY_SERVICE_URL)")


def get_delivery_client() -> DeliveryClient:
    settings = get_settings()
    if settings.delivery_test_mode:
        return LoggingDeliveryClient()
    if not settings.delivery_service_url:
        return UnconfiguredDeliveryClient()
    return HttpDeliveryClient(
        settings.delivery_service_url,
        settings.delivery_api_key,
        settings.delivery_timeout_seconds,
    )
