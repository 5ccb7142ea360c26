"""
Provisioning Notifications
==========================

Dispatch of provisioning outcomes to interested parties. Delivery is
best-effort: the provisioner logs notifier failures and carries on.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"


class Notifier(ABC):
    """Receives one call per finished provisioning attempt."""

    @abstractmethod
    async def notify(self, order_id: str, outcome: str, details: Dict[str, Any]) -> None:
        pass

    async def aclose(self):
        pass


class LogNotifier(Notifier):
    """Writes outcomes to the application log."""

    async def notify(self, order_id: str, outcome: str, details: Dict[str, Any]) -> None:
        if outcome == OUTCOME_SUCCESS:
            logger.info(
                f"Order {order_id} provisioned at {details.get('ipAddress')}",
                extra={"order_id": order_id, "provider": details.get("provider")},
            )
        else:
            logger.warning(
                f"Order {order_id} provisioning failed: {details.get('error')}",
                extra={"order_id": order_id, "provider": details.get("provider")},
            )


class WebhookNotifier(Notifier):
    """POSTs a JSON event to a configured URL."""

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def notify(self, order_id: str, outcome: str, details: Dict[str, Any]) -> None:
        payload = {
            "event": f"order.provisioning.{outcome}",
            "orderId": order_id,
            "outcome": outcome,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            # Passwords never leave the plane through notifications
            "details": {k: v for k, v in details.items() if k != "password"},
        }
        response = await self.client.post(self.url, json=payload)
        response.raise_for_status()
        logger.debug(f"Webhook notified for order {order_id}: {outcome}")

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def create_notifier(webhook_url: str = "") -> Notifier:
    if webhook_url:
        return WebhookNotifier(webhook_url)
    return LogNotifier()
