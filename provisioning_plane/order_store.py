"""
Order State Store
=================

Persistence contract for provisioning state, and an in-memory
implementation used in development and tests.

The store owns the only concurrency guarantee the plane relies on:
begin_provisioning checks and sets the in-flight marker atomically, so
two callers can never both start provisioning the same order.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .models import (
    Order,
    OrderStatus,
    ProvisioningStatus,
    SERVICE_TERM,
    normalize_provider,
    utcnow,
)
from .providers.base import ServerCredentials

logger = logging.getLogger(__name__)

STUCK_RESET_MESSAGE = "Reset from stuck provisioning state"

# Fields an admin may overwrite directly
EDITABLE_FIELDS = (
    "ip_address",
    "username",
    "password",
    "os",
    "status",
    "provider",
    "provisioning_status",
)


class InfrastructureError(Exception):
    """The store itself is unreachable or failed."""
    pass


class OrderNotFound(Exception):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class ProvisioningConflict(Exception):
    """Another attempt for this order is already in flight."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} is already being provisioned")


class LeaseLost(Exception):
    """A later attempt has taken over the order since this attempt began."""

    def __init__(self, order_id: str, lease: int):
        self.order_id = order_id
        self.lease = lease
        super().__init__(f"Attempt {lease} for order {order_id} no longer holds the provisioning lease")


class OrderStore(ABC):
    """Abstract order state store."""

    @abstractmethod
    async def get_order(self, order_id: str) -> Order:
        """Raises OrderNotFound."""
        pass

    @abstractmethod
    async def list_orders(self) -> List[Order]:
        """All orders, newest first."""
        pass

    @abstractmethod
    async def add_order(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def load_eligible_orders(self, limit: Optional[int] = None) -> List[Order]:
        """Orders that need provisioning and are not in flight, oldest first."""
        pass

    @abstractmethod
    async def begin_provisioning(self, order_id: str, started_at: Optional[datetime] = None) -> Order:
        """
        Mark an order as in flight.

        Raises:
            ProvisioningConflict: If the order is already provisioning
            OrderNotFound: If the order does not exist
        """
        pass

    @abstractmethod
    async def complete_provisioning(
        self,
        order_id: str,
        credentials: ServerCredentials,
        completed_at: Optional[datetime] = None,
        hostname: Optional[str] = None,
        lease: Optional[int] = None,
    ) -> Order:
        """
        Record a successful attempt.

        When lease is given the write only lands if no later attempt has
        begun since (provisioning_attempts still equals lease) and the
        order is still provisioning or was only reset to failed.

        Raises:
            LeaseLost: If the lease is stale
        """
        pass

    @abstractmethod
    async def fail_provisioning(self, order_id: str, error: str, lease: Optional[int] = None,
                                service_id: Optional[str] = None) -> Order:
        """Record a failed attempt. Same lease rule as complete_provisioning."""
        pass

    @abstractmethod
    async def update_order(self, order_id: str, changes: Dict[str, Any],
                           action: str = "manual_update") -> Order:
        """Direct admin overwrite. Ignores the in-flight marker."""
        pass

    @abstractmethod
    async def reset_stuck(self, older_than: datetime) -> List[Order]:
        """Fail orders whose provisioning started before older_than."""
        pass

    async def health(self) -> Dict[str, Any]:
        return {"status": "healthy", "connected": True}

    async def close(self):
        pass


def clean_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Keep editable fields that were actually supplied, coercing enum values."""
    cleaned = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS and v is not None}
    if "status" in cleaned:
        cleaned["status"] = OrderStatus(cleaned["status"])
    if "provisioning_status" in cleaned:
        cleaned["provisioning_status"] = ProvisioningStatus(cleaned["provisioning_status"])
    if "provider" in cleaned:
        cleaned["provider"] = normalize_provider(cleaned["provider"])
    return cleaned


def lease_held(order: Order, lease: Optional[int]) -> bool:
    if lease is None:
        return True
    return order.provisioning_attempts == lease and order.provisioning_status in (
        ProvisioningStatus.PROVISIONING,
        ProvisioningStatus.FAILED,
    )


def eligible(orders: Iterable[Order], limit: Optional[int] = None) -> List[Order]:
    selected = sorted(
        (o for o in orders if o.needs_provisioning and not o.in_flight),
        key=lambda o: o.created_at,
    )
    return selected[:limit] if limit else selected


class InMemoryOrderStore(OrderStore):
    """
    Dict-backed store guarded by an asyncio.Lock.

    Orders are copied on the way in and out so callers never hold a
    reference to stored state.
    """

    def __init__(self, orders: Optional[Iterable[Order]] = None):
        self._orders: Dict[str, Order] = {}
        self._lock = asyncio.Lock()
        for order in orders or []:
            self._orders[order.id] = copy.deepcopy(order)

    def _require(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def _touch(self, order: Order, action: str, now: Optional[datetime] = None):
        now = now or utcnow()
        order.last_action = action
        order.last_action_time = now
        order.updated_at = now

    async def get_order(self, order_id: str) -> Order:
        async with self._lock:
            return copy.deepcopy(self._require(order_id))

    async def list_orders(self) -> List[Order]:
        async with self._lock:
            orders = sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True)
            return [copy.deepcopy(o) for o in orders]

    async def add_order(self, order: Order) -> Order:
        async with self._lock:
            self._orders[order.id] = copy.deepcopy(order)
            return copy.deepcopy(order)

    async def load_eligible_orders(self, limit: Optional[int] = None) -> List[Order]:
        async with self._lock:
            return [copy.deepcopy(o) for o in eligible(self._orders.values(), limit)]

    async def begin_provisioning(self, order_id: str, started_at: Optional[datetime] = None) -> Order:
        async with self._lock:
            order = self._require(order_id)
            if order.in_flight:
                raise ProvisioningConflict(order_id)
            started_at = started_at or utcnow()
            order.provisioning_status = ProvisioningStatus.PROVISIONING
            order.auto_provisioned = True
            order.provisioning_error = None
            order.provisioning_started_at = started_at
            order.provisioning_attempts += 1
            self._touch(order, "auto_provision_started", started_at)
            return copy.deepcopy(order)

    async def complete_provisioning(
        self,
        order_id: str,
        credentials: ServerCredentials,
        completed_at: Optional[datetime] = None,
        hostname: Optional[str] = None,
        lease: Optional[int] = None,
    ) -> Order:
        async with self._lock:
            order = self._require(order_id)
            if not lease_held(order, lease):
                raise LeaseLost(order_id, lease)
            completed_at = completed_at or utcnow()
            order.status = OrderStatus.ACTIVE
            order.provisioning_status = ProvisioningStatus.ACTIVE
            order.provisioning_error = None
            order.ip_address = credentials.ip_address
            order.username = credentials.username
            order.password = credentials.password
            if credentials.os:
                order.os = credentials.os
            if hostname:
                order.hostname = hostname
            if not order.provider_service_id:
                order.provider_service_id = credentials.service_id
            order.expiry_date = completed_at + SERVICE_TERM
            self._touch(order, "auto_provision_completed", completed_at)
            return copy.deepcopy(order)

    async def fail_provisioning(self, order_id: str, error: str, lease: Optional[int] = None,
                                service_id: Optional[str] = None) -> Order:
        async with self._lock:
            order = self._require(order_id)
            if not lease_held(order, lease):
                raise LeaseLost(order_id, lease)
            if service_id and not order.provider_service_id:
                order.provider_service_id = service_id
            order.provisioning_status = ProvisioningStatus.FAILED
            order.provisioning_error = error
            self._touch(order, "auto_provision_failed")
            return copy.deepcopy(order)

    async def update_order(self, order_id: str, changes: Dict[str, Any],
                           action: str = "manual_update") -> Order:
        async with self._lock:
            order = self._require(order_id)
            for key, value in clean_changes(changes).items():
                setattr(order, key, value)
            self._touch(order, action)
            return copy.deepcopy(order)

    async def reset_stuck(self, older_than: datetime) -> List[Order]:
        async with self._lock:
            reset = []
            for order in self._orders.values():
                if not order.in_flight:
                    continue
                started = order.provisioning_started_at or order.updated_at
                if started < older_than:
                    order.provisioning_status = ProvisioningStatus.FAILED
                    order.provisioning_error = STUCK_RESET_MESSAGE
                    self._touch(order, "reset_stuck")
                    reset.append(copy.deepcopy(order))
            return reset

    async def health(self) -> Dict[str, Any]:
        return {"status": "healthy", "connected": True, "backend": "memory", "orders_total": len(self._orders)}
