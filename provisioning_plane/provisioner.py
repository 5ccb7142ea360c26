"""
Single-Order Provisioner
========================

Drives one order through the provisioning state machine:

    eligible --(begin)--> provisioning --(success)--> active
                       \\--(failure)--> failed (retriable)

Every per-order error is caught, classified and recorded on the order.
Only store failures (InfrastructureError) escape to the caller.

Terminal writes carry the attempt number handed out by begin_provisioning.
If a later attempt has taken the order over in the meantime, the result
is logged and dropped instead of overwriting the newer one.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set

from .credentials import (
    generate_hostname,
    generate_password,
    login_username_for,
    target_os_for,
)
from .models import Order, format_ip_address, utcnow
from .notifications import Notifier, OUTCOME_SUCCESS, OUTCOME_FAILURE
from .order_store import (
    OrderStore,
    InfrastructureError,
    LeaseLost,
    ProvisioningConflict,
)
from .providers.base import (
    VPSProviderInterface,
    ServerSpec,
    ServerCredentials,
    ProviderError,
    PermanentProviderError,
    IncompleteCredentialsError,
)

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_FAILED = "failed"
STATUS_CONFLICT = "conflict"
STATUS_ALREADY_PROVISIONED = "already_provisioned"
STATUS_SUPERSEDED = "superseded"


class ProviderNotConfigured(InfrastructureError):
    """An order routes to a provider with no adapter configured."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Provider not configured: {provider}")


@dataclass
class ProvisioningOutcome:
    """Result of one provisioning attempt."""
    order_id: str
    status: str
    provider: str
    error: Optional[str] = None
    transient: bool = False
    ip_address: Optional[str] = None
    username: Optional[str] = None
    service_id: Optional[str] = None
    os: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status in (STATUS_ACTIVE, STATUS_ALREADY_PROVISIONED)

    @property
    def is_conflict(self) -> bool:
        return self.status == STATUS_CONFLICT

    @property
    def message(self) -> str:
        if self.status == STATUS_ACTIVE:
            return "Server provisioned successfully"
        if self.status == STATUS_ALREADY_PROVISIONED:
            return "Order is already provisioned"
        if self.status == STATUS_CONFLICT:
            return "Order is currently being provisioned. Please wait..."
        if self.status == STATUS_SUPERSEDED:
            return f"Attempt superseded: {self.error}"
        return f"Provisioning failed: {self.error}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "success": self.success,
            "status": self.status,
            "provider": self.provider,
            "error": self.error,
            "transient": self.transient,
            "ipAddress": self.ip_address,
            "username": self.username,
            "serviceId": self.service_id,
            "os": self.os,
        }


class OrderProvisioner:
    """
    Provisions a single order against its upstream provider.

    Args:
        store: Order state store
        providers: Adapter per provider id
        notifier: Receives the terminal outcome of each attempt
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        store: OrderStore,
        providers: Dict[str, VPSProviderInterface],
        notifier: Notifier,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.providers = providers
        self.notifier = notifier
        self.clock = clock
        self._running: Set[str] = set()

    def build_spec(self, order: Order) -> ServerSpec:
        """Translate order fields into what the adapter needs."""
        return ServerSpec(
            order_id=order.id,
            product_name=order.product_name,
            memory=order.memory,
            os=order.os or target_os_for(order.product_name),
            hostname=order.hostname or generate_hostname(order.product_name, order.memory),
            username=login_username_for(order.product_name),
            password=generate_password(),
            plan_id=order.plan_id,
        )

    async def provision(self, order_id: str, notify: bool = True, attempt: int = 1) -> ProvisioningOutcome:
        """
        Run one attempt for an order.

        Raises:
            OrderNotFound: Unknown order id
            InfrastructureError: Store unreachable or provider not configured
        """
        order = await self.store.get_order(order_id)
        if order.is_provisioned:
            return self._already_provisioned(order)
        return await self._attempt(order, notify=notify, attempt=attempt, create=True)

    async def recover(self, order_id: str, notify: bool = True) -> ProvisioningOutcome:
        """
        Complete an order from the server an earlier attempt created.

        Never creates a server. Orders without a recorded upstream service
        id fail without touching the store.
        """
        order = await self.store.get_order(order_id)
        if order.is_provisioned:
            return self._already_provisioned(order)
        if not order.provider_service_id:
            return ProvisioningOutcome(
                order_id=order_id,
                status=STATUS_FAILED,
                provider=order.provider.value,
                error="No upstream service recorded for this order",
            )
        return await self._attempt(order, notify=notify, attempt=1, create=False)

    def _already_provisioned(self, order: Order) -> ProvisioningOutcome:
        logger.info(
            f"Order {order.id} already provisioned, skipping",
            extra={"order_id": order.id, "provider": order.provider.value},
        )
        return ProvisioningOutcome(
            order_id=order.id,
            status=STATUS_ALREADY_PROVISIONED,
            provider=order.provider.value,
            ip_address=order.ip_address,
            username=order.username,
            service_id=order.provider_service_id,
            os=order.os,
        )

    async def _attempt(self, order: Order, notify: bool, attempt: int, create: bool) -> ProvisioningOutcome:
        order_id = order.id
        provider_id = order.provider.value
        log_extra = {"order_id": order_id, "provider": provider_id, "attempt": attempt}

        adapter = self.providers.get(provider_id)
        if adapter is None:
            raise ProviderNotConfigured(provider_id)

        # A lease reset frees the order in the store, but an attempt still
        # running in this process must not be joined by a second one
        if order_id in self._running:
            logger.info(f"Order {order_id} already in flight in this process, skipping", extra=log_extra)
            return ProvisioningOutcome(order_id=order_id, status=STATUS_CONFLICT, provider=provider_id)

        self._running.add(order_id)
        try:
            try:
                order = await self.store.begin_provisioning(order_id, self.clock())
            except ProvisioningConflict:
                logger.info(f"Order {order_id} already in flight, skipping", extra=log_extra)
                return ProvisioningOutcome(order_id=order_id, status=STATUS_CONFLICT, provider=provider_id)

            lease = order.provisioning_attempts
            spec = self.build_spec(order)

            try:
                credentials = await self._obtain_server(order, adapter, spec, attempt, create)
                missing = credentials.missing_fields()
                if missing:
                    raise IncompleteCredentialsError(
                        provider_id,
                        f"Provider returned incomplete credentials (missing: {', '.join(missing)}; "
                        f"service id: {credentials.service_id or 'none'})",
                        {"service_id": credentials.service_id},
                    )
                outcome = await self._complete(order, spec, credentials, lease)
            except ProviderError as e:
                outcome = await self._fail(
                    order_id, provider_id, str(e), e.transient, lease, e.details.get("service_id"),
                )
            except InfrastructureError:
                raise
            except Exception as e:
                logger.error(f"Unexpected error provisioning order {order_id}: {e}", exc_info=True, extra=log_extra)
                outcome = await self._fail(order_id, provider_id, f"[{provider_id}] {e}", False, lease)
        finally:
            self._running.discard(order_id)

        if notify:
            await self.notify_outcome(outcome)
        return outcome

    async def _obtain_server(self, order: Order, adapter: VPSProviderInterface, spec: ServerSpec,
                             attempt: int, create: bool) -> ServerCredentials:
        """Look up the server an earlier attempt created, or create a new one."""
        provider_id = order.provider.value
        log_extra = {"order_id": order.id, "provider": provider_id, "attempt": attempt}

        if order.provider_service_id:
            existing = await adapter.fetch_credentials(order.provider_service_id, spec)
            if existing is not None:
                logger.info(f"Order {order.id} resumed from service {order.provider_service_id}", extra=log_extra)
                return existing
            if not create:
                raise PermanentProviderError(
                    provider_id, f"Cannot look up service {order.provider_service_id} upstream",
                )

        if attempt > 1 or order.provider_service_id:
            # Upstream creation has no idempotency key
            logger.warning(
                f"Re-attempting order {order.id} (attempt {attempt}); "
                f"a previous attempt may have left an upstream server behind",
                extra=log_extra,
            )

        logger.info(f"Provisioning order {order.id} via {provider_id}", extra=log_extra)
        return await adapter.create_server(spec)

    async def _complete(self, order: Order, spec: ServerSpec,
                        credentials: ServerCredentials, lease: int) -> ProvisioningOutcome:
        os_name = credentials.os or spec.os
        ip_address = format_ip_address(credentials.ip_address, order.provider, os_name)
        stored = ServerCredentials(
            service_id=credentials.service_id,
            ip_address=ip_address,
            username=credentials.username,
            password=credentials.password,
            os=os_name,
        )
        try:
            completed = await self.store.complete_provisioning(
                order.id, stored, completed_at=self.clock(), hostname=spec.hostname, lease=lease,
            )
        except LeaseLost:
            return self._superseded(
                order.id, order.provider.value,
                f"Server {credentials.service_id} was created after a later attempt took over the order",
            )
        logger.info(
            f"Order {order.id} active at {completed.ip_address}",
            extra={"order_id": order.id, "provider": order.provider.value},
        )
        return ProvisioningOutcome(
            order_id=order.id,
            status=STATUS_ACTIVE,
            provider=order.provider.value,
            ip_address=completed.ip_address,
            username=completed.username,
            service_id=completed.provider_service_id,
            os=completed.os,
            details={"expiryDate": completed.expiry_date.isoformat() if completed.expiry_date else None},
        )

    async def _fail(self, order_id: str, provider_id: str, error: str, transient: bool,
                    lease: int, service_id: Optional[str] = None) -> ProvisioningOutcome:
        try:
            await self.store.fail_provisioning(order_id, error, lease=lease, service_id=service_id)
        except LeaseLost:
            return self._superseded(order_id, provider_id, error)
        logger.warning(
            f"Order {order_id} failed ({'transient' if transient else 'permanent'}): {error}",
            extra={"order_id": order_id, "provider": provider_id},
        )
        return ProvisioningOutcome(
            order_id=order_id,
            status=STATUS_FAILED,
            provider=provider_id,
            error=error,
            transient=transient,
        )

    def _superseded(self, order_id: str, provider_id: str, error: str) -> ProvisioningOutcome:
        logger.error(
            f"Discarding result for order {order_id}, a later attempt owns it: {error}",
            extra={"order_id": order_id, "provider": provider_id},
        )
        return ProvisioningOutcome(order_id=order_id, status=STATUS_SUPERSEDED, provider=provider_id, error=error)

    async def notify_outcome(self, outcome: ProvisioningOutcome):
        """Send the terminal outcome. Notifier failures are logged only."""
        if outcome.status not in (STATUS_ACTIVE, STATUS_FAILED):
            return
        kind = OUTCOME_SUCCESS if outcome.status == STATUS_ACTIVE else OUTCOME_FAILURE
        try:
            await self.notifier.notify(outcome.order_id, kind, outcome.to_dict())
        except Exception as e:
            logger.error(
                f"Failed to send {kind} notification for order {outcome.order_id}: {e}",
                extra={"order_id": outcome.order_id},
            )
