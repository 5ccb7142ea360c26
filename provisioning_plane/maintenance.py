"""
Order Maintenance
=================

One-off repair operations run by admins against existing orders.
"""

import logging
from typing import Any, Dict, List

from .models import (
    PENDING_IP_PLACEHOLDER,
    WINDOWS_RDP_PORT,
    Order,
    Provider,
    format_ip_address,
    needs_windows_port,
)
from .order_store import OrderStore
from .provisioner import OrderProvisioner

logger = logging.getLogger(__name__)


def _windows_port_candidates(orders: List[Order]) -> List[Order]:
    return [
        o for o in orders
        if needs_windows_port(o.provider, o.os)
        and o.ip_address
        and o.ip_address != PENDING_IP_PLACEHOLDER
    ]


async def fix_windows_ports(store: OrderStore, apply: bool = False) -> Dict[str, Any]:
    """
    Add the RDP port to Hostycare Windows orders recorded before the rule existed.

    With apply=False nothing is written and the result describes what would
    change.
    """
    candidates = _windows_port_candidates(await store.list_orders())
    suffix = f":{WINDOWS_RDP_PORT}"

    needs_update = [o for o in candidates if suffix not in o.ip_address]
    already_fixed = len(candidates) - len(needs_update)

    updates = []
    for order in needs_update:
        new_ip = format_ip_address(order.ip_address, order.provider, order.os)
        if apply:
            await store.update_order(order.id, {"ip_address": new_ip}, action="fix_windows_port")
            logger.info(
                f"Updated order {order.id}: {order.ip_address} -> {new_ip}",
                extra={"order_id": order.id, "provider": order.provider.value},
            )
        updates.append({
            "orderId": order.id,
            "productName": order.product_name,
            "oldIpAddress": order.ip_address,
            "newIpAddress": new_ip,
            "os": order.os,
            "provider": order.provider.value,
        })

    if apply:
        message = f"Fixed {len(updates)} Windows Hostycare orders"
    else:
        message = f"{len(updates)} Windows Hostycare orders need the RDP port"
    return {
        "success": True,
        "message": message,
        "totalFound": len(candidates),
        "updated": len(updates) if apply else 0,
        "needsUpdate": len(updates),
        "skipped": already_fixed,
        "updates": updates,
    }


def _sync_candidates(orders: List[Order], provider: Provider) -> List[Order]:
    return [
        o for o in orders
        if o.provider == provider
        and o.provider_service_id
        and not o.is_provisioned
        and not o.in_flight
    ]


async def sync_provider_credentials(
    store: OrderStore,
    provisioner: OrderProvisioner,
    provider: Provider,
    limit: int = 10,
) -> Dict[str, Any]:
    """
    Re-read upstream state for orders whose server exists but whose login
    never made it into the order.

    Each candidate goes through OrderProvisioner.recover, which looks the
    server up and never creates one.
    """
    candidates = _sync_candidates(await store.list_orders(), provider)[:limit]
    results = []
    recovered = 0
    for order in candidates:
        outcome = await provisioner.recover(order.id)
        if outcome.success:
            recovered += 1
        else:
            logger.info(
                f"Order {order.id} still has no usable credentials: {outcome.error}",
                extra={"order_id": order.id, "provider": provider.value},
            )
        results.append({
            "orderId": order.id,
            "serviceId": order.provider_service_id,
            "status": outcome.status,
            "gotCredentials": outcome.success,
            "error": outcome.error,
        })

    return {
        "success": True,
        "message": f"Synced {len(candidates)} {provider.value} orders, {recovered} recovered",
        "checked": len(candidates),
        "recovered": recovered,
        "results": results,
    }
