"""
Stuck Provisioning Watchdog
===========================

Orders hold the "provisioning" marker as a time-bounded lease. If a
process dies mid-attempt the marker is never cleared, so leases older
than the configured window are reverted to failed, which makes the order
eligible again.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from .models import Order, utcnow
from .order_store import OrderStore, InfrastructureError

logger = logging.getLogger(__name__)

DEFAULT_LEASE = timedelta(minutes=10)


async def reset_stuck_orders(
    store: OrderStore,
    lease: timedelta = DEFAULT_LEASE,
    now: Optional[datetime] = None,
) -> List[Order]:
    """Fail every order whose provisioning lease has expired."""
    cutoff = (now or utcnow()) - lease
    reset = await store.reset_stuck(cutoff)
    for order in reset:
        logger.warning(
            f"Reset order {order.id} from stuck provisioning state",
            extra={"order_id": order.id, "provider": order.provider.value},
        )
    if reset:
        logger.info(f"Watchdog reset {len(reset)} stuck order(s)")
    return reset


async def run_watchdog(store: OrderStore, lease: timedelta, interval_seconds: float):
    """Sweep forever. Cancel the task to stop."""
    logger.info(f"Watchdog started (lease {lease}, every {interval_seconds}s)")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await reset_stuck_orders(store, lease)
        except InfrastructureError as e:
            logger.error(f"Watchdog sweep failed: {e}")
        except Exception as e:
            logger.error(f"Unexpected watchdog error: {e}", exc_info=True)
