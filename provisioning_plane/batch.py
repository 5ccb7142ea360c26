"""
Batch Provisioning Orchestrator
===============================

Provisions every currently-eligible order in one run, with a bounded
worker pool, retries for transient provider failures and a summary in
the shape the admin UI expects.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .order_store import OrderStore, InfrastructureError, OrderNotFound
from .provisioner import (
    OrderProvisioner,
    ProvisioningOutcome,
    STATUS_ACTIVE,
    STATUS_FAILED,
)
from .watchdog import reset_stuck_orders

logger = logging.getLogger(__name__)


@dataclass
class BatchSummary:
    successful: int = 0
    failed: int = 0
    retries: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.successful + self.failed

    @property
    def message(self) -> str:
        return f"{self.successful} successful, {self.failed} failed, {self.retries} retries"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "retries": self.retries,
            "skipped": self.skipped,
        }


@dataclass
class BatchResult:
    success: bool
    batch_id: str
    message: str
    summary: BatchSummary = field(default_factory=BatchSummary)
    results: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "batchId": self.batch_id,
            "summary": self.summary.to_dict(),
            "message": self.message,
            "results": self.results,
        }


class BatchOrchestrator:
    """
    Runs the single-order provisioner over all eligible orders.

    Per-order failures are recorded and counted, never raised. Only an
    InfrastructureError ends the run early, reported as success=False.
    Attempts already started keep running if the caller is cancelled.
    """

    def __init__(
        self,
        store: OrderStore,
        provisioner: OrderProvisioner,
        concurrency: int = 3,
        max_retries: int = 2,
        retry_backoff_seconds: float = 5.0,
        max_run_seconds: float = 540.0,
        stuck_lease: Optional[timedelta] = timedelta(minutes=10),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.provisioner = provisioner
        self.concurrency = max(1, concurrency)
        self.max_retries = max(0, max_retries)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.max_run_seconds = max_run_seconds
        self.stuck_lease = stuck_lease
        self.sleep = sleep

    @classmethod
    def from_config(cls, store: OrderStore, provisioner: OrderProvisioner, config) -> "BatchOrchestrator":
        return cls(
            store,
            provisioner,
            concurrency=config.batch.concurrency,
            max_retries=config.batch.max_retries,
            retry_backoff_seconds=config.batch.retry_backoff_seconds,
            max_run_seconds=config.batch.max_run_seconds,
            stuck_lease=timedelta(minutes=config.stuck_lease_minutes),
        )

    async def run(self, limit: Optional[int] = None) -> BatchResult:
        batch_id = uuid.uuid4().hex[:8]
        log_extra = {"batch_id": batch_id}

        try:
            if self.stuck_lease:
                await reset_stuck_orders(self.store, self.stuck_lease)
            orders = await self.store.load_eligible_orders(limit)
        except InfrastructureError as e:
            logger.error(f"Batch {batch_id} could not load orders: {e}", extra=log_extra)
            return BatchResult(success=False, batch_id=batch_id, message=f"Batch provisioning failed: {e}")

        summary = BatchSummary()
        if not orders:
            logger.info(f"Batch {batch_id}: no eligible orders", extra=log_extra)
            return BatchResult(
                success=True, batch_id=batch_id, summary=summary,
                message="No orders need provisioning",
            )

        logger.info(f"Batch {batch_id}: provisioning {len(orders)} order(s)", extra=log_extra)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_run_seconds
        semaphore = asyncio.Semaphore(self.concurrency)
        abort = asyncio.Event()

        async def worker(order_id: str) -> Dict[str, Any]:
            async with semaphore:
                if abort.is_set() or loop.time() >= deadline:
                    return {"orderId": order_id, "status": "skipped", "retries": 0}
                try:
                    outcome, retries = await self._provision_with_retries(order_id, batch_id)
                except InfrastructureError:
                    abort.set()
                    raise
                return dict(outcome.to_dict(), retries=retries)

        tasks = [asyncio.ensure_future(worker(o.id)) for o in orders]
        results = await asyncio.shield(asyncio.gather(*tasks, return_exceptions=True))

        infra_error = None
        entries = []
        for order, result in zip(orders, results):
            if isinstance(result, InfrastructureError):
                infra_error = infra_error or result
                continue
            if isinstance(result, OrderNotFound):
                summary.skipped += 1
                continue
            if isinstance(result, BaseException):
                logger.error(
                    f"Batch {batch_id}: unexpected error for order {order.id}: {result}",
                    exc_info=result, extra=log_extra,
                )
                summary.failed += 1
                entries.append({"orderId": order.id, "status": STATUS_FAILED, "error": str(result)})
                continue

            summary.retries += result.get("retries", 0)
            if result["status"] == STATUS_ACTIVE:
                summary.successful += 1
            elif result["status"] == STATUS_FAILED:
                summary.failed += 1
            else:
                summary.skipped += 1
            entries.append(result)

        if infra_error is not None:
            logger.error(f"Batch {batch_id} aborted: {infra_error}", extra=log_extra)
            return BatchResult(
                success=False, batch_id=batch_id, summary=summary, results=entries,
                message=f"Batch provisioning failed: {infra_error}",
            )

        logger.info(f"Batch {batch_id} finished: {summary.message}", extra=log_extra)
        return BatchResult(
            success=True, batch_id=batch_id, summary=summary, results=entries,
            message=summary.message,
        )

    async def _provision_with_retries(self, order_id: str, batch_id: str):
        """Provision one order, retrying transient failures. Notifies once at the end."""
        retries = 0
        while True:
            outcome: ProvisioningOutcome = await self.provisioner.provision(
                order_id, notify=False, attempt=retries + 1,
            )
            if outcome.status == STATUS_FAILED and outcome.transient and retries < self.max_retries:
                retries += 1
                logger.info(
                    f"Retrying order {order_id} after transient failure ({retries}/{self.max_retries})",
                    extra={"order_id": order_id, "batch_id": batch_id},
                )
                await self.sleep(self.retry_backoff_seconds * retries)
                continue
            break
        await self.provisioner.notify_outcome(outcome)
        return outcome, retries
