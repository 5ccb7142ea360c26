"""
Provisioning Plane API
======================

FastAPI application exposing the admin provisioning endpoints:
order listing, single and batch provisioning, manual edits and
maintenance operations.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .auth import admin_key_dependency
from .batch import BatchOrchestrator
from .config import ProvisioningConfig
from .database import PostgresOrderStore, init_database
from .maintenance import fix_windows_ports, sync_provider_credentials
from .models import OrderStatus, Provider, ProvisioningStatus
from .notifications import Notifier, create_notifier
from .order_store import InMemoryOrderStore, InfrastructureError, OrderNotFound, OrderStore
from .provisioner import OrderProvisioner, ProviderNotConfigured, STATUS_ALREADY_PROVISIONED
from .providers import ProviderError, ProviderRegistry, VPSProviderInterface
from .watchdog import reset_stuck_orders, run_watchdog

logger = logging.getLogger(__name__)


# =========================================
# REQUEST MODELS
# =========================================

class ProvisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: Optional[str] = Field(None, alias="orderId")
    order_ids: Optional[List[str]] = Field(None, alias="orderIds")


class StatusSyncRequest(BaseModel):
    limit: int = Field(10, ge=1, le=50)


class OrderUpdateRequest(BaseModel):
    """Manual admin edit. Omitted fields are left untouched."""
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")
    ip_address: Optional[str] = Field(None, alias="ipAddress")
    username: Optional[str] = None
    password: Optional[str] = None
    os: Optional[str] = None
    status: Optional[str] = None
    provider: Optional[str] = None
    provisioning_status: Optional[str] = Field(None, alias="provisioningStatus")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v is None:
            return v
        v = v.lower()
        valid = {s.value for s in OrderStatus}
        if v not in valid:
            raise ValueError(f"Status must be one of: {', '.join(sorted(valid))}")
        return v

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v):
        if v is None:
            return v
        v = v.lower()
        valid = {p.value for p in Provider}
        if v not in valid:
            raise ValueError(f"Provider must be one of: {', '.join(sorted(valid))}")
        return v

    @field_validator("provisioning_status")
    @classmethod
    def validate_provisioning_status(cls, v):
        if v is None:
            return v
        valid = {s.value for s in ProvisioningStatus}
        if v not in valid:
            raise ValueError(f"Provisioning status must be one of: {', '.join(sorted(valid))}")
        return v


# =========================================
# APP FACTORY
# =========================================

def build_store(config: ProvisioningConfig) -> OrderStore:
    if config.database.is_configured:
        return PostgresOrderStore(
            config.database.url,
            min_size=config.database.min_pool_size,
            max_size=config.database.max_pool_size,
        )
    logger.warning("DATABASE_URL not set, orders are kept in memory only")
    return InMemoryOrderStore()


def create_app(
    config: ProvisioningConfig,
    store: Optional[OrderStore] = None,
    providers: Optional[Dict[str, VPSProviderInterface]] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    """Create the FastAPI provisioning application."""
    store = store if store is not None else build_store(config)
    providers = providers if providers is not None else ProviderRegistry.from_config(config)
    notifier = notifier if notifier is not None else create_notifier(config.notify_webhook_url)

    provisioner = OrderProvisioner(store, providers, notifier)
    batch = BatchOrchestrator.from_config(store, provisioner, config)
    stuck_lease = timedelta(minutes=config.stuck_lease_minutes)

    limiter = Limiter(key_func=get_remote_address)

    app = FastAPI(
        title="VPS Provisioning Plane",
        description="Order provisioning against upstream VPS providers",
        version="1.0.0",
    )
    app.state.limiter = limiter
    app.state.store = store
    app.state.providers = providers
    app.state.provisioner = provisioner
    app.state.batch = batch
    app.state.watchdog_task = None
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    require_admin = admin_key_dependency(config.admin_api_keys)

    # ----------------------------------------
    # ERROR HANDLERS
    # ----------------------------------------

    @app.exception_handler(OrderNotFound)
    async def order_not_found_handler(request: Request, exc: OrderNotFound):
        return JSONResponse(status_code=404, content={"success": False, "message": "Order not found"})

    @app.exception_handler(InfrastructureError)
    async def infrastructure_error_handler(request: Request, exc: InfrastructureError):
        logger.error(f"Infrastructure failure on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Service unavailable", "error": str(exc)},
        )

    # ----------------------------------------
    # LIFECYCLE
    # ----------------------------------------

    @app.on_event("startup")
    async def startup_event():
        if isinstance(store, PostgresOrderStore):
            try:
                await init_database(store.database_url, store.min_size, store.max_size)
            except InfrastructureError as e:
                logger.error(f"Failed to initialize database: {e}")
        if config.watchdog_interval_seconds > 0:
            app.state.watchdog_task = asyncio.create_task(
                run_watchdog(store, stuck_lease, config.watchdog_interval_seconds)
            )
        logger.info(f"Provisioning plane started (providers: {', '.join(providers) or 'none'})")

    @app.on_event("shutdown")
    async def shutdown_event():
        task = app.state.watchdog_task
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            app.state.watchdog_task = None
        for adapter in providers.values():
            await adapter.aclose()
        await notifier.aclose()
        await store.close()

    # ----------------------------------------
    # HEALTH
    # ----------------------------------------

    @app.get("/api/health")
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "providers": list(providers.keys()),
            "database": await store.health(),
            "webhook_configured": bool(config.notify_webhook_url),
            "admin_auth_configured": bool(config.admin_api_keys),
            "watchdog_running": app.state.watchdog_task is not None,
        }

    # ----------------------------------------
    # ORDERS
    # ----------------------------------------

    @app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
    async def list_orders():
        return [order.to_dict() for order in await store.list_orders()]

    @app.post("/api/orders/provision", dependencies=[Depends(require_admin)])
    async def provision_order(body: ProvisionRequest):
        if body.order_id:
            outcome = await provisioner.provision(body.order_id)
            if outcome.is_conflict:
                return JSONResponse(
                    status_code=409,
                    content={"success": False, "message": outcome.message, "inProgress": True},
                )
            if outcome.status == STATUS_ALREADY_PROVISIONED:
                return {
                    "success": True,
                    "message": "Order already provisioned",
                    "alreadyProvisioned": True,
                    "details": {
                        "ipAddress": outcome.ip_address,
                        "username": outcome.username,
                        "provider": outcome.provider,
                    },
                }
            return {"success": outcome.success, "message": outcome.message, "details": outcome.to_dict()}

        if body.order_ids:
            results = []
            for order_id in body.order_ids:
                try:
                    outcome = await provisioner.provision(order_id)
                    results.append(outcome.to_dict())
                except OrderNotFound:
                    results.append({"orderId": order_id, "success": False, "error": "Order not found"})
                except ProviderNotConfigured as e:
                    results.append({"orderId": order_id, "success": False, "error": str(e)})
                except InfrastructureError as e:
                    logger.error(f"Bulk provisioning stopped at order {order_id}: {e}")
                    return JSONResponse(
                        status_code=500,
                        content={
                            "success": False,
                            "message": "Service unavailable",
                            "error": str(e),
                            "results": results,
                        },
                    )
            return {"success": True, "message": "Bulk provisioning completed", "results": results}

        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Either orderId or orderIds array is required"},
        )

    @app.get("/api/orders/provision", dependencies=[Depends(require_admin)])
    async def get_provision_status(orderId: Optional[str] = None):
        if not orderId:
            return JSONResponse(status_code=400, content={"success": False, "message": "orderId is required"})
        order = await store.get_order(orderId)
        return {
            "orderId": order.id,
            "provider": order.provider.value,
            "provisioningStatus": order.provisioning_status.value if order.provisioning_status else None,
            "provisioningError": order.provisioning_error,
            f"{order.provider.value}ServiceId": order.provider_service_id,
            "autoProvisioned": order.auto_provisioned,
        }

    @app.post("/api/admin/batch-provision", dependencies=[Depends(require_admin)])
    @limiter.limit("10/minute")
    async def batch_provision(request: Request):
        result = await batch.run(limit=config.batch.order_limit)
        if not result.success:
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "message": "Failed to trigger batch provisioning",
                    "error": result.message,
                    "data": result.to_dict(),
                },
            )
        return {
            "success": True,
            "message": "Batch provisioning triggered successfully",
            "data": result.to_dict(),
        }

    @app.post("/api/orders/update", dependencies=[Depends(require_admin)])
    async def update_order(body: OrderUpdateRequest):
        changes = body.model_dump(exclude={"order_id"}, exclude_none=True)
        order = await store.update_order(body.order_id, changes)
        logger.info(
            f"Order {order.id} manually updated ({', '.join(sorted(changes)) or 'no fields'})",
            extra={"order_id": order.id},
        )
        return {"success": True, "message": "Order updated successfully", "order": order.to_dict()}

    # ----------------------------------------
    # MAINTENANCE
    # ----------------------------------------

    @app.post("/api/orders/reset-stuck", dependencies=[Depends(require_admin)])
    async def reset_stuck():
        reset = await reset_stuck_orders(store, stuck_lease)
        return {
            "success": True,
            "message": f"Reset {len(reset)} stuck orders",
            "results": [
                {
                    "orderId": order.id,
                    "wasStuckSince": order.provisioning_started_at.isoformat()
                    if order.provisioning_started_at else None,
                }
                for order in reset
            ],
        }

    @app.post("/api/smartvps/status-sync", dependencies=[Depends(require_admin)])
    async def smartvps_status_sync(body: Optional[StatusSyncRequest] = None):
        limit = body.limit if body else 10
        return await sync_provider_credentials(store, provisioner, Provider.SMARTVPS, limit=limit)

    @app.get("/api/admin/fix-windows-ports", dependencies=[Depends(require_admin)])
    async def preview_windows_ports():
        return await fix_windows_ports(store, apply=False)

    @app.post("/api/admin/fix-windows-ports", dependencies=[Depends(require_admin)])
    async def apply_windows_ports():
        return await fix_windows_ports(store, apply=True)

    # ----------------------------------------
    # PROVIDERS
    # ----------------------------------------

    @app.get("/api/admin/providers", dependencies=[Depends(require_admin)])
    async def list_providers():
        return [
            dict(meta, configured=meta["id"] in providers)
            for meta in ProviderRegistry.list_providers()
        ]

    async def _hostycare_call(fetch):
        adapter = providers.get(Provider.HOSTYCARE.value)
        if adapter is None:
            return JSONResponse(
                status_code=404,
                content={"success": False, "message": "Provider not configured: hostycare"},
            )
        try:
            data = await fetch(adapter)
        except ProviderError as e:
            return JSONResponse(
                status_code=502,
                content={"success": False, "message": "Hostycare request failed", "error": str(e)},
            )
        return {"success": True, "data": data}

    @app.get("/api/admin/hostycare/products", dependencies=[Depends(require_admin)])
    async def hostycare_products():
        return await _hostycare_call(lambda adapter: adapter.get_products())

    @app.get("/api/admin/hostycare/credit", dependencies=[Depends(require_admin)])
    async def hostycare_credit():
        return await _hostycare_call(lambda adapter: adapter.get_credit())

    @app.get("/api/admin/providers/{provider_id}/test", dependencies=[Depends(require_admin)])
    async def test_provider(provider_id: str):
        adapter = providers.get(provider_id)
        if adapter is None:
            return JSONResponse(
                status_code=404,
                content={"success": False, "message": f"Provider not configured: {provider_id}"},
            )
        try:
            data: Any = await adapter.test_connection()
        except ProviderError as e:
            return JSONResponse(
                status_code=502,
                content={"success": False, "message": "Connection test failed", "error": str(e)},
            )
        return {"success": True, "provider": provider_id, "data": data}

    return app

