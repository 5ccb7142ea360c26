"""
Order Model
===========

Provisioning-relevant view of a customer order, plus the small IP address
helpers applied when credentials are recorded.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


class OrderStatus(Enum):
    """Commercial lifecycle of an order."""
    PENDING = "pending"
    PAID = "paid"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    INVALID = "invalid"
    EXPIRED = "expired"
    FAILED = "failed"


class ProvisioningStatus(Enum):
    """Lifecycle of the upstream server creation for an order."""
    PENDING = "pending"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"


class Provider(Enum):
    HOSTYCARE = "hostycare"
    SMARTVPS = "smartvps"


DEFAULT_PROVIDER = Provider.HOSTYCARE
SERVICE_TERM = timedelta(days=30)
WINDOWS_RDP_PORT = 49965
PENDING_IP_PLACEHOLDER = "Pending - Server being provisioned"

PAYABLE_STATUSES = (OrderStatus.PAID, OrderStatus.CONFIRMED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_provider(value: Any) -> Provider:
    """Missing or empty provider means Hostycare."""
    if isinstance(value, Provider):
        return value
    if not value:
        return DEFAULT_PROVIDER
    return Provider(str(value).strip().lower())


# =========================================
# IP ADDRESS HELPERS
# =========================================

def needs_windows_port(provider: Any, os_name: Optional[str]) -> bool:
    """Hostycare Windows servers expose RDP on a non-standard port."""
    return (
        normalize_provider(provider) == Provider.HOSTYCARE
        and "windows" in (os_name or "").lower()
    )


def format_ip_address(ip_address: Optional[str], provider: Any, os_name: Optional[str]) -> Optional[str]:
    """Append the RDP port where required. Applying it twice is a no-op."""
    if not ip_address:
        return ip_address
    suffix = f":{WINDOWS_RDP_PORT}"
    if needs_windows_port(provider, os_name) and suffix not in ip_address:
        return f"{ip_address}{suffix}"
    return ip_address


# =========================================
# ORDER
# =========================================

@dataclass
class Order:
    """An order as seen by the provisioning plane."""
    id: str
    status: OrderStatus = OrderStatus.PENDING
    product_name: str = ""
    memory: str = ""
    os: Optional[str] = None
    provider: Provider = DEFAULT_PROVIDER
    provisioning_status: Optional[ProvisioningStatus] = None
    auto_provisioned: bool = False
    provider_service_id: Optional[str] = None
    ip_address: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    provisioning_error: Optional[str] = None
    expiry_date: Optional[datetime] = None
    last_action: Optional[str] = None
    last_action_time: Optional[datetime] = None
    plan_id: Optional[str] = None
    hostname: Optional[str] = None
    provisioning_started_at: Optional[datetime] = None
    # Incremented by every begin; the current value fences terminal writes
    provisioning_attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not isinstance(self.status, OrderStatus):
            self.status = OrderStatus(self.status)
        if self.provisioning_status is not None and not isinstance(
            self.provisioning_status, ProvisioningStatus
        ):
            self.provisioning_status = (
                ProvisioningStatus(self.provisioning_status) if self.provisioning_status else None
            )
        self.provider = normalize_provider(self.provider)

    @property
    def in_flight(self) -> bool:
        return self.provisioning_status == ProvisioningStatus.PROVISIONING

    @property
    def is_provisioned(self) -> bool:
        return self.status == OrderStatus.ACTIVE and bool(self.ip_address)

    @property
    def needs_provisioning(self) -> bool:
        """
        Whether a batch run should pick this order up.

        Paid or confirmed orders that were never auto-provisioned qualify.
        SmartVPS orders also qualify after a failed attempt, or while
        confirmed without an IP.
        """
        if self.status in PAYABLE_STATUSES and not self.auto_provisioned:
            return True
        if self.provider == Provider.SMARTVPS:
            if self.provisioning_status == ProvisioningStatus.FAILED:
                return True
            if self.status == OrderStatus.CONFIRMED and not self.ip_address:
                return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        service_key = f"{self.provider.value}ServiceId"
        return {
            "id": self.id,
            "status": self.status.value,
            "productName": self.product_name,
            "memory": self.memory,
            "os": self.os,
            "provider": self.provider.value,
            "provisioningStatus": self.provisioning_status.value if self.provisioning_status else None,
            "autoProvisioned": self.auto_provisioned,
            service_key: self.provider_service_id,
            "ipAddress": self.ip_address,
            "username": self.username,
            "password": self.password,
            "provisioningError": self.provisioning_error,
            "expiryDate": _iso(self.expiry_date),
            "lastAction": self.last_action,
            "lastActionTime": _iso(self.last_action_time),
            "planId": self.plan_id,
            "hostname": self.hostname,
            "provisioningStartedAt": _iso(self.provisioning_started_at),
            "provisioningAttempts": self.provisioning_attempts,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Order":
        """Build from a snake_case record (database row or fixture), ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in dict(record).items() if k in known and v is not None}
        return cls(**data)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
