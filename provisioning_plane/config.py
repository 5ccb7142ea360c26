"""
Provisioning Plane Configuration
================================

Single source of truth for all configuration values.
Reads from environment variables with sensible defaults.
"""

import os
from typing import List
from dataclasses import dataclass, field


@dataclass
class HostycareConfig:
    username: str = ""
    api_key: str = ""
    endpoint: str = "https://www.hostycare.com/manage/modules/addons/ProductsReseller/api/index.php"
    timeout_seconds: float = 30.0

    @property
    def is_configured(self) -> bool:
        return bool(self.username and self.api_key)


@dataclass
class SmartVPSConfig:
    username: str = ""
    password: str = ""
    base_url: str = "https://smartvps.online/"
    timeout_seconds: float = 25.0

    @property
    def is_configured(self) -> bool:
        return bool(self.username and self.password)


@dataclass
class DatabaseConfig:
    url: str = ""
    min_pool_size: int = 2
    max_pool_size: int = 10

    @property
    def is_configured(self) -> bool:
        return bool(self.url)


@dataclass
class BatchConfig:
    """Limits applied to a single batch-provisioning run."""
    concurrency: int = 3
    max_retries: int = 2
    retry_backoff_seconds: float = 5.0
    max_run_seconds: float = 540.0  # 9 minutes
    limit: int = 0  # 0 = no cap

    @property
    def order_limit(self):
        return self.limit or None


@dataclass
class ProvisioningConfig:
    """Master configuration for the provisioning plane."""

    # Sub-configs
    hostycare: HostycareConfig = field(default_factory=HostycareConfig)
    smartvps: SmartVPSConfig = field(default_factory=SmartVPSConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)

    # Watchdog
    stuck_lease_minutes: int = 10
    watchdog_interval_seconds: int = 0  # 0 = no background sweep

    # Application settings
    admin_api_keys: List[str] = field(default_factory=list)
    notify_webhook_url: str = ""
    log_level: str = "INFO"
    log_format: str = "json"
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])

    def available_providers(self) -> List[str]:
        providers = []
        if self.hostycare.is_configured:
            providers.append("hostycare")
        if self.smartvps.is_configured:
            providers.append("smartvps")
        return providers

    @classmethod
    def from_env(cls) -> "ProvisioningConfig":
        """Load configuration from environment variables."""
        return cls(
            hostycare=HostycareConfig(
                username=os.environ.get("HOSTYCARE_USERNAME", ""),
                api_key=os.environ.get("HOSTYCARE_API_KEY", ""),
                endpoint=os.environ.get("HOSTYCARE_API_URL", HostycareConfig.endpoint),
                timeout_seconds=float(os.environ.get("HOSTYCARE_TIMEOUT", "30")),
            ),
            smartvps=SmartVPSConfig(
                username=os.environ.get("SMARTVPS_USERNAME", ""),
                password=os.environ.get("SMARTVPS_PASSWORD", ""),
                base_url=os.environ.get("SMARTVPS_API_BASE", SmartVPSConfig.base_url),
                timeout_seconds=float(os.environ.get("SMARTVPS_TIMEOUT", "25")),
            ),
            database=DatabaseConfig(
                url=os.environ.get("DATABASE_URL", ""),
                min_pool_size=int(os.environ.get("DATABASE_MIN_POOL", "2")),
                max_pool_size=int(os.environ.get("DATABASE_MAX_POOL", "10")),
            ),
            batch=BatchConfig(
                concurrency=int(os.environ.get("BATCH_CONCURRENCY", "3")),
                max_retries=int(os.environ.get("BATCH_MAX_RETRIES", "2")),
                retry_backoff_seconds=float(os.environ.get("BATCH_RETRY_BACKOFF", "5")),
                max_run_seconds=float(os.environ.get("BATCH_MAX_RUN_SECONDS", "540")),
                limit=int(os.environ.get("BATCH_LIMIT", "0")),
            ),
            stuck_lease_minutes=int(os.environ.get("STUCK_LEASE_MINUTES", "10")),
            watchdog_interval_seconds=int(os.environ.get("WATCHDOG_INTERVAL_SECONDS", "0")),
            admin_api_keys=[
                k.strip() for k in os.environ.get("ADMIN_API_KEYS", "").split(",") if k.strip()
            ],
            notify_webhook_url=os.environ.get("NOTIFY_WEBHOOK_URL", ""),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_format=os.environ.get("LOG_FORMAT", "json"),
            cors_origins=os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(","),
        )
