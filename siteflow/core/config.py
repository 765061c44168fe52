# siteflow/core/config.py

from __future__ import annotations

import os
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

DEFAULT_CIRCLE_VENDORS: Dict[str, str] = {
    "SOUTH": "Shrishaila Electricals(India Pvt ltd)",
    "WEST": "Shrishaila Electricals(India Pvt ltd)",
    "NORTH": "Spectrum Consultants",
    "EAST": "Spectrum Consultants",
}
DEFAULT_DIVISION_CIRCLES: Dict[str, str] = {
    "HSR": "SOUTH",
    "JAYANAGAR": "SOUTH",
    "KORAMANGALA": "SOUTH",
}
DEFAULT_OVERRIDE_VENDOR = "Jyothi Electricals"


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)))
    except ValueError:
        return default


def _env_list(name: str) -> List[str]:
    raw = _env(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_mapping(name: str, default: Dict[str, str]) -> Dict[str, str]:
    """Parses ``KEY=VALUE;KEY=VALUE`` pairs, falling back to ``default``."""
    raw = _env(name, "").strip()
    if not raw:
        return dict(default)
    mapping: Dict[str, str] = {}
    for pair in raw.split(";"):
        if "=" not in pair:
            continue
        key, value = pair.split("=", 1)
        if key.strip() and value.strip():
            mapping[key.strip().upper()] = value.strip()
    return mapping or dict(default)


class RoutingConfig(BaseModel):
    """Vendor selection tables for AMC routing."""
    circle_vendors: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_CIRCLE_VENDORS))
    division_circles: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_DIVISION_CIRCLES))
    override_vendor: str = DEFAULT_OVERRIDE_VENDOR
    override_site_codes: List[str] = Field(default_factory=list)
    override_workbook_path: Optional[str] = None
    override_cache_ttl_s: float = 300.0


class SyncConfig(BaseModel):
    """Client-side write coalescing and polling."""
    debounce_ms: int = 500
    refresh_interval_s: float = 5.0

    @property
    def debounce_s(self) -> float:
        return min(max(self.debounce_ms, 100), 2000) / 1000.0


class NotificationConfig(BaseModel):
    """Outbound assignment webhook; read per delivery so it can change at runtime."""
    url: Optional[str] = None
    secret: Optional[str] = None
    max_attempts: int = 3
    timeout_s: float = 5.0
    backoff_base_ms: int = 250
    backoff_max_ms: int = 2000

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def backoff_s(self, failures: int) -> float:
        if self.backoff_base_ms <= 0:
            return 0.0
        delay_ms = min(self.backoff_base_ms * (2 ** max(0, failures - 1)), self.backoff_max_ms)
        return delay_ms / 1000.0

    @classmethod
    def from_env(cls) -> "NotificationConfig":
        try:
            timeout_s = float(_env("SITEFLOW_WEBHOOK_TIMEOUT_S", "5"))
        except ValueError:
            timeout_s = 5.0
        return cls(
            url=_env("SITEFLOW_WEBHOOK_URL", "").strip() or None,
            secret=_env("SITEFLOW_WEBHOOK_SECRET", "").strip() or None,
            max_attempts=max(1, _env_int("SITEFLOW_WEBHOOK_MAX_ATTEMPTS", 3)),
            timeout_s=max(0.1, timeout_s),
            backoff_base_ms=max(0, _env_int("SITEFLOW_WEBHOOK_BACKOFF_BASE_MS", 250)),
            backoff_max_ms=max(0, _env_int("SITEFLOW_WEBHOOK_BACKOFF_MAX_MS", 2000)),
        )


class StoreConfig(BaseModel):
    mode: str = "inmem"
    sqlite_path: str = "./siteflow_state.db"


class SiteFlowConfig(BaseModel):
    """Top-level siteflow configuration."""
    routing: RoutingConfig = RoutingConfig()
    sync: SyncConfig = SyncConfig()
    store: StoreConfig = StoreConfig()
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False

    @classmethod
    def from_env(cls) -> "SiteFlowConfig":
        workbook = _env("SITEFLOW_VENDOR_OVERRIDE_XLSX", "").strip()
        return cls(
            routing=RoutingConfig(
                circle_vendors=_env_mapping("SITEFLOW_CIRCLE_VENDORS", DEFAULT_CIRCLE_VENDORS),
                division_circles=_env_mapping("SITEFLOW_DIVISION_CIRCLES", DEFAULT_DIVISION_CIRCLES),
                override_vendor=_env("SITEFLOW_OVERRIDE_VENDOR", DEFAULT_OVERRIDE_VENDOR),
                override_site_codes=_env_list("SITEFLOW_VENDOR_OVERRIDE_SITE_CODES"),
                override_workbook_path=workbook or None,
                override_cache_ttl_s=float(_env("SITEFLOW_VENDOR_OVERRIDE_TTL_S", "300")),
            ),
            sync=SyncConfig(
                debounce_ms=int(_env("SITEFLOW_DEBOUNCE_MS", "500")),
                refresh_interval_s=float(_env("SITEFLOW_REFRESH_INTERVAL_S", "5")),
            ),
            store=StoreConfig(
                mode=_env("SITEFLOW_STORE", "inmem").strip().lower(),
                sqlite_path=_env("SITEFLOW_SQLITE_PATH", "./siteflow_state.db"),
            ),
            api_host=_env("SITEFLOW_API_HOST", "0.0.0.0"),
            api_port=int(_env("SITEFLOW_API_PORT", "8000")),
            debug=_env("SITEFLOW_DEBUG", "false").lower() == "true",
        )


config = SiteFlowConfig.from_env()
