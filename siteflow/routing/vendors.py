# siteflow/routing/vendors.py

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Optional, Set

from openpyxl import load_workbook

from siteflow.core.config import RoutingConfig
from siteflow.core.identity import normalize_site_code

logger = logging.getLogger(__name__)

SITE_CODE_HEADERS = {"site code", "sitecode", "site_code", "code"}


def normalize_circle(value: Optional[str]) -> str:
    circle = " ".join(str(value or "").split()).upper()
    if circle.endswith(" CIRCLE"):
        circle = circle[: -len(" CIRCLE")].strip()
    return circle


def read_site_codes_from_workbook(path: str) -> Set[str]:
    """Reads the site-code column of every sheet in an override workbook."""
    workbook = load_workbook(filename=path, read_only=True, data_only=True)
    codes: Set[str] = set()
    try:
        for ws in workbook.worksheets:
            column: Optional[int] = None
            for row in ws.iter_rows(values_only=True):
                if column is None:
                    for idx, value in enumerate(row):
                        if str(value or "").strip().lower() in SITE_CODE_HEADERS:
                            column = idx
                            break
                    continue
                if column < len(row):
                    code = normalize_site_code(row[column])
                    if code:
                        codes.add(code)
    finally:
        workbook.close()
    return codes


class VendorOverrideTable:
    """Site codes that bypass circle-based vendor selection."""

    def __init__(self, routing_config: RoutingConfig, clock=time.monotonic) -> None:
        self._config = routing_config
        self._clock = clock
        self._lock = threading.Lock()
        self._codes: Optional[Set[str]] = None
        self._loaded_at = 0.0

    @property
    def vendor(self) -> str:
        return self._config.override_vendor

    def clear_cache(self) -> None:
        with self._lock:
            self._codes = None
            self._loaded_at = 0.0

    def _load(self) -> Set[str]:
        codes = {normalize_site_code(code) for code in self._config.override_site_codes}
        path = self._config.override_workbook_path
        if path:
            if Path(path).is_file():
                try:
                    codes |= read_site_codes_from_workbook(path)
                except Exception as exc:
                    logger.warning("Could not read vendor override workbook %s: %s", path, exc)
            else:
                logger.warning("Vendor override workbook not found: %s", path)
        codes.discard("")
        return codes

    def site_codes(self) -> Set[str]:
        with self._lock:
            expired = (self._clock() - self._loaded_at) >= self._config.override_cache_ttl_s
            if self._codes is None or expired:
                self._codes = self._load()
                self._loaded_at = self._clock()
            return set(self._codes)

    def contains(self, site_code: Optional[str]) -> bool:
        code = normalize_site_code(site_code)
        return bool(code) and code in self.site_codes()


def vendor_for_circle(circle: Optional[str], routing_config: RoutingConfig) -> Optional[str]:
    return routing_config.circle_vendors.get(normalize_circle(circle))


def circle_for_division(division: Optional[str], routing_config: RoutingConfig) -> Optional[str]:
    key = " ".join(str(division or "").split()).upper()
    return routing_config.division_circles.get(key)
