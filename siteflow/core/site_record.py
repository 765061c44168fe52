from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Sequence

from pydantic import BaseModel

from siteflow.core.identity import normalize_site_code

HEADER_ALIASES: Dict[str, tuple[str, ...]] = {
    "site_code": ("site code", "sitecode", "site_code", "code"),
    "device_type": ("device type", "devicetype", "device_type", "device"),
    "circle": ("circle", "circle name"),
    "division": ("division", "division name"),
    "device_status": ("device status", "device_status", "status"),
    "days_offline": ("days offline", "no of days offline", "offline days", "days_offline"),
    "attribute": ("attribute", "attributes"),
}


def _header_token(header: str) -> str:
    return " ".join(str(header or "").replace("_", " ").split()).lower()


def canonical_header_map(headers: Sequence[str]) -> Dict[str, str]:
    """Resolves each canonical field to the first matching source header."""
    tokens = {_header_token(h): h for h in reversed(list(headers))}
    resolved: Dict[str, str] = {}
    for field, aliases in HEADER_ALIASES.items():
        for alias in aliases:
            header = tokens.get(_header_token(alias))
            if header is not None:
                resolved[field] = header
                break
    return resolved


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError, OverflowError):
        return None


class SiteRecord(BaseModel):
    site_code: str
    device_type: str = ""
    circle: str = ""
    division: str = ""
    device_status: str = ""
    days_offline: Optional[int] = None
    attribute: str = ""

    @classmethod
    def from_row(
        cls,
        row: Mapping[str, Any],
        headers: Sequence[str],
        header_map: Optional[Dict[str, str]] = None,
    ) -> "SiteRecord":
        mapping = header_map if header_map is not None else canonical_header_map(list(headers) or list(row.keys()))

        def text(field: str) -> str:
            header = mapping.get(field)
            value = row.get(header) if header else None
            return "" if value is None else str(value).strip()

        days_header = mapping.get("days_offline")
        return cls(
            site_code=normalize_site_code(text("site_code")),
            device_type=text("device_type").upper(),
            circle=text("circle").upper(),
            division=text("division").upper(),
            device_status=text("device_status"),
            days_offline=_as_int(row.get(days_header)) if days_header else None,
            attribute=text("attribute"),
        )
