# siteflow/routing/rules.py

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from siteflow.core.config import RoutingConfig, config
from siteflow.core.identity import normalize_site_code
from siteflow.routing.vendors import (
    VendorOverrideTable,
    circle_for_division,
    normalize_circle,
    vendor_for_circle,
)

logger = logging.getLogger(__name__)

TEAM_TO_ROLE: Dict[str, str] = {
    "Equipment Team": "Equipment",
    "RTU/Communication Team": "RTU/Communication",
    "AMC Team": "AMC",
    "O&M Team": "O&M",
    "Relay Team": "Relay",
    "CCR Team": "CCR",
    "System Team": "System",
    "C&D's Team": "C&D",
}
ROLE_TO_TEAM: Dict[str, str] = {role: team for team, role in TEAM_TO_ROLE.items()}

COMMUNICATION_ISSUES = ("RTU Issue", "CS Issue")
HARDWARE_ISSUES = ("Faulty", "Spare Required")
FIELD_ISSUES = (
    "Bipassed",
    "Line Idle",
    "AT Jump Cut",
    "Dismantled",
    "Replaced",
    "Equipment Idle",
    "AT-PT Chamber Flashover",
)
KNOWN_ISSUES = {issue.lower(): issue for issue in COMMUNICATION_ISSUES + HARDWARE_ISSUES + FIELD_ISSUES}

AMC_DEVICE_TYPES = {"RMU"}


def canonical_issue(issue: Optional[str]) -> str:
    token = " ".join(str(issue or "").split())
    return KNOWN_ISSUES.get(token.lower(), token)


def team_for_role(role: str) -> str:
    return ROLE_TO_TEAM.get(role, f"{role} Team")


def role_for_team(team: str) -> Optional[str]:
    if team in TEAM_TO_ROLE:
        return TEAM_TO_ROLE[team]
    if team in ROLE_TO_TEAM:
        return team
    return None


class Destination(BaseModel):
    team: str
    role: str
    vendor: Optional[str] = None
    rule: str = ""

    @property
    def label(self) -> str:
        if self.vendor:
            return f"Vendor ({self.vendor})"
        return self.team


class DestinationSet(BaseModel):
    issue: str
    site_code: str = ""
    destinations: List[Destination] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def roles(self) -> List[str]:
        return [d.role for d in self.destinations]


def _destination(role: str, rule: str, vendor: Optional[str] = None) -> Destination:
    return Destination(team=team_for_role(role), role=role, vendor=vendor, rule=rule)


class RoutingEngine:
    """Maps an observed issue at a site to the teams that must act on it."""

    def __init__(self, routing_config: Optional[RoutingConfig] = None, overrides: Optional[VendorOverrideTable] = None):
        self.config = routing_config or config.routing
        self.overrides = overrides or VendorOverrideTable(self.config)

    def resolve_circle(self, circle: Optional[str], division: Optional[str], warnings: List[str]) -> str:
        resolved = normalize_circle(circle)
        if resolved:
            return resolved
        fallback = circle_for_division(division, self.config)
        if fallback:
            message = f"Circle missing; derived {fallback} from division {division}"
            logger.warning("Routing ambiguity: %s", message)
            warnings.append(message)
            return fallback
        message = f"Circle missing and division {division or 'N/A'} has no circle mapping"
        logger.warning("Routing ambiguity: %s", message)
        warnings.append(message)
        return ""

    def select_amc_vendor(
        self,
        site_code: Optional[str],
        device_type: Optional[str],
        circle: Optional[str],
        division: Optional[str] = None,
        warnings: Optional[List[str]] = None,
        any_device: bool = False,
    ) -> Optional[Destination]:
        """Returns the AMC/vendor destination for a hardware issue, if any applies."""
        notes = warnings if warnings is not None else []
        if self.overrides.contains(site_code):
            return _destination("AMC", "vendor_override", vendor=self.overrides.vendor)

        if not any_device and str(device_type or "").strip().upper() not in AMC_DEVICE_TYPES:
            return None

        resolved_circle = self.resolve_circle(circle, division, notes)
        vendor = vendor_for_circle(resolved_circle, self.config) if resolved_circle else None
        if resolved_circle and not vendor:
            message = f"No vendor mapped for circle {resolved_circle}"
            logger.warning("Routing ambiguity: %s", message)
            notes.append(message)
        return _destination("AMC", "circle_vendor", vendor=vendor)

    def route(
        self,
        issue: str,
        device_type: Optional[str],
        circle: Optional[str],
        site_code: Optional[str],
        division: Optional[str] = None,
    ) -> DestinationSet:
        issue_name = canonical_issue(issue)
        result = DestinationSet(issue=issue_name, site_code=normalize_site_code(site_code))

        if issue_name in COMMUNICATION_ISSUES:
            result.destinations.append(_destination("RTU/Communication", "communication_issue"))
            return result

        if issue_name in HARDWARE_ISSUES:
            result.destinations.append(_destination("O&M", "hardware_issue"))
            amc = self.select_amc_vendor(site_code, device_type, circle, division, result.warnings)
            if amc is not None:
                result.destinations.append(amc)
            return result

        if issue_name in FIELD_ISSUES:
            result.destinations.append(_destination("O&M", "field_issue"))
            return result

        logger.info("No automatic destination for issue %r at site %s", issue_name, result.site_code)
        return result


routing_engine = RoutingEngine()


def route(
    issue: str,
    device_type: Optional[str],
    circle: Optional[str],
    site_code: Optional[str],
    division: Optional[str] = None,
) -> DestinationSet:
    return routing_engine.route(issue, device_type, circle, site_code, division)
