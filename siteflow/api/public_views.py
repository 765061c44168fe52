from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, Optional

from siteflow.routing.rules import Destination, DestinationSet
from siteflow.workflow.actions import Action
from siteflow.workflow.engine import ObservationResult
from siteflow.workflow.exclusion import ExclusionSet

# Internal bookkeeping that callers never see.
PRIVATE_ACTION_FIELDS = {"history", "origin_action_id"}


def sanitize_for_public_response(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): sanitize_for_public_response(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [sanitize_for_public_response(item) for item in value]
    return str(value)


def public_action_payload(action: Action) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for key, value in action.model_dump(mode="json").items():
        if key in PRIVATE_ACTION_FIELDS:
            continue
        payload[key] = sanitize_for_public_response(value)
    payload["history_count"] = len(action.history)
    return payload


def public_action_list_payload(role: str, actions: Iterable[Action]) -> Dict[str, Any]:
    rows = [public_action_payload(a) for a in actions]
    return {"role": role, "count": len(rows), "actions": rows}


def public_destination_payload(destination: Destination) -> Dict[str, Any]:
    return {
        "team": destination.team,
        "role": destination.role,
        "vendor": destination.vendor,
        "label": destination.label,
        "rule": destination.rule or None,
    }


def public_route_payload(result: DestinationSet) -> Dict[str, Any]:
    return {
        "issue": result.issue,
        "site_code": result.site_code,
        "destinations": [public_destination_payload(d) for d in result.destinations],
        "warnings": list(result.warnings),
    }


def public_observation_payload(result: ObservationResult) -> Dict[str, Any]:
    outcomes = [
        {
            "destination": public_destination_payload(outcome.destination),
            "ok": outcome.ok,
            "action_id": outcome.action.id if outcome.action is not None else None,
            "error": outcome.error,
            "attempts": outcome.attempts,
        }
        for outcome in result.routing.outcomes
    ]
    return {
        "row_key": result.context.row_key,
        "site_code": result.context.site.site_code,
        "observation_status": sanitize_for_public_response(result.observation.status),
        "complete": result.routing.complete,
        "outcomes": outcomes,
        "warnings": list(result.routing.warnings),
        "approval": public_action_payload(result.approval) if result.approval is not None else None,
    }


def public_exclusion_payload(exclusions: ExclusionSet, file_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "file_id": file_id,
        "row_keys": sorted(exclusions.row_keys),
        "site_codes": sorted(exclusions.site_codes),
    }
