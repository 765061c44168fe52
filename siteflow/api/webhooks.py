from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

import httpx

from siteflow.core.config import NotificationConfig
from siteflow.workflow.actions import Action, ActionEvent, utc_now
from siteflow.workflow.status import destination_label

logger = logging.getLogger(__name__)

ACTION_ASSIGNED = "action.assigned"
ACTION_REROUTED = "action.rerouted"
APPROVAL_REQUESTED = "approval.requested"
APPROVAL_DECIDED = "approval.decided"


def signature_header(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _last_reroute(action: Action) -> Dict[str, Any]:
    for entry in reversed(action.history):
        if entry.get("event") == ActionEvent.REROUTE.value:
            return entry
    return {}


def assignment_payload(event: str, action: Action) -> Dict[str, Any]:
    """Tells the new assignee what landed in its queue, and who it came from."""
    payload: Dict[str, Any] = {
        "event": event,
        "sent_at": utc_now(),
        "action_id": action.id,
        "kind": action.kind.value,
        "status": action.status.value,
        "priority": action.priority,
        "site_code": action.site_code,
        "device_type": action.device_type,
        "circle": action.circle,
        "division": action.division,
        "type_of_issue": action.type_of_issue,
        "row_key": action.row_key,
        "assigned_by_role": action.assigned_by_role,
        "assignee": {
            "role": action.assigned_to_role,
            "user_id": action.assigned_to_user_id or None,
            "vendor": action.assigned_to_vendor,
            "label": destination_label(action),
        },
    }
    if event == ACTION_REROUTED:
        entry = _last_reroute(action)
        payload["reroute"] = {
            "by_role": entry.get("by_role"),
            "from_role": entry.get("from_role"),
            "from_vendor": entry.get("from_vendor"),
            "to_role": entry.get("to_role", action.assigned_to_role),
            "to_vendor": entry.get("to_vendor"),
            "remarks": entry.get("remarks", ""),
        }
    if action.is_approval:
        payload["approval"] = {
            "submitted_by_role": action.assigned_by_role,
            "approver_role": action.assigned_to_role,
            "origin_row_key": action.origin_row_key,
            "outcome": action.approval_outcome.value if action.approval_outcome else None,
        }
    return payload


def _deliver(settings: NotificationConfig, event: str, action_id: str, body: bytes, headers: Dict[str, str]) -> None:
    attempts = settings.max_attempts
    for attempt in range(1, attempts + 1):
        try:
            response = httpx.post(settings.url, content=body, headers=headers, timeout=settings.timeout_s)
        except httpx.RequestError as exc:
            failure: httpx.HTTPError = exc
        else:
            if 200 <= response.status_code < 300:
                logger.info("Notified %s for action %s (attempt=%s)", event, action_id, attempt)
                return
            failure = httpx.HTTPStatusError(
                f"Notification endpoint returned HTTP {response.status_code}",
                request=response.request,
                response=response,
            )
            if not (response.status_code in (408, 429) or response.status_code >= 500):
                logger.warning("Notification %s for action %s rejected: %s", event, action_id, failure)
                raise failure

        if attempt == attempts:
            logger.warning(
                "Notification %s for action %s failed after %s attempts: %s", event, action_id, attempts, failure
            )
            raise failure
        delay_s = settings.backoff_s(attempt)
        logger.warning(
            "Notification %s for action %s failed (attempt=%s/%s): %s; retrying in %.2fs",
            event,
            action_id,
            attempt,
            attempts,
            failure,
            delay_s,
        )
        if delay_s > 0:
            time.sleep(delay_s)


def send_assignment_notification(event: str, action: Action, settings: Optional[NotificationConfig] = None) -> None:
    settings = settings or NotificationConfig.from_env()
    if not settings.enabled:
        return
    body = json.dumps(assignment_payload(event, action), ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "User-Agent": "SiteFlow-Webhook/1.0",
        "X-SiteFlow-Event": event,
    }
    if settings.secret:
        headers["X-SiteFlow-Signature"] = signature_header(settings.secret, body)
    _deliver(settings, event, action.id, body, headers)


def notify_assignment(event: str, action: Action) -> bool:
    """Background-task entry point; a lost notification never fails the workflow."""
    settings = NotificationConfig.from_env()
    if not settings.enabled:
        return False
    try:
        send_assignment_notification(event, action, settings)
    except httpx.HTTPError as exc:
        logger.warning("Assignment notification dropped (event=%s action_id=%s): %s", event, action.id, exc)
        return False
    return True
