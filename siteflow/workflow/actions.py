# siteflow/workflow/actions.py

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from siteflow.core.identity import normalize_site_code

TERMINAL_AUTHORITY = "CCR"
APPROVAL_SUFFIX = "Resolution Approval"


class ActionStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"


class ActionKind(str, Enum):
    ROUTING = "routing"
    APPROVAL = "approval"


class ApprovalOutcome(str, Enum):
    APPROVED = "Approved"
    KEPT_FOR_MONITORING = "Kept for Monitoring"
    RECHECK_REQUESTED = "Recheck Requested"


class ActionEvent(str, Enum):
    CREATE = "create"
    COMPLETE = "complete"
    REQUEST_RECHECK = "request_recheck"
    KEEP_FOR_MONITORING = "keep_for_monitoring"
    RESUBMIT = "resubmit"
    REROUTE = "reroute"
    ANNOTATE = "annotate"


class InvalidTransition(ValueError):
    def __init__(self, action_id: str, event: str, reason: str) -> None:
        self.action_id = action_id
        self.event = event
        self.reason = reason
        super().__init__(f"Invalid transition '{event}' for action {action_id}: {reason}")


class ActionNotFound(KeyError):
    def __init__(self, action_id: str) -> None:
        self.action_id = action_id
        super().__init__(action_id)

    def __str__(self) -> str:
        return f"Action not found: {self.action_id}"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def approval_issue_type(submitter_role: str, approver_role: str) -> str:
    if approver_role == TERMINAL_AUTHORITY:
        return f"{TERMINAL_AUTHORITY} {APPROVAL_SUFFIX}"
    return f"{submitter_role} {APPROVAL_SUFFIX}"


def parse_status(value: Any) -> ActionStatus:
    token = str(getattr(value, "value", value) or "").replace(" ", "").lower()
    for status in ActionStatus:
        if status.value.lower() == token:
            return status
    raise ValueError(f"Unsupported action status: {value}")


class Action(BaseModel):
    """One unit of routed work, or an oversight approval of such work."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: ActionKind = ActionKind.ROUTING
    source_file_id: str
    row_key: str = ""
    site_code: str
    device_type: str = ""
    division: str = ""
    circle: str = ""
    type_of_issue: str
    assigned_by_role: str
    assigned_by_user_id: str = ""
    assigned_to_role: str
    assigned_to_user_id: str = ""
    assigned_to_vendor: Optional[str] = None
    status: ActionStatus = ActionStatus.PENDING
    priority: str = "Medium"
    remarks: str = ""
    photos: List[str] = Field(default_factory=list)
    origin_row_key: Optional[str] = None
    origin_action_id: Optional[str] = None
    approval_outcome: Optional[ApprovalOutcome] = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    completed_at: Optional[str] = None
    history: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def is_approval(self) -> bool:
        return self.kind == ActionKind.APPROVAL

    @property
    def is_open(self) -> bool:
        return self.status != ActionStatus.COMPLETED

    def dedup_key(self) -> tuple[str, str, str, str]:
        return (
            normalize_site_code(self.site_code),
            self.device_type.upper(),
            self.type_of_issue,
            self.assigned_to_role,
        )

    def was_party(self, role: str) -> bool:
        if role in (self.assigned_by_role, self.assigned_to_role):
            return True
        return any(role in (entry.get("from_role"), entry.get("to_role")) for entry in self.history)


def _history_entry(event: ActionEvent, at: str, actor_role: Optional[str], **extra: Any) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"event": event.value, "at": at}
    if actor_role:
        entry["by_role"] = actor_role
    entry.update({k: v for k, v in extra.items() if v not in (None, "", [])})
    return entry


def create_action(
    *,
    source_file_id: str,
    site_code: str,
    type_of_issue: str,
    assigned_by_role: str,
    assigned_to_role: str,
    assigned_by_user_id: str = "",
    assigned_to_user_id: str = "",
    assigned_to_vendor: Optional[str] = None,
    row_key: str = "",
    device_type: str = "",
    division: str = "",
    circle: str = "",
    remarks: str = "",
    photos: Optional[List[str]] = None,
    priority: str = "Medium",
    kind: ActionKind = ActionKind.ROUTING,
    origin_row_key: Optional[str] = None,
    origin_action_id: Optional[str] = None,
) -> Action:
    now = utc_now()
    return Action(
        kind=kind,
        source_file_id=source_file_id,
        row_key=row_key,
        site_code=normalize_site_code(site_code),
        device_type=device_type,
        division=division,
        circle=circle,
        type_of_issue=type_of_issue,
        assigned_by_role=assigned_by_role,
        assigned_by_user_id=assigned_by_user_id,
        assigned_to_role=assigned_to_role,
        assigned_to_user_id=assigned_to_user_id,
        assigned_to_vendor=assigned_to_vendor,
        priority=priority,
        remarks=remarks,
        photos=list(photos or []),
        origin_row_key=origin_row_key,
        origin_action_id=origin_action_id,
        created_at=now,
        updated_at=now,
        history=[_history_entry(ActionEvent.CREATE, now, assigned_by_role, to_role=assigned_to_role)],
    )


def apply_transition(
    action: Action,
    event: ActionEvent,
    *,
    actor_role: Optional[str] = None,
    remarks: Optional[str] = None,
    photos: Optional[List[str]] = None,
    outcome: Optional[ApprovalOutcome] = None,
    new_role: Optional[str] = None,
    new_user_id: Optional[str] = None,
    new_vendor: Optional[str] = None,
) -> Action:
    """Returns the action after ``event``; the input action is left untouched."""
    if action.status == ActionStatus.COMPLETED:
        raise InvalidTransition(action.id, event.value, "action is already Completed")

    updated = action.model_copy(deep=True)
    now = utc_now()

    if event == ActionEvent.COMPLETE:
        if outcome in (ApprovalOutcome.RECHECK_REQUESTED, ApprovalOutcome.KEPT_FOR_MONITORING):
            raise InvalidTransition(action.id, event.value, f"{outcome.value} does not complete an approval")
        if outcome is not None and not action.is_approval:
            raise InvalidTransition(action.id, event.value, "only approvals carry an outcome")
        updated.status = ActionStatus.COMPLETED
        updated.completed_at = now
        if action.is_approval:
            updated.approval_outcome = outcome or ApprovalOutcome.APPROVED
        if remarks is not None:
            updated.remarks = remarks
        updated.history.append(
            _history_entry(
                event,
                now,
                actor_role,
                outcome=updated.approval_outcome.value if updated.approval_outcome else None,
            )
        )

    elif event == ActionEvent.REQUEST_RECHECK:
        if not action.is_approval:
            raise InvalidTransition(action.id, event.value, "recheck applies only to approval actions")
        updated.status = ActionStatus.IN_PROGRESS
        updated.approval_outcome = ApprovalOutcome.RECHECK_REQUESTED
        updated.history.append(_history_entry(event, now, actor_role, remarks=remarks))

    elif event == ActionEvent.KEEP_FOR_MONITORING:
        if not action.is_approval:
            raise InvalidTransition(action.id, event.value, "monitoring applies only to approval actions")
        updated.status = ActionStatus.IN_PROGRESS
        updated.approval_outcome = ApprovalOutcome.KEPT_FOR_MONITORING
        if remarks is not None:
            updated.remarks = remarks
        updated.history.append(_history_entry(event, now, actor_role, remarks=remarks))

    elif event == ActionEvent.RESUBMIT:
        if (
            not action.is_approval
            or action.status != ActionStatus.IN_PROGRESS
            or action.approval_outcome != ApprovalOutcome.RECHECK_REQUESTED
        ):
            raise InvalidTransition(action.id, event.value, "only a rechecked approval can be resubmitted")
        updated.status = ActionStatus.PENDING
        updated.approval_outcome = None
        if remarks:
            updated.remarks = remarks
        if photos:
            updated.photos = list(photos)
        updated.history.append(_history_entry(event, now, actor_role))

    elif event == ActionEvent.REROUTE:
        if not new_role:
            raise InvalidTransition(action.id, event.value, "reroute requires a new assignee role")
        if (
            new_role == action.assigned_to_role
            and (new_user_id or "") == action.assigned_to_user_id
            and new_vendor == action.assigned_to_vendor
        ):
            return updated
        updated.history.append(
            _history_entry(
                event,
                now,
                actor_role,
                from_role=action.assigned_to_role,
                from_user_id=action.assigned_to_user_id,
                from_vendor=action.assigned_to_vendor,
                to_role=new_role,
                to_user_id=new_user_id,
                to_vendor=new_vendor,
                remarks=remarks,
                photos=list(photos or []),
            )
        )
        updated.assigned_to_role = new_role
        updated.assigned_to_user_id = new_user_id or ""
        updated.assigned_to_vendor = new_vendor

    elif event == ActionEvent.ANNOTATE:
        if remarks is not None:
            updated.remarks = remarks
        if photos is not None:
            updated.photos = list(photos)

    else:
        raise InvalidTransition(action.id, event.value, "unsupported event")

    updated.updated_at = now
    return updated
