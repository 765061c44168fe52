# siteflow/workflow/approvals.py

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from siteflow.core.identity import normalize_site_code
from siteflow.core.stores import ActionStore
from siteflow.workflow.actions import (
    TERMINAL_AUTHORITY,
    Action,
    ActionEvent,
    ActionKind,
    ApprovalOutcome,
    InvalidTransition,
    apply_transition,
    approval_issue_type,
    create_action,
)
from siteflow.workflow.exclusion import ExclusionStore
from siteflow.workflow.observations import ObservationStatus, ObservationStore

logger = logging.getLogger(__name__)

# Executing roles whose resolution is reviewed by an intermediate authority before CCR.
INTERMEDIATE_AUTHORITY: Dict[str, str] = {"AMC": "Equipment"}


def approver_for(submitter_role: str) -> str:
    return INTERMEDIATE_AUTHORITY.get(submitter_role, TERMINAL_AUTHORITY)


class ApprovalCoordinator:
    """Chains an executing role's resolution into oversight approvals ending at CCR."""

    def __init__(self, actions: ActionStore, observations: ObservationStore, exclusions: ExclusionStore):
        self.actions = actions
        self.observations = observations
        self.exclusions = exclusions

    def _site_actions(self, site_code: str) -> List[Action]:
        return self.actions.list_for_site(site_code)

    def open_approval(self, site_code: str, submitter_role: str, approver_role: str) -> Optional[Action]:
        candidates = [
            a
            for a in self._site_actions(site_code)
            if a.is_approval
            and a.is_open
            and a.assigned_by_role == submitter_role
            and a.assigned_to_role == approver_role
        ]
        return candidates[-1] if candidates else None

    def routing_action_for(self, role: str, site_code: str, row_key: Optional[str] = None) -> Optional[Action]:
        candidates = [
            a
            for a in self._site_actions(site_code)
            if a.kind == ActionKind.ROUTING and a.assigned_to_role == role
        ]
        if row_key:
            same_row = [a for a in candidates if a.row_key == row_key]
            candidates = same_row or candidates
        open_ones = [a for a in candidates if a.is_open]
        if open_ones:
            return open_ones[-1]
        return candidates[-1] if candidates else None

    def submit_resolution(
        self,
        submitter_role: str,
        submitter_user_id: str = "",
        *,
        site_code: str,
        row_key: str = "",
        file_id: str = "",
        origin: Optional[Action] = None,
        remarks: Optional[str] = None,
        photos: Optional[List[str]] = None,
    ) -> Optional[Action]:
        """Creates (or resubmits) the approval the next authority must sign off."""
        if submitter_role == TERMINAL_AUTHORITY:
            return None
        approver = approver_for(submitter_role)
        code = normalize_site_code(site_code)

        existing = self.open_approval(code, submitter_role, approver)
        if existing is not None:
            if existing.approval_outcome == ApprovalOutcome.RECHECK_REQUESTED:
                resubmitted = apply_transition(
                    existing,
                    ActionEvent.RESUBMIT,
                    actor_role=submitter_role,
                    remarks=remarks,
                    photos=photos,
                )
                self.actions.save(resubmitted)
                logger.info(
                    "Resubmitted %s for site %s after recheck (action_id=%s)",
                    existing.type_of_issue,
                    code,
                    existing.id,
                )
                return resubmitted
            return existing

        origin_row_key = (origin.origin_row_key or origin.row_key) if origin is not None else row_key
        approval = create_action(
            kind=ActionKind.APPROVAL,
            source_file_id=(origin.source_file_id if origin is not None else file_id),
            row_key=(origin.row_key if origin is not None else row_key),
            site_code=code,
            device_type=origin.device_type if origin is not None else "",
            division=origin.division if origin is not None else "",
            circle=origin.circle if origin is not None else "",
            type_of_issue=approval_issue_type(submitter_role, approver),
            assigned_by_role=submitter_role,
            assigned_by_user_id=submitter_user_id,
            assigned_to_role=approver,
            remarks=remarks or f"Resolution completed; pending {approver} approval",
            photos=photos if photos is not None else (list(origin.photos) if origin is not None else []),
            priority=origin.priority if origin is not None else "Medium",
            origin_row_key=origin_row_key or None,
            origin_action_id=origin.id if origin is not None else None,
        )
        self.actions.add(approval)
        logger.info(
            "Created %s for site %s (submitted_by=%s approver=%s action_id=%s)",
            approval.type_of_issue,
            code,
            submitter_role,
            approver,
            approval.id,
        )
        return approval

    def on_action_completed(self, action: Action, actor_user_id: str = "") -> Optional[Action]:
        """Reacts to an action that has just been saved as Completed."""
        role = action.assigned_to_role
        self.observations.mark(
            role,
            ObservationStatus.RESOLVED,
            site_code=action.site_code,
            row_key=action.row_key,
            file_id=action.source_file_id,
            user_id=actor_user_id,
        )
        if not action.is_approval:
            return self.submit_resolution(role, actor_user_id, site_code=action.site_code, origin=action)

        if role == TERMINAL_AUTHORITY:
            self.exclusions.add(action.source_file_id, action.origin_row_key or action.row_key, action.site_code)
            logger.info(
                "Site %s finalized by %s (outcome=%s); excluded from active views",
                action.site_code,
                TERMINAL_AUTHORITY,
                action.approval_outcome.value if action.approval_outcome else None,
            )
            return None
        return self.submit_resolution(role, actor_user_id, site_code=action.site_code, origin=action)

    def on_observation_resolved(
        self,
        role: str,
        user_id: str = "",
        *,
        site_code: str,
        row_key: str = "",
        file_id: str = "",
        remarks: Optional[str] = None,
        photos: Optional[List[str]] = None,
    ) -> Optional[Action]:
        """Handles a role marking its own observation of a site as Resolved."""
        origin = self.routing_action_for(role, site_code, row_key or None)
        if origin is not None and origin.is_open:
            completed = apply_transition(origin, ActionEvent.COMPLETE, actor_role=role, remarks=remarks)
            self.actions.save(completed)
            self.on_action_completed(completed, user_id)
            return self.open_approval(site_code, role, approver_for(role))

        if origin is None:
            still_routed = [
                a
                for a in self._site_actions(site_code)
                if a.kind == ActionKind.ROUTING and a.assigned_by_role == role and a.is_open
            ]
            if still_routed:
                logger.info(
                    "Site %s resolved by %s while %s routed actions remain open; approval deferred",
                    normalize_site_code(site_code),
                    role,
                    len(still_routed),
                )
                return None

        return self.submit_resolution(
            role,
            user_id,
            site_code=site_code,
            row_key=row_key,
            file_id=file_id,
            origin=origin,
            remarks=remarks,
            photos=photos,
        )

    def request_recheck(self, approval: Action, actor_role: str, remarks: Optional[str] = None) -> Action:
        """Sends an approval back to its submitter, who may then resolve again."""
        if not approval.is_approval:
            raise InvalidTransition(approval.id, ActionEvent.REQUEST_RECHECK.value, "not an approval action")
        rechecked = apply_transition(approval, ActionEvent.REQUEST_RECHECK, actor_role=actor_role, remarks=remarks)
        self.actions.save(rechecked)
        self.observations.mark(
            approval.assigned_by_role,
            ObservationStatus.NONE,
            site_code=approval.site_code,
            row_key=approval.row_key,
            file_id=approval.source_file_id,
        )
        logger.info(
            "Recheck requested by %s on %s for site %s",
            actor_role,
            approval.type_of_issue,
            approval.site_code,
        )
        return rechecked

    def keep_for_monitoring(self, approval: Action, actor_role: str, remarks: Optional[str] = None) -> Action:
        """Parks an approval under observation; the site stays in every active view."""
        monitored = apply_transition(
            approval, ActionEvent.KEEP_FOR_MONITORING, actor_role=actor_role, remarks=remarks
        )
        self.actions.save(monitored)
        logger.info(
            "%s kept site %s for monitoring on %s (action_id=%s)",
            actor_role,
            approval.site_code,
            approval.type_of_issue,
            approval.id,
        )
        return monitored
