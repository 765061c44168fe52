# siteflow/workflow/status.py

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Union

from siteflow.core.identity import normalize_site_code
from siteflow.core.site_record import SiteRecord
from siteflow.core.stores import ActionStore
from siteflow.routing.rules import team_for_role
from siteflow.workflow.actions import Action, ActionKind, ActionStatus, ApprovalOutcome
from siteflow.workflow.observations import ObservationStatus, ObservationStore

FRAGMENT_SEPARATOR = "; "

AMC_ROLE = "AMC"
AMC_PENDING = "Pending"
AMC_PENDING_APPROVAL = "Pending Equipment Approval"
AMC_APPROVED = "Approved"
AMC_RECHECK = "Recheck Requested"

SiteRef = Union[SiteRecord, str]


def _site_code(site: SiteRef) -> str:
    if isinstance(site, SiteRecord):
        return site.site_code
    return normalize_site_code(site)


def destination_label(action: Action) -> str:
    if action.assigned_to_vendor:
        return f"Vendor ({action.assigned_to_vendor})"
    return team_for_role(action.assigned_to_role)


def dedupe_actions(actions: Iterable[Action]) -> List[Action]:
    """Collapses duplicate submissions sharing the natural key, keeping first-seen order.

    A completed duplicate wins over an open one; otherwise the most recently
    updated copy represents the group.
    """
    chosen: Dict[tuple, Action] = {}
    order: List[tuple] = []
    for action in actions:
        key = action.dedup_key()
        current = chosen.get(key)
        if current is None:
            chosen[key] = action
            order.append(key)
            continue
        if current.status == ActionStatus.COMPLETED and action.status != ActionStatus.COMPLETED:
            continue
        if action.status == ActionStatus.COMPLETED and current.status != ActionStatus.COMPLETED:
            chosen[key] = action
            continue
        if action.updated_at >= current.updated_at:
            chosen[key] = action
    return [chosen[key] for key in order]


def _append(fragments: List[str], fragment: str) -> None:
    if fragment not in fragments:
        fragments.append(fragment)


class StatusAggregator:
    """Computes the role-scoped consolidated status of a site from live actions."""

    def __init__(self, actions: ActionStore, observations: ObservationStore) -> None:
        self.actions = actions
        self.observations = observations

    def party_actions(self, site: SiteRef, viewer_role: str) -> List[Action]:
        site_actions = self.actions.list_for_site(_site_code(site))
        return dedupe_actions(a for a in site_actions if a.was_party(viewer_role))

    def display_status(self, site: SiteRef, viewer_role: str, *, row_key: Optional[str] = None) -> str:
        actions = self.party_actions(site, viewer_role)
        if viewer_role == AMC_ROLE:
            return self.amc_phase(actions)

        own = self.observations.status(viewer_role, row_key=row_key, site_code=_site_code(site))
        chain_pending = [
            a for a in actions if a.is_approval and a.is_open and a.assigned_by_role == viewer_role
        ]
        if own == ObservationStatus.RESOLVED and not chain_pending and not self._open_work(actions, viewer_role):
            return "Resolved"

        fragments = self.fragments(actions, viewer_role)
        if fragments:
            return FRAGMENT_SEPARATOR.join(fragments)
        if own == ObservationStatus.RESOLVED:
            return "Resolved"
        return own.value

    def _open_work(self, actions: List[Action], viewer_role: str) -> bool:
        return any(
            a.is_open and (a.assigned_to_role == viewer_role or a.kind == ActionKind.ROUTING)
            for a in actions
            if not (a.is_approval and a.assigned_by_role == viewer_role)
        )

    def fragments(self, actions: List[Action], viewer_role: str) -> List[str]:
        fragments: List[str] = []
        awaiting_viewer = {
            a.assigned_by_role: a
            for a in actions
            if a.is_approval and a.is_open and a.assigned_to_role == viewer_role
        }

        for action in actions:
            if action.kind != ActionKind.ROUTING:
                continue
            label = destination_label(action)
            if action.is_open:
                _append(fragments, f"Pending at {label}")
            elif action.assigned_to_role in awaiting_viewer:
                _append(fragments, f"Resolved at {label}")

        for submitter, approval in awaiting_viewer.items():
            if not any(a.kind == ActionKind.ROUTING and a.assigned_to_role == submitter for a in actions):
                _append(fragments, f"Resolved at {team_for_role(submitter)}")

        for action in actions:
            if not (action.is_approval and action.is_open and action.assigned_by_role == viewer_role):
                continue
            approver_team = team_for_role(action.assigned_to_role)
            if action.approval_outcome == ApprovalOutcome.KEPT_FOR_MONITORING:
                _append(fragments, f"Kept for Monitoring by {approver_team}")
            elif action.status == ActionStatus.IN_PROGRESS:
                _append(fragments, f"Recheck Requested by {approver_team}")
            else:
                _append(fragments, f"Pending at {approver_team}")
        return fragments

    def amc_phase(self, actions: List[Action]) -> str:
        """AMC sees only where its own resolution stands in the approval chain."""
        submitted = [a for a in actions if a.is_approval and a.assigned_by_role == AMC_ROLE]
        if submitted:
            latest = max(submitted, key=lambda a: a.updated_at)
            if latest.status == ActionStatus.COMPLETED:
                return AMC_APPROVED
            if latest.approval_outcome == ApprovalOutcome.RECHECK_REQUESTED:
                return AMC_RECHECK
            return AMC_PENDING_APPROVAL
        if any(a.assigned_to_role == AMC_ROLE for a in actions):
            return AMC_PENDING
        return ""
