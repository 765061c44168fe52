# siteflow/workflow/engine.py

from __future__ import annotations

import logging
import threading
from typing import Any, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field

from siteflow.core.identity import resolve_row_key
from siteflow.core.site_record import SiteRecord
from siteflow.core.stores import ActionStore, create_action_store_from_env
from siteflow.routing.rules import Destination, DestinationSet, RoutingEngine, role_for_team, routing_engine, team_for_role
from siteflow.workflow.actions import (
    TERMINAL_AUTHORITY,
    Action,
    ActionEvent,
    ActionStatus,
    ApprovalOutcome,
    InvalidTransition,
    apply_transition,
    create_action,
    parse_status,
)
from siteflow.workflow.approvals import ApprovalCoordinator, approver_for
from siteflow.workflow.exclusion import ExclusionFilter, ExclusionSet, ExclusionStore
from siteflow.workflow.fanout import FanOutResult, fan_out, retry_failed
from siteflow.workflow.observations import ObservationStatus, ObservationStore, SiteObservation
from siteflow.workflow.status import SiteRef, StatusAggregator

logger = logging.getLogger(__name__)


class SubmissionContext(BaseModel):
    file_id: str
    row_key: str
    site: SiteRecord
    issue: str
    remarks: str = ""
    photos: List[str] = Field(default_factory=list)
    actor_role: str
    actor_user_id: str = ""
    priority: str = "Medium"


class ObservationResult(BaseModel):
    context: SubmissionContext
    observation: SiteObservation
    routing: FanOutResult
    approval: Optional[Action] = None


class WorkflowEngine:
    """Routes observations, drives action transitions and answers status queries."""

    def __init__(
        self,
        actions: Optional[ActionStore] = None,
        observations: Optional[ObservationStore] = None,
        exclusions: Optional[ExclusionStore] = None,
        router: Optional[RoutingEngine] = None,
    ) -> None:
        self.actions = actions if actions is not None else create_action_store_from_env()
        self.observations = observations if observations is not None else ObservationStore()
        self.exclusions = exclusions if exclusions is not None else ExclusionStore()
        self.router = router or routing_engine
        self.coordinator = ApprovalCoordinator(self.actions, self.observations, self.exclusions)
        self.aggregator = StatusAggregator(self.actions, self.observations)
        self.exclusion_filter = ExclusionFilter(self.exclusions)
        self._lock = threading.RLock()

    # Core operations consumed by the presentation layer.

    def resolve_row_key(self, file_id: str, row: Mapping[str, Any], headers: Sequence[str]) -> str:
        return resolve_row_key(file_id, row, headers)

    def route(
        self,
        issue: str,
        device_type: Optional[str],
        circle: Optional[str],
        site_code: Optional[str],
        division: Optional[str] = None,
    ) -> DestinationSet:
        return self.router.route(issue, device_type, circle, site_code, division)

    def display_status(self, site: SiteRef, viewer_role: str, *, row_key: Optional[str] = None) -> str:
        return self.aggregator.display_status(site, viewer_role, row_key=row_key)

    def is_excluded(self, row_key: Optional[str], site_code: Optional[str], file_id: Optional[str] = None) -> bool:
        return self.exclusion_filter.is_excluded(row_key, site_code, file_id)

    def filter_rows(self, file_id: str, rows: List[Mapping[str, Any]], headers: Sequence[str]) -> List[Mapping[str, Any]]:
        return self.exclusion_filter.filter_rows(file_id, rows, headers)

    # Submission.

    def _create_routed_action(self, context: SubmissionContext, destination: Destination) -> Action:
        site = context.site
        action = create_action(
            source_file_id=context.file_id,
            row_key=context.row_key,
            site_code=site.site_code,
            device_type=site.device_type,
            division=site.division,
            circle=site.circle,
            type_of_issue=context.issue,
            assigned_by_role=context.actor_role,
            assigned_by_user_id=context.actor_user_id,
            assigned_to_role=destination.role,
            assigned_to_vendor=destination.vendor,
            remarks=context.remarks,
            photos=context.photos,
            priority=context.priority,
        )
        with self._lock:
            self.actions.add(action)
        logger.info(
            "Routed %s at site %s to %s (action_id=%s)",
            context.issue,
            site.site_code,
            destination.label,
            action.id,
        )
        return action

    def submit_action(
        self,
        row_data: Mapping[str, Any],
        headers: Sequence[str],
        destination_team: str,
        issue_type: str,
        remarks: str = "",
        photos: Optional[List[str]] = None,
        source_file_id: str = "",
        row_key: Optional[str] = None,
        *,
        actor_role: str,
        actor_user_id: str = "",
        priority: str = "Medium",
    ) -> Action:
        """Creates one routed action for an explicitly chosen destination team."""
        role = role_for_team(destination_team)
        if role is None:
            raise ValueError(f"Invalid routing: {destination_team}")
        site = SiteRecord.from_row(row_data, headers)
        if not site.site_code:
            raise ValueError("Site code missing from row data")

        vendor: Optional[str] = None
        if role == "AMC":
            amc = self.router.select_amc_vendor(site.site_code, site.device_type, site.circle, site.division, any_device=True)
            vendor = amc.vendor if amc is not None else None

        context = SubmissionContext(
            file_id=source_file_id,
            row_key=row_key or resolve_row_key(source_file_id, row_data, headers),
            site=site,
            issue=issue_type,
            remarks=remarks,
            photos=list(photos or []),
            actor_role=actor_role,
            actor_user_id=actor_user_id,
            priority=priority,
        )
        destination = Destination(team=team_for_role(role), role=role, vendor=vendor, rule="explicit")
        return self._create_routed_action(context, destination)

    def submit_observation(
        self,
        file_id: str,
        row: Mapping[str, Any],
        headers: Sequence[str],
        issue_type: str = "",
        *,
        actor_role: str,
        actor_user_id: str = "",
        remarks: str = "",
        photos: Optional[List[str]] = None,
        status: ObservationStatus = ObservationStatus.PENDING,
        priority: str = "Medium",
    ) -> ObservationResult:
        """Records a role's observation of a row and routes it to the responsible teams."""
        site = SiteRecord.from_row(row, headers)
        if not site.site_code:
            raise ValueError("Site code missing from row data")
        context = SubmissionContext(
            file_id=file_id,
            row_key=resolve_row_key(file_id, row, headers),
            site=site,
            issue=issue_type,
            remarks=remarks,
            photos=list(photos or []),
            actor_role=actor_role,
            actor_user_id=actor_user_id,
            priority=priority,
        )
        with self._lock:
            observation = self.observations.set(
                SiteObservation(
                    role=actor_role,
                    site_code=site.site_code,
                    row_key=context.row_key,
                    file_id=file_id,
                    user_id=actor_user_id,
                    status=status,
                    type_of_issue=issue_type,
                    remarks=remarks,
                    photos=list(photos or []),
                )
            )

            if status == ObservationStatus.RESOLVED:
                approval = self.coordinator.on_observation_resolved(
                    actor_role,
                    actor_user_id,
                    site_code=site.site_code,
                    row_key=context.row_key,
                    file_id=file_id,
                    remarks=remarks or None,
                    photos=list(photos) if photos else None,
                )
                empty = FanOutResult(site_code=site.site_code, issue=issue_type)
                return ObservationResult(context=context, observation=observation, routing=empty, approval=approval)

        destinations = self.route(issue_type, site.device_type, site.circle, site.site_code, site.division)
        routing = fan_out(
            destinations.destinations,
            lambda destination: self._create_routed_action(context, destination),
            site_code=site.site_code,
            issue=destinations.issue,
            warnings=destinations.warnings,
        )
        return ObservationResult(context=context, observation=observation, routing=routing)

    def retry_submission(self, result: ObservationResult) -> ObservationResult:
        context = result.context
        routing = retry_failed(result.routing, lambda destination: self._create_routed_action(context, destination))
        return result.model_copy(update={"routing": routing})

    # Transitions.

    def update_action_status(
        self,
        action_id: str,
        status: Any,
        remarks: Optional[str] = None,
        *,
        actor_role: str,
        actor_user_id: str = "",
        outcome: Optional[ApprovalOutcome] = None,
        photos: Optional[List[str]] = None,
    ) -> Action:
        target = parse_status(status)
        if outcome in (ApprovalOutcome.RECHECK_REQUESTED, ApprovalOutcome.KEPT_FOR_MONITORING):
            target = ActionStatus.IN_PROGRESS
        with self._lock:
            action = self.actions.require(action_id)

            same_outcome = outcome is None or outcome == action.approval_outcome
            if target == action.status and target != ActionStatus.COMPLETED and same_outcome:
                updated = apply_transition(action, ActionEvent.ANNOTATE, actor_role=actor_role, remarks=remarks, photos=photos)
                return self.actions.save(updated)

            if target == ActionStatus.COMPLETED:
                updated = apply_transition(
                    action,
                    ActionEvent.COMPLETE,
                    actor_role=actor_role,
                    remarks=remarks,
                    outcome=outcome,
                )
                self.actions.save(updated)
                self.coordinator.on_action_completed(updated, actor_user_id)
                return updated

            if target == ActionStatus.IN_PROGRESS:
                if outcome == ApprovalOutcome.KEPT_FOR_MONITORING:
                    return self.coordinator.keep_for_monitoring(action, actor_role, remarks)
                return self.coordinator.request_recheck(action, actor_role, remarks)

            if action.status == ActionStatus.IN_PROGRESS:
                resubmitted = apply_transition(action, ActionEvent.RESUBMIT, actor_role=actor_role, remarks=remarks)
                return self.actions.save(resubmitted)

        raise InvalidTransition(action_id, f"set_status:{target.value}", f"not reachable from {action.status.value}")

    def reroute_action(
        self,
        action_id: str,
        new_assignee_role: str,
        new_assignee_user_id: Optional[str] = None,
        remarks: Optional[str] = None,
        photos: Optional[List[str]] = None,
        *,
        actor_role: str = "",
    ) -> Action:
        new_role = role_for_team(new_assignee_role) or new_assignee_role
        with self._lock:
            action = self.actions.require(action_id)
            vendor: Optional[str] = None
            if new_role == "AMC":
                amc = self.router.select_amc_vendor(
                    action.site_code, action.device_type, action.circle, action.division, any_device=True
                )
                vendor = amc.vendor if amc is not None else None
            updated = apply_transition(
                action,
                ActionEvent.REROUTE,
                actor_role=actor_role,
                remarks=remarks,
                photos=photos,
                new_role=new_role,
                new_user_id=new_assignee_user_id,
                new_vendor=vendor,
            )
            self.actions.save(updated)
        logger.info(
            "Rerouted action %s at site %s from %s to %s",
            action_id,
            action.site_code,
            action.assigned_to_role,
            new_role,
        )
        return updated

    # Queries.

    def list_my_actions(self, role: str, user_id: Optional[str] = None, *, include_excluded: bool = False) -> List[Action]:
        actions = self.actions.list_assigned_to(role, user_id)
        return actions if include_excluded else self.exclusion_filter.filter_actions(actions)

    def list_actions_i_routed(
        self, role: str, user_id: Optional[str] = None, *, include_excluded: bool = False
    ) -> List[Action]:
        actions = self.actions.list_assigned_by(role, user_id)
        return actions if include_excluded else self.exclusion_filter.filter_actions(actions)

    def list_excluded_sites(self, file_id: Optional[str] = None) -> ExclusionSet:
        return self.exclusion_filter.excluded_sites(file_id)

    def next_approval(self, action: Action) -> Optional[Action]:
        """The open approval a just-completed action handed its resolution to."""
        if action.status != ActionStatus.COMPLETED or action.assigned_to_role == TERMINAL_AUTHORITY:
            return None
        role = action.assigned_to_role
        return self.coordinator.open_approval(action.site_code, role, approver_for(role))
