import logging

import pytest

from siteflow.core.config import RoutingConfig
from siteflow.core.stores import InMemoryActionStore
from siteflow.routing.rules import RoutingEngine
from siteflow.workflow.actions import ActionKind, ActionNotFound, ActionStatus, ApprovalOutcome, InvalidTransition
from siteflow.workflow.engine import WorkflowEngine
from siteflow.workflow.exclusion import ExclusionStore
from siteflow.workflow.observations import ObservationStatus, ObservationStore
from siteflow.workflow.status import dedupe_actions

HEADERS = ["Site Code", "Device Type", "Circle", "Division"]
ROW = {"Site Code": "BLR001", "Device Type": "RMU", "Circle": "SOUTH", "Division": "HSR"}


def _engine(actions=None) -> WorkflowEngine:
    router = RoutingEngine(RoutingConfig(circle_vendors={"SOUTH": "VendorSouth"}, override_site_codes=[]))
    return WorkflowEngine(
        actions=actions if actions is not None else InMemoryActionStore(),
        observations=ObservationStore(mode="inmem"),
        exclusions=ExclusionStore(mode="inmem"),
        router=router,
    )


def _observe(engine, issue="Faulty", role="Equipment", status=ObservationStatus.PENDING, row=ROW):
    return engine.submit_observation("file-1", row, HEADERS, issue, actor_role=role, actor_user_id="u-eq", status=status)


def _assigned(engine, role):
    return [a for a in engine.list_my_actions(role) if a.kind == ActionKind.ROUTING]


class FlakyActionStore(InMemoryActionStore):
    def __init__(self, failing_role):
        super().__init__()
        self.failing_role = failing_role

    def add(self, action):
        if action.assigned_to_role == self.failing_role:
            raise RuntimeError("store unavailable")
        return super().add(action)


def test_submit_observation_creates_one_action_per_destination():
    engine = _engine()
    result = _observe(engine)

    assert result.routing.complete
    assert [a.assigned_to_role for a in result.routing.created] == ["O&M", "AMC"]
    assert result.routing.created[1].assigned_to_vendor == "VendorSouth"
    assert result.context.row_key == "file-1-BLR001|RMU|SOUTH"
    assert engine.display_status("BLR001", "Equipment") == "Pending at O&M Team; Pending at Vendor (VendorSouth)"


def test_partial_fan_out_failure_retries_only_failed_destination(caplog):
    store = FlakyActionStore(failing_role="AMC")
    engine = _engine(actions=store)

    with caplog.at_level(logging.WARNING):
        result = _observe(engine)

    assert not result.routing.complete
    assert [a.assigned_to_role for a in result.routing.created] == ["O&M"]
    assert result.routing.failed[0].destination.role == "AMC"
    assert "store unavailable" in caplog.text

    store.failing_role = None
    retried = engine.retry_submission(result)

    assert retried.routing.complete
    assert retried.routing.outcomes[1].attempts == 2
    assert sorted(a.assigned_to_role for a in store.list_all()) == ["AMC", "O&M"]


def test_completing_om_does_not_resolve_equipment_view_while_amc_pending():
    engine = _engine()
    _observe(engine)
    om_action = _assigned(engine, "O&M")[0]

    engine.update_action_status(om_action.id, "Completed", "fixed", actor_role="O&M")

    assert engine.display_status("BLR001", "Equipment") == "Pending at Vendor (VendorSouth)"
    assert engine.display_status("BLR001", "O&M") == "Pending at CCR Team"
    assert engine.display_status("BLR001", "AMC") == "Pending"


def test_amc_sees_only_its_approval_phase_through_recheck():
    engine = _engine()
    _observe(engine)
    amc_action = _assigned(engine, "AMC")[0]

    engine.update_action_status(amc_action.id, "Completed", "spare replaced", actor_role="AMC")
    assert engine.display_status("BLR001", "AMC") == "Pending Equipment Approval"
    assert engine.display_status("BLR001", "Equipment") == "Pending at O&M Team; Resolved at Vendor (VendorSouth)"

    approval = engine.list_my_actions("Equipment")[0]
    assert approval.type_of_issue == "AMC Resolution Approval"
    assert approval.origin_row_key == "file-1-BLR001|RMU|SOUTH"

    engine.update_action_status(approval.id, "InProgress", "photo unclear", actor_role="Equipment")
    assert engine.display_status("BLR001", "AMC") == "Recheck Requested"
    assert engine.observations.status("AMC", site_code="BLR001") == ObservationStatus.NONE

    resolved = _observe(engine, role="AMC", status=ObservationStatus.RESOLVED)
    assert resolved.approval is not None
    assert resolved.approval.id == approval.id
    assert resolved.approval.status == ActionStatus.PENDING
    assert engine.display_status("BLR001", "AMC") == "Pending Equipment Approval"


def test_recheck_outcome_is_treated_as_recheck_request():
    engine = _engine()
    _observe(engine)
    amc_action = _assigned(engine, "AMC")[0]
    engine.update_action_status(amc_action.id, "Completed", actor_role="AMC")
    approval = engine.list_my_actions("Equipment")[0]

    rechecked = engine.update_action_status(
        approval.id, "Completed", actor_role="Equipment", outcome=ApprovalOutcome.RECHECK_REQUESTED
    )
    assert rechecked.status == ActionStatus.IN_PROGRESS


def test_ccr_kept_for_monitoring_keeps_site_visible_until_approved():
    engine = _engine()
    _observe(engine, issue="Line Idle")
    om_action = _assigned(engine, "O&M")[0]
    engine.update_action_status(om_action.id, "Completed", actor_role="O&M")

    ccr_approval = engine.list_my_actions("CCR")[0]
    assert ccr_approval.type_of_issue == "CCR Resolution Approval"
    monitored = engine.update_action_status(
        ccr_approval.id, "Completed", "watch for 48h", actor_role="CCR", outcome=ApprovalOutcome.KEPT_FOR_MONITORING
    )

    assert monitored.status == ActionStatus.IN_PROGRESS
    assert monitored.approval_outcome == ApprovalOutcome.KEPT_FOR_MONITORING
    assert not engine.is_excluded(None, "BLR001")
    assert [a.id for a in engine.list_my_actions("CCR")] == [ccr_approval.id]
    assert engine.display_status("BLR001", "O&M") == "Kept for Monitoring by CCR Team"

    # Resolving again does not pull a monitored approval back to Pending.
    again = _observe(engine, role="O&M", status=ObservationStatus.RESOLVED)
    assert again.approval.id == ccr_approval.id
    assert again.approval.status == ActionStatus.IN_PROGRESS

    approved = engine.update_action_status(ccr_approval.id, "Completed", actor_role="CCR")
    assert approved.approval_outcome == ApprovalOutcome.APPROVED
    assert engine.is_excluded(None, "blr001")
    assert engine.list_my_actions("CCR") == []
    assert len(engine.list_my_actions("CCR", include_excluded=True)) == 1


def test_status_transitions_out_of_completed_are_rejected():
    engine = _engine()
    _observe(engine)
    om_action = _assigned(engine, "O&M")[0]
    engine.update_action_status(om_action.id, "Completed", actor_role="O&M")

    with pytest.raises(InvalidTransition):
        engine.update_action_status(om_action.id, "Completed", actor_role="O&M")
    with pytest.raises(InvalidTransition):
        engine.update_action_status(om_action.id, "Pending", actor_role="O&M")
    with pytest.raises(InvalidTransition):
        engine.reroute_action(om_action.id, "Relay Team", actor_role="Equipment")


def test_in_progress_is_only_reachable_for_approvals():
    engine = _engine()
    _observe(engine)
    om_action = _assigned(engine, "O&M")[0]
    with pytest.raises(InvalidTransition):
        engine.update_action_status(om_action.id, "InProgress", actor_role="O&M")
    assert engine.actions.require(om_action.id).status == ActionStatus.PENDING


def test_same_status_update_annotates():
    engine = _engine()
    _observe(engine)
    om_action = _assigned(engine, "O&M")[0]

    updated = engine.update_action_status(om_action.id, "Pending", "crew on the way", actor_role="O&M")

    assert updated.status == ActionStatus.PENDING
    assert engine.actions.require(om_action.id).remarks == "crew on the way"


def test_unknown_action_raises_not_found():
    engine = _engine()
    with pytest.raises(ActionNotFound):
        engine.update_action_status("missing", "Completed", actor_role="O&M")


def test_reroute_recomputes_vendor_and_keeps_content():
    engine = _engine()
    _observe(engine)
    om_action = _assigned(engine, "O&M")[0]

    moved = engine.reroute_action(om_action.id, "AMC Team", remarks="needs spare", actor_role="Equipment")
    again = engine.reroute_action(om_action.id, "AMC Team", remarks="needs spare", actor_role="Equipment")

    assert again.id == om_action.id
    assert moved.assigned_to_role == "AMC"
    assert moved.assigned_to_vendor == "VendorSouth"
    assert again.remarks == om_action.remarks
    assert len([a for a in engine.list_my_actions("AMC") if a.id == om_action.id]) == 1
    assert all(a.id != om_action.id for a in engine.list_my_actions("O&M"))


def test_submit_action_to_explicit_team():
    engine = _engine()
    row = dict(ROW, **{"Device Type": "FPI"})

    action = engine.submit_action(
        row, HEADERS, "AMC Team", "Spare Required", "need FPI", [], "file-1", actor_role="O&M"
    )

    assert action.assigned_to_role == "AMC"
    assert action.assigned_to_vendor == "VendorSouth"
    assert action.row_key == "file-1-BLR001|FPI|SOUTH"
    assert engine.list_actions_i_routed("O&M")[0].id == action.id

    with pytest.raises(ValueError):
        engine.submit_action(row, HEADERS, "Catering Team", "Faulty", actor_role="O&M")


def test_duplicate_submissions_are_collapsed_in_display():
    engine = _engine()
    _observe(engine)
    _observe(engine)

    assert len(engine.actions.list_for_site("BLR001")) == 4
    assert len(dedupe_actions(engine.actions.list_for_site("BLR001"))) == 2
    assert engine.display_status("BLR001", "Equipment") == "Pending at O&M Team; Pending at Vendor (VendorSouth)"


def test_resolution_deferred_while_routed_work_is_open():
    engine = _engine()
    _observe(engine)

    result = _observe(engine, role="Equipment", status=ObservationStatus.RESOLVED)

    assert result.approval is None
    assert engine.list_my_actions("CCR") == []


def test_uninvolved_role_sees_nothing():
    engine = _engine()
    _observe(engine)
    assert engine.display_status("BLR001", "Relay") == ""
