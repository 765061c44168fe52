import pytest

from siteflow.workflow.actions import (
    ActionEvent,
    ActionKind,
    ActionStatus,
    ApprovalOutcome,
    InvalidTransition,
    apply_transition,
    approval_issue_type,
    create_action,
    parse_status,
)


def _routing_action(**overrides):
    values = {
        "source_file_id": "file-1",
        "row_key": "file-1-BLR001|RMU|SOUTH",
        "site_code": "blr001",
        "device_type": "RMU",
        "type_of_issue": "Faulty",
        "assigned_by_role": "Equipment",
        "assigned_to_role": "O&M",
        "remarks": "breaker tripped",
        "photos": ["p1.jpg"],
    }
    values.update(overrides)
    return create_action(**values)


def _approval_action():
    return _routing_action(
        kind=ActionKind.APPROVAL,
        type_of_issue=approval_issue_type("AMC", "Equipment"),
        assigned_by_role="AMC",
        assigned_to_role="Equipment",
    )


def test_create_action_starts_pending_with_history():
    action = _routing_action()
    assert action.status == ActionStatus.PENDING
    assert action.site_code == "BLR001"
    assert [entry["event"] for entry in action.history] == ["create"]


def test_complete_returns_new_action_and_leaves_input_untouched():
    action = _routing_action()
    done = apply_transition(action, ActionEvent.COMPLETE, actor_role="O&M")

    assert done.status == ActionStatus.COMPLETED
    assert done.completed_at
    assert done.approval_outcome is None
    assert action.status == ActionStatus.PENDING


@pytest.mark.parametrize("event", list(ActionEvent))
def test_every_event_on_completed_action_is_rejected(event):
    done = apply_transition(_routing_action(), ActionEvent.COMPLETE)
    with pytest.raises(InvalidTransition):
        apply_transition(done, event, new_role="Relay")


def test_recheck_only_applies_to_approvals():
    with pytest.raises(InvalidTransition):
        apply_transition(_routing_action(), ActionEvent.REQUEST_RECHECK, actor_role="Equipment")


def test_recheck_then_resubmit_cycle():
    approval = _approval_action()
    rechecked = apply_transition(approval, ActionEvent.REQUEST_RECHECK, actor_role="Equipment", remarks="photo unclear")
    assert rechecked.status == ActionStatus.IN_PROGRESS
    assert rechecked.approval_outcome == ApprovalOutcome.RECHECK_REQUESTED

    resubmitted = apply_transition(rechecked, ActionEvent.RESUBMIT, actor_role="AMC", photos=["p2.jpg"])
    assert resubmitted.status == ActionStatus.PENDING
    assert resubmitted.approval_outcome is None
    assert resubmitted.photos == ["p2.jpg"]


def test_resubmit_requires_a_rechecked_approval():
    with pytest.raises(InvalidTransition):
        apply_transition(_approval_action(), ActionEvent.RESUBMIT)


def test_approval_completion_records_outcome():
    default = apply_transition(_approval_action(), ActionEvent.COMPLETE)
    assert default.approval_outcome == ApprovalOutcome.APPROVED
    assert default.status == ActionStatus.COMPLETED


def test_kept_for_monitoring_leaves_approval_open_until_approved():
    monitored = apply_transition(_approval_action(), ActionEvent.KEEP_FOR_MONITORING, actor_role="CCR", remarks="watch 48h")
    assert monitored.status == ActionStatus.IN_PROGRESS
    assert monitored.approval_outcome == ApprovalOutcome.KEPT_FOR_MONITORING
    assert monitored.is_open

    with pytest.raises(InvalidTransition):
        apply_transition(monitored, ActionEvent.RESUBMIT, actor_role="AMC")

    approved = apply_transition(monitored, ActionEvent.COMPLETE, actor_role="CCR")
    assert approved.status == ActionStatus.COMPLETED
    assert approved.approval_outcome == ApprovalOutcome.APPROVED


def test_monitoring_applies_only_to_approvals():
    with pytest.raises(InvalidTransition):
        apply_transition(_routing_action(), ActionEvent.KEEP_FOR_MONITORING, actor_role="CCR")


def test_completion_outcome_rules():
    with pytest.raises(InvalidTransition):
        apply_transition(_approval_action(), ActionEvent.COMPLETE, outcome=ApprovalOutcome.RECHECK_REQUESTED)
    with pytest.raises(InvalidTransition):
        apply_transition(_approval_action(), ActionEvent.COMPLETE, outcome=ApprovalOutcome.KEPT_FOR_MONITORING)
    with pytest.raises(InvalidTransition):
        apply_transition(_routing_action(), ActionEvent.COMPLETE, outcome=ApprovalOutcome.APPROVED)


def test_reroute_twice_leaves_single_assignee_and_original_content():
    action = _routing_action()
    once = apply_transition(action, ActionEvent.REROUTE, actor_role="Equipment", new_role="Relay", remarks="wrong team")
    twice = apply_transition(once, ActionEvent.REROUTE, actor_role="Equipment", new_role="Relay", remarks="wrong team")

    assert twice.id == action.id
    assert twice.assigned_to_role == "Relay"
    assert twice.status == ActionStatus.PENDING
    assert twice.remarks == "breaker tripped"
    assert twice.photos == ["p1.jpg"]
    reroutes = [entry for entry in twice.history if entry["event"] == "reroute"]
    assert len(reroutes) == 1
    assert reroutes[0]["from_role"] == "O&M"
    assert reroutes[0]["to_role"] == "Relay"
    assert twice.was_party("O&M")


def test_reroute_to_same_role_with_new_vendor_updates_vendor():
    action = _routing_action(assigned_to_role="AMC", assigned_to_vendor="VendorSouth")
    moved = apply_transition(action, ActionEvent.REROUTE, actor_role="Equipment", new_role="AMC", new_vendor="VendorNorth")

    assert moved.assigned_to_vendor == "VendorNorth"
    assert moved.history[-1]["from_vendor"] == "VendorSouth"
    assert moved.history[-1]["to_vendor"] == "VendorNorth"

    same = apply_transition(moved, ActionEvent.REROUTE, actor_role="Equipment", new_role="AMC", new_vendor="VendorNorth")
    assert len(same.history) == len(moved.history)


def test_reroute_requires_new_role():
    with pytest.raises(InvalidTransition):
        apply_transition(_routing_action(), ActionEvent.REROUTE)


def test_annotate_updates_remarks_only():
    noted = apply_transition(_routing_action(), ActionEvent.ANNOTATE, remarks="crew dispatched")
    assert noted.remarks == "crew dispatched"
    assert noted.photos == ["p1.jpg"]
    assert noted.status == ActionStatus.PENDING


def test_parse_status_accepts_display_forms():
    assert parse_status("In Progress") == ActionStatus.IN_PROGRESS
    assert parse_status("completed") == ActionStatus.COMPLETED
    assert parse_status(ActionStatus.PENDING) == ActionStatus.PENDING
    with pytest.raises(ValueError):
        parse_status("Done")


def test_approval_issue_type_names():
    assert approval_issue_type("AMC", "Equipment") == "AMC Resolution Approval"
    assert approval_issue_type("Equipment", "CCR") == "CCR Resolution Approval"
    assert approval_issue_type("O&M", "CCR") == "CCR Resolution Approval"
