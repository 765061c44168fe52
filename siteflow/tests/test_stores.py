import json
import sqlite3

from siteflow.core.config import RoutingConfig
from siteflow.core.stores import InMemoryActionStore, SQLiteActionStore, create_action_store_from_env
from siteflow.routing.rules import RoutingEngine
from siteflow.workflow.actions import ActionEvent, ActionStatus, apply_transition, create_action
from siteflow.workflow.engine import WorkflowEngine
from siteflow.workflow.exclusion import ExclusionStore
from siteflow.workflow.observations import ObservationStatus, ObservationStore, SiteObservation


def _action(**overrides):
    values = {
        "source_file_id": "file-1",
        "row_key": "file-1-BLR001|RMU|SOUTH",
        "site_code": "BLR001",
        "type_of_issue": "Faulty",
        "assigned_by_role": "Equipment",
        "assigned_to_role": "O&M",
        "photos": ["p1.jpg"],
    }
    values.update(overrides)
    return create_action(**values)


def test_sqlite_action_store_persists_and_updates(tmp_path):
    db_path = tmp_path / "siteflow_state.db"
    store = SQLiteActionStore(str(db_path))
    action = store.add(_action())

    store.save(apply_transition(action, ActionEvent.COMPLETE, actor_role="O&M"))

    reopened = SQLiteActionStore(str(db_path))
    restored = reopened.require(action.id)
    assert restored.status == ActionStatus.COMPLETED
    assert restored.photos == ["p1.jpg"]
    assert [entry["event"] for entry in restored.history] == ["create", "complete"]

    with sqlite3.connect(str(db_path)) as conn:
        row = conn.execute("SELECT status, payload_json FROM actions WHERE id = ?", (action.id,)).fetchone()
        meta = conn.execute("SELECT version FROM schema_meta WHERE component = 'actions'").fetchone()
    assert row[0] == "Completed"
    assert json.loads(row[1])["site_code"] == "BLR001"
    assert meta[0] == SQLiteActionStore.SCHEMA_VERSION


def test_assignment_queries_filter_by_user(tmp_path):
    for store in (InMemoryActionStore(), SQLiteActionStore(str(tmp_path / "state.db"))):
        store.add(_action(assigned_to_user_id="u1"))
        store.add(_action(assigned_to_user_id=""))
        store.add(_action(assigned_to_user_id="u2"))
        store.add(_action(assigned_to_role="AMC", assigned_by_user_id="boss"))

        assert len(store.list_assigned_to("O&M")) == 3
        assert len(store.list_assigned_to("O&M", "u1")) == 2
        assert len(store.list_assigned_by("Equipment", "boss")) == 4
        assert len(store.list_assigned_by("Equipment", "someone-else")) == 3
        assert len(store.list_for_site(" blr001 ")) == 4
        assert store.get("missing") is None


def test_create_action_store_from_env_selects_sqlite(monkeypatch, tmp_path):
    monkeypatch.setenv("SITEFLOW_STORE", "sqlite")
    monkeypatch.setenv("SITEFLOW_SQLITE_PATH", str(tmp_path / "env.db"))
    assert isinstance(create_action_store_from_env(), SQLiteActionStore)

    monkeypatch.setenv("SITEFLOW_STORE", "inmem")
    assert isinstance(create_action_store_from_env(), InMemoryActionStore)


def test_sqlite_observation_store_prefers_row_key(tmp_path):
    store = ObservationStore(mode="sqlite", sqlite_path=str(tmp_path / "obs.db"))
    store.set(SiteObservation(role="AMC", site_code="blr001", row_key="f-1", status=ObservationStatus.PENDING, remarks="x"))
    store.set(SiteObservation(role="AMC", site_code="BLR001", row_key="f-2", status=ObservationStatus.RESOLVED))

    assert store.status("AMC", row_key="f-1") == ObservationStatus.PENDING
    assert store.status("AMC", site_code="BLR001") == ObservationStatus.RESOLVED
    assert store.status("O&M", site_code="BLR001") == ObservationStatus.NONE

    marked = store.mark("AMC", ObservationStatus.NONE, site_code="BLR001", row_key="f-1")
    assert marked.remarks == "x"
    assert store.status("AMC", row_key="f-1") == ObservationStatus.NONE
    assert len(store.list_for_site("BLR001")) == 2


def test_sqlite_exclusion_store_is_append_only(tmp_path):
    path = str(tmp_path / "excl.db")
    store = ExclusionStore(mode="sqlite", sqlite_path=path)
    store.add("file-1", "file-1-BLR001|RMU|SOUTH", "BLR001")
    store.add("file-1", "file-1-BLR001|RMU|SOUTH", "BLR001")

    reopened = ExclusionStore(mode="sqlite", sqlite_path=path)
    excluded = reopened.get("file-1")
    assert excluded.site_codes == ["BLR001"]
    assert excluded.row_keys == ["file-1-BLR001|RMU|SOUTH"]


def test_workflow_runs_on_sqlite_stores(tmp_path):
    path = str(tmp_path / "flow.db")
    engine = WorkflowEngine(
        actions=SQLiteActionStore(path),
        observations=ObservationStore(mode="sqlite", sqlite_path=path),
        exclusions=ExclusionStore(mode="sqlite", sqlite_path=path),
        router=RoutingEngine(RoutingConfig(circle_vendors={"SOUTH": "VendorSouth"})),
    )
    row = {"Site Code": "BLR001", "Device Type": "RMU", "Circle": "SOUTH"}
    result = engine.submit_observation("file-1", row, list(row), "Line Idle", actor_role="Equipment")
    om_action = result.routing.created[0]

    engine.update_action_status(om_action.id, "Completed", actor_role="O&M")
    ccr = engine.list_my_actions("CCR")[0]
    engine.update_action_status(ccr.id, "Completed", actor_role="CCR")

    assert ExclusionStore(mode="sqlite", sqlite_path=path).get("file-1").site_codes == ["BLR001"]
