from siteflow.workflow.actions import create_action
from siteflow.workflow.exclusion import ExclusionFilter, ExclusionSet, ExclusionStore

HEADERS = ["Site Code", "Device Type", "Circle"]


def _row(code, device="RMU"):
    return {"Site Code": code, "Device Type": device, "Circle": "SOUTH"}


def _action(code, row_key=""):
    return create_action(
        source_file_id="file-1",
        row_key=row_key,
        site_code=code,
        type_of_issue="Faulty",
        assigned_by_role="Equipment",
        assigned_to_role="O&M",
    )


def test_store_keeps_exclusions_per_file_and_unions_them():
    store = ExclusionStore(mode="inmem")
    store.add("file-1", "file-1-A|RMU|SOUTH", "a")
    store.add("file-2", None, "B")
    store.add("file-2", None, "B")
    store.add("file-3", "", "")

    assert store.get("file-1").site_codes == ["A"]
    assert store.get("file-2").row_keys == []
    everywhere = store.get()
    assert everywhere.site_codes == ["A", "B"]
    assert everywhere.row_keys == ["file-1-A|RMU|SOUTH"]


def test_exclusion_set_matches_row_key_or_normalized_site_code():
    exclusions = ExclusionSet(row_keys=["f-X|RMU|SOUTH"], site_codes=["BLR001"])
    assert exclusions.contains("f-X|RMU|SOUTH", None)
    assert exclusions.contains(None, " blr001 ")
    assert not exclusions.contains("f-Y", "BLR002")
    assert not exclusions.contains(None, "")


def test_site_code_exclusion_applies_to_other_files():
    store = ExclusionStore(mode="inmem")
    store.add("file-1", "file-1-BLR001|RMU|SOUTH", "BLR001")
    exclusion_filter = ExclusionFilter(store)

    assert exclusion_filter.is_excluded(None, "BLR001", file_id="file-2")
    assert exclusion_filter.is_excluded("file-1-BLR001|RMU|SOUTH", None, file_id="file-1")
    assert not exclusion_filter.is_excluded("file-2-BLR001|RMU|SOUTH", None, file_id="file-2")

    rows = [_row("BLR001"), _row("BLR002"), _row("blr001", device="FPI")]
    assert exclusion_filter.filter_rows("file-2", rows, HEADERS) == [_row("BLR002")]


def test_filter_actions_hides_excluded_sites():
    store = ExclusionStore(mode="inmem")
    store.add("file-1", "file-1-BLR001|RMU|SOUTH", None)
    exclusion_filter = ExclusionFilter(store)

    kept = exclusion_filter.filter_actions(
        [_action("BLR001", "file-1-BLR001|RMU|SOUTH"), _action("BLR001", "file-1-BLR001|FPI|SOUTH"), _action("BLR002")]
    )

    assert [a.row_key for a in kept] == ["file-1-BLR001|FPI|SOUTH", ""]
