import logging

from siteflow.core.identity import RowKey, migrate_keys, normalize_site_code, resolve_key, resolve_row_key
from siteflow.core.site_record import SiteRecord, canonical_header_map

HEADERS = ["Site Code", "Device Type", "Circle", "Division"]
ROW = {"Site Code": "BLR001", "Device Type": "RMU", "Circle": "SOUTH", "Division": "HSR"}


def test_resolve_key_is_deterministic():
    first = resolve_key("file-1", ROW, HEADERS)
    second = resolve_key("file-1", dict(ROW), list(HEADERS))
    assert first == second
    assert hash(first) == hash(second)
    assert str(first) == "file-1-BLR001|RMU|SOUTH"


def test_explicit_id_takes_precedence():
    row = dict(ROW, id=42)
    key = resolve_key("file-1", row, HEADERS)
    assert key.explicit is True
    assert str(key) == "file-1-42"


def test_all_values_used_when_leading_columns_are_empty():
    row = {"Site Code": "", "Device Type": "", "Circle": "", "Division": "HSR"}
    assert resolve_row_key("file-1", row, HEADERS) == "file-1-|||HSR"


def test_short_header_lists_use_every_value():
    assert resolve_row_key("f", {"A": "1", "B": "2"}, ["A", "B"]) == "f-1|2"


def test_key_depends_on_header_order():
    reordered = ["Circle", "Site Code", "Device Type", "Division"]
    assert resolve_row_key("f", ROW, reordered) != resolve_row_key("f", ROW, HEADERS)


def test_row_key_parse_rejects_other_files():
    key = resolve_key("file-1", ROW, HEADERS)
    assert RowKey.parse(str(key), "file-1") == key
    assert RowKey.parse(str(key), "file-2") is None


def test_migrate_keys_follows_rows_after_column_insert():
    old_key = resolve_row_key("file-1", ROW, HEADERS)
    new_headers = ["S.No", "Site Code", "Device Type", "Circle", "Division"]
    new_rows = [
        dict(ROW, **{"S.No": "1"}),
        {"S.No": "2", "Site Code": "BLR002", "Device Type": "FPI", "Circle": "NORTH", "Division": "X"},
    ]

    mapping = migrate_keys("file-1", new_rows, new_headers, [old_key])

    assert mapping == {"file-1-1|BLR001|RMU": old_key}


def test_migrate_keys_keeps_unchanged_keys():
    old_key = resolve_row_key("file-1", ROW, HEADERS)
    assert migrate_keys("file-1", [ROW], HEADERS, iter([old_key])) == {old_key: old_key}


def test_migrate_keys_treats_ambiguous_match_as_no_prior_state(caplog):
    old_key = resolve_row_key("file-1", ROW, HEADERS)
    new_headers = ["S.No"] + HEADERS
    rows = [dict(ROW, **{"S.No": "1"}), dict(ROW, **{"S.No": "2"})]

    with caplog.at_level(logging.WARNING):
        mapping = migrate_keys("file-1", rows, new_headers, [old_key])

    assert mapping == {}
    assert "Row key drift" in caplog.text


def test_normalize_site_code():
    assert normalize_site_code("  blr   001 ") == "BLR 001"
    assert normalize_site_code(None) == ""


def test_site_record_resolves_header_aliases_once():
    headers = ["SITE CODE", "device_type", "Circle Name", "Division", "No of Days Offline"]
    row = {"SITE CODE": " blr001 ", "device_type": "rmu", "Circle Name": "south", "Division": "hsr", "No of Days Offline": "4"}

    header_map = canonical_header_map(headers)
    record = SiteRecord.from_row(row, headers, header_map)

    assert header_map["site_code"] == "SITE CODE"
    assert record.site_code == "BLR001"
    assert record.device_type == "RMU"
    assert record.circle == "SOUTH"
    assert record.division == "HSR"
    assert record.days_offline == 4


def test_site_record_ignores_non_numeric_days_offline():
    headers = ["Site Code", "No of Days Offline"]
    for raw in ("inf", "-inf", "nan", "n/a", ""):
        record = SiteRecord.from_row({"Site Code": "BLR001", "No of Days Offline": raw}, headers)
        assert record.days_offline is None
