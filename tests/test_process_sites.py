from __future__ import annotations

from datetime import date

import pandas as pd
import pytest

import process_sites as sites
from tests.utils import ONLINE_OFFLINE_HEADERS, frame, online_offline_frame, primary_frame, upload


def test_resolve_header_prefers_exact_match_over_substring():
    headers = ["RTU DEVICE STATUS", "Device_Status", "SITE CODE"]
    assert sites.resolve_header(headers, ["device status"], ("device", "status")) == "Device_Status"


def test_resolve_header_substring_heuristic_respects_excludes():
    headers = ["RTU DEVICE STATUS", "Current Device Status"]
    assert sites.resolve_field(headers, "device_status") == "Current Device Status"
    assert sites.resolve_header(["RTU DEVICE STATUS"], [], ("device", "status"), ("rtu",)) is None


def test_resolve_header_missing_field_returns_none():
    assert sites.resolve_header(["A", "B"], ["site code"]) is None
    assert sites.resolve_header([], ["site code"], ("site", "code")) is None


def test_resolve_site_columns_caches_every_field():
    columns = sites.resolve_site_columns(["Site_Code", "Circle Name", "Sub-Division", "No Of Days Offline"])
    assert columns.site_code == "Site_Code"
    assert columns.circle == "Circle Name"
    assert columns.sub_division == "Sub-Division"
    assert columns.division is None
    assert columns.days_offline == "No Of Days Offline"
    assert columns.get("hrn") is None


def test_dataset_from_upload_fills_missing_cells_and_drops_repeated_headers():
    payload = {
        "headers": ["SITE CODE", "DEVICE STATUS", "SITE CODE"],
        "rows": [{"SITE CODE": "ABC1"}, {"SITE CODE": "XYZ2", "DEVICE STATUS": "ONLINE"}],
    }
    df = sites.dataset_from_upload(payload)
    assert list(df.columns) == ["SITE CODE", "DEVICE STATUS"]
    assert df.loc[0, "DEVICE STATUS"] == ""
    assert df.loc[1, "DEVICE STATUS"] == "ONLINE"


def test_normalize_site_code_ignores_case_spacing_and_punctuation():
    assert sites.normalize_site_code(" xyz-2 ") == "XYZ2"
    assert sites.normalize_site_code(None) == ""


def test_parse_header_date_day_first_then_year_first():
    assert sites.parse_header_date("DATE 05-01-2025") == date(2025, 1, 5)
    assert sites.parse_header_date("Date 2025/01/05") == date(2025, 1, 5)
    assert sites.parse_header_date("DATE 31-02-2025") is None
    assert sites.parse_header_date("DEVICE STATUS") is None


def test_group_date_columns_splits_members_and_skips_invalid_dates():
    headers = ["SITE CODE", "DATE 10-11-2025", "DEVICE STATUS", "TIME 31-02-2025", "DATE 15-11-2025", "SWITCH", "REMARK 15-11-2025"]
    groups = sites.group_date_columns(headers, "SITE CODE")
    assert [g.date_header for g in groups] == ["DATE 10-11-2025", "DATE 15-11-2025"]
    assert groups[0].member_headers == ("DEVICE STATUS", "TIME 31-02-2025")
    # no "date"/"time" token, so not a date header
    assert groups[1].member_headers == ("SWITCH", "REMARK 15-11-2025")
    assert groups[1].index == 4


def test_group_date_columns_without_dates_uses_fallback_group():
    headers = ["SITE CODE", "DEVICE STATUS", "EQUIPMENT L/R SWITCH STATUS", "NO OF DAYS OFFLINE", "HRN"]
    groups = sites.group_date_columns(headers, "SITE CODE")
    assert len(groups) == 1
    assert groups[0].is_synthetic
    assert groups[0].index == -1
    assert groups[0].member_headers == ("DEVICE STATUS", "EQUIPMENT L/R SWITCH STATUS", "NO OF DAYS OFFLINE")


def test_select_latest_group_ignores_input_order():
    early = sites.ColumnGroup("DATE 10-11-2025", date(2025, 11, 10), ("A",), 1)
    late = sites.ColumnGroup("DATE 15-11-2025", date(2025, 11, 15), ("B",), 3)
    assert sites.select_latest_group([early, late]) is late
    assert sites.select_latest_group([late, early]) is late
    assert sites.select_latest_group([]) is None


def test_select_latest_group_date_tie_goes_to_later_header():
    first = sites.ColumnGroup("DATE 15-11-2025", date(2025, 11, 15), ("A",), 1)
    second = sites.ColumnGroup("Date 2025-11-15", date(2025, 11, 15), ("B",), 5)
    assert sites.select_latest_group([second, first]) is second


def test_latest_group_value_wins_in_join():
    primary = frame(["SITE CODE", "DIVISION"], [["ABC1", "North"]])
    secondary = frame(
        ["SITE CODE", "DATE 01-01-2025", "DEVICE STATUS", "DATE 05-01-2025", "DEVICE STATUS.1"],
        [["ABC1", "01-01-2025", "OFFLINE", "05-01-2025", "ONLINE"]],
    )
    result = sites.merge_site_datasets(primary, [sites.SecondarySource("ONLINE-OFFLINE", secondary)])
    assert result.frame.loc[0, "DEVICE STATUS"] == "ONLINE"
    assert result.merged_columns == ["DEVICE STATUS"]
    assert result.groups["ONLINE-OFFLINE"].date == date(2025, 1, 5)


def test_join_fills_unmatched_sites_with_empty_string():
    primary = frame(["SITE CODE"], [["ABC1"], ["ZZZ9"], [""]])
    secondary = online_offline_frame()
    group = sites.select_latest_group(sites.group_date_columns(ONLINE_OFFLINE_HEADERS, "SITE CODE"))
    out = sites.join_latest_group(primary, "SITE CODE", secondary, "SITE CODE", group)
    assert list(out["DEVICE STATUS"]) == ["ONLINE", "", ""]
    assert not out.isna().any().any()


def test_join_repeated_site_prefers_row_with_date_then_first_seen():
    secondary = frame(
        ["SITE CODE", "DATE 05-01-2025", "DEVICE STATUS"],
        [["ABC1", "", "UNKNOWN"], ["abc 1", "05-01-2025", "ONLINE"], ["ABC1", "05-01-2025", "OFFLINE"]],
    )
    group = sites.group_date_columns(list(secondary.columns), "SITE CODE")[0]
    out = sites.join_latest_group(frame(["SITE CODE"], [["ABC1"]]), "SITE CODE", secondary, "SITE CODE", group)
    assert out.loc[0, "DEVICE STATUS"] == "ONLINE"


def test_join_is_idempotent():
    primary = primary_frame()
    secondary = online_offline_frame()
    group = sites.select_latest_group(sites.group_date_columns(ONLINE_OFFLINE_HEADERS, "SITE CODE"))
    once = sites.join_latest_group(primary, "SITE CODE", secondary, "SITE CODE", group)
    twice = sites.join_latest_group(once, "SITE CODE", secondary, "SITE CODE", group)
    pd.testing.assert_frame_equal(once, twice)


def test_merge_site_datasets_orders_tail_after_identity_columns():
    result = sites.merge_site_datasets(primary_frame(), [
        sites.SecondarySource("ONLINE-OFFLINE", online_offline_frame()),
        sites.SecondarySource("RTU-TRACKER", None),
    ])
    assert result.headers == [
        "SL NO", "CIRCLE", "DIVISION", "SUB DIVISION", "HRN",
        "ATTRIBUTE", "SITE CODE", "DEVICE STATUS", "NO OF DAYS OFFLINE",
    ]
    assert list(result.frame["DEVICE STATUS"]) == ["ONLINE", "OFFLINE", "OFFLINE"]
    assert list(result.frame["SITE CODE"]) == ["ABC1", "xyz 2", "PQR3"]
    assert result.columns.device_status == "DEVICE STATUS"
    assert result.groups["RTU-TRACKER"] is None


def test_merge_skips_secondary_without_site_code():
    secondary = frame(["CODE", "DEVICE STATUS"], [["ABC1", "ONLINE"]])
    result = sites.merge_site_datasets(primary_frame(), [sites.SecondarySource("RTU-TRACKER", secondary)])
    assert result.merged_columns == []
    assert "DEVICE STATUS" not in result.headers


def test_merge_limits_columns_when_requested():
    source = sites.SecondarySource("ONLINE-OFFLINE", online_offline_frame(), columns=["DEVICE STATUS"])
    result = sites.merge_site_datasets(primary_frame(), [source])
    assert result.merged_columns == ["DEVICE STATUS"]
    assert "NO OF DAYS OFFLINE" not in result.headers


def test_merge_without_primary_site_code_raises():
    with pytest.raises(sites.MissingColumnError):
        sites.merge_site_datasets(frame(["NAME"], [["x"]]), [])


def test_dedupe_serial_columns_keeps_first():
    assert sites.dedupe_serial_columns(["SL NO", "Name", "Sl.No", "Value"]) == ["SL NO", "Name", "Value"]


def test_insert_columns_at_anchor_places_before_anchor():
    headers = ["A", "SITE CODE", "B"]
    assert sites.insert_columns_at_anchor(headers, "SITE CODE", ["X", "Y"]) == ["A", "X", "Y", "SITE CODE", "B"]
    assert sites.insert_columns_at_anchor(headers, "MISSING", ["X"]) == ["A", "SITE CODE", "B", "X"]


def test_reorder_headers_without_anchor_is_unchanged():
    headers = ["A", "B", "C"]
    assert sites.reorder_headers(headers, "SITE CODE", ["B"]) == headers


def test_reorder_headers_moves_merged_columns_to_tail():
    headers = ["X", "STATUS", "ATTRIBUTE", "SITE CODE", "Y", "DAYS"]
    assert sites.reorder_headers(headers, "SITE CODE", ["STATUS", "DAYS"], "ATTRIBUTE") == [
        "X", "Y", "ATTRIBUTE", "SITE CODE", "STATUS", "DAYS",
    ]


def test_offline_since_dates_uses_latest_online_to_offline_transition():
    dates = sites.offline_since_dates(online_offline_frame())
    assert dates == {
        "ABC1": date(2025, 1, 1),
        "XYZ2": date(2025, 1, 5),
        "PQR3": date(2025, 1, 1),
    }


def test_offline_since_dates_from_upload_payload():
    headers = ["Site Code", "Date 01-01-2025", "Device Status", "Date 02-01-2025", "Device Status_1"]
    df = sites.dataset_from_upload(upload(headers, [["ABC1", "", "ONLINE", "", "ONLINE"]]))
    assert sites.offline_since_dates(df) == {}


def test_group_date_columns_leaves_site_code_out_of_members():
    headers = ["DATE 01-01-2025", "SITE CODE", "DEVICE STATUS", "DATE 05-01-2025", "DEVICE STATUS.1"]
    groups = sites.group_date_columns(headers, "SITE CODE")
    assert groups[0].member_headers == ("DEVICE STATUS",)
    assert groups[1].member_headers == ("DEVICE STATUS.1",)
