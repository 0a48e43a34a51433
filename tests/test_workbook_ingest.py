from datetime import datetime

import pandas as pd
import pytest

from workbook_ingest import (
    WorkbookError,
    find_column,
    normalize_record,
    parse_table,
    parse_workbook,
)

HEADER = ["S.No", "Area", "Vehicle No.", "Tanker Type", "Transporter Name",
          "Report Date", "Trip Distance / Engine Hr", "Trip Count"]


def test_find_column_ignores_case_and_punctuation():
    headers = ["sno", "VEHICLE NUMBER", "report-date"]
    assert find_column(headers, ["Vehicle No.", "Vehicle Number"]) == 1
    assert find_column(headers, ["Report Date"]) == 2
    assert find_column(headers, ["Area"]) == -1


def test_rows_before_header_are_ignored():
    table = [
        ["Daily Distance Report", "", ""],
        ["01-07-2025", "DL1AB1234", "5 km"],
        ["Vehicle No.", "Date", "Distance"],
        ["DL1AB1234", "02-07-2025", "5 km"],
    ]
    rows = parse_table(table)
    assert [r["report_date"] for r in rows] == ["02-07-2025"]


def test_summary_row_carries_context_into_following_rows():
    table = [
        HEADER,
        ["", "North", "DL1AB1234", "Water", "Acme", "01-07-2025 - 31-07-2025", "300 km", "30"],
        ["1", "", "", "", "", "01-07-2025", "12.5", "2"],
        ["2", "", "", "", "", "02-07-2025", "8 km", "1"],
    ]
    rows = parse_table(table, "July")

    assert len(rows) == 2
    for r in rows:
        assert r["vehicle_no"] == "DL1AB1234"
        assert r["area"] == "North"
        assert r["tanker_type"] == "Water"
        assert r["transporter_name"] == "Acme"
    assert rows[0]["trip_distance_km"] == "12.50 km"
    assert rows[1]["trip_count"] == 1


def test_row_values_override_carried_context():
    table = [
        HEADER,
        ["", "North", "DL1AB1234", "Water", "Acme", "01-07-2025 - 31-07-2025", "", ""],
        ["1", "South", "", "", "", "01-07-2025", "1", "1"],
    ]
    (row,) = parse_table(table)
    assert row["area"] == "South"
    assert row["vehicle_no"] == "DL1AB1234"


def test_blank_and_repeated_header_rows_are_skipped():
    table = [
        HEADER,
        ["1", "North", "DL1AB1234", "Water", "Acme", "01-07-2025", "10", "1"],
        ["", "", "", "", "", "", "", ""],
        HEADER,
        ["1", "East", "HR26XY9999", "Milk", "Beta", "01-07-2025", "20", "2"],
    ]
    rows = parse_table(table)
    assert [r["vehicle_no"] for r in rows] == ["DL1AB1234", "HR26XY9999"]


def test_rows_without_vehicle_or_date_are_dropped():
    table = [
        HEADER,
        ["1", "North", "", "Water", "Acme", "01-07-2025", "10", "1"],
        ["2", "North", "DL1AB1234", "Water", "Acme", "Total", "10", "1"],
        ["3", "North", "DL1AB1234", "Water", "Acme", "03-07-2025", "10", "1"],
    ]
    rows = parse_table(table)
    assert [r["report_date"] for r in rows] == ["03-07-2025"]


def test_trip_count_falls_back_to_last_column():
    table = [
        ["Vehicle No", "Date", "Distance", "Runs"],
        ["DL1AB1234", "01-07-2025", "10", "4"],
    ]
    (row,) = parse_table(table)
    assert row["trip_count"] == 4


def test_sheet_without_header_yields_nothing(capsys):
    assert parse_table([["a", "b"], ["c", "d"]], "Notes") == []
    assert "No header row found" in capsys.readouterr().out


def test_parse_workbook_reads_every_sheet_in_order(tmp_path):
    path = tmp_path / "july.xlsx"
    first = pd.DataFrame([
        ["Fleet summary", None, None, None],
        ["Vehicle No.", "Report Date", "Trip Distance", "Trip Count"],
        ["DL1AB1234", datetime(2025, 7, 1), 10.5, 3],
    ])
    second = pd.DataFrame([
        ["Vehicle No.", "Report Date", "Trip Distance", "Trip Count"],
        ["HR26XY9999", "02-07-2025", "20 km", 1],
    ])
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        first.to_excel(writer, sheet_name="North", header=False, index=False)
        second.to_excel(writer, sheet_name="South", header=False, index=False)

    rows = parse_workbook(str(path))

    assert [(r["vehicle_no"], r["report_date"]) for r in rows] == [
        ("DL1AB1234", "01-07-2025"),
        ("HR26XY9999", "02-07-2025"),
    ]
    assert rows[0]["trip_distance_km"] == "10.50 km"
    assert rows[0]["trip_count"] == 3


def test_parse_workbook_reads_ragged_csv(tmp_path):
    path = tmp_path / "july.csv"
    path.write_text(
        "Daily Distance Report\n"
        "Vehicle No.,Area,Report Date,Trip Distance,Trip Count\n"
        "DL1AB1234,North,1/7/25,12 km,2\n",
        encoding="utf-8",
    )
    (row,) = parse_workbook(str(path))
    assert row["report_date"] == "01-07-2025"
    assert row["area"] == "North"


def test_unsupported_or_corrupt_uploads_raise(tmp_path):
    txt = tmp_path / "notes.txt"
    txt.write_text("hello")
    with pytest.raises(WorkbookError):
        parse_workbook(str(txt))

    broken = tmp_path / "broken.xlsx"
    broken.write_bytes(b"not a zip archive")
    with pytest.raises(WorkbookError):
        parse_workbook(str(broken))


def test_normalize_record_for_manual_entry():
    rec = normalize_record({
        "vehicle_no": " DL1AB1234 ",
        "report_date": "2025-07-04",
        "trip_distance_km": "9",
        "trip_count": "2",
    })
    assert rec == {
        "vehicle_no": "DL1AB1234",
        "area": "",
        "tanker_type": "",
        "transporter_name": "",
        "report_date": "04-07-2025",
        "trip_distance_km": "9.00 km",
        "trip_count": 2,
    }
    assert normalize_record({"vehicle_no": "X", "report_date": "soon"})["report_date"] is None
