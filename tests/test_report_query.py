from datetime import date

import pytest

from report_query import (
    EmptyReportError,
    build_summary,
    normalize_filters,
    select_rows,
    verification_payload,
)
from conftest import make_trip

ROWS = [
    make_trip("B", "05-07-2025", distance="5.00 km", trips=1, area="South"),
    make_trip("A", "31-07-2025", distance="10.00 km", trips=2),
    make_trip("A", "01-07-2025", distance="2.50 km", trips=1),
    make_trip("A", "01-08-2025", distance="100.00 km", trips=9),
    make_trip("C", "15-06-2025", distance="1.00 km", trips=1),
]


def test_normalize_filters_accepts_singular_and_plural_keys():
    assert normalize_filters({"vehicle": "all", "area": "", "month": "2025-07"}) == {
        "vehicles": [],
        "area": None,
        "months": ["2025-07"],
    }
    assert normalize_filters({"vehicles": ["A", "B", "A"], "area": ["North", "South"]}) == {
        "vehicles": ["A", "B"],
        "area": "North",
        "months": [],
    }
    assert normalize_filters(None) == {"vehicles": [], "area": None, "months": []}


def test_select_rows_is_inclusive_and_sorted():
    rows = select_rows(ROWS, "2025-07-01", "2025-07-31")
    assert [(r["vehicle_no"], r["report_date"]) for r in rows] == [
        ("A", "01-07-2025"),
        ("A", "31-07-2025"),
        ("B", "05-07-2025"),
    ]


def test_select_rows_applies_filters():
    assert len(select_rows(ROWS, date(2025, 6, 1), date(2025, 8, 31), {"vehicles": ["A"]})) == 3
    assert len(select_rows(ROWS, date(2025, 6, 1), date(2025, 8, 31), {"area": "South"})) == 1
    only_june = select_rows(ROWS, date(2025, 6, 1), date(2025, 8, 31), {"months": ["2025-6"]})
    assert [r["vehicle_no"] for r in only_june] == ["C"]


def test_select_rows_empty_raises_unless_allowed():
    with pytest.raises(EmptyReportError):
        select_rows(ROWS, "2024-01-01", "2024-01-31")
    assert select_rows(ROWS, "2024-01-01", "2024-01-31", allow_empty=True) == []


def test_select_rows_rejects_bad_range_bounds():
    with pytest.raises(ValueError):
        select_rows(ROWS, "July", "2025-07-31")


def test_build_summary_totals_per_vehicle():
    summary = build_summary(select_rows(ROWS, "2025-07-01", "2025-07-31"))
    assert summary["totalDistance"] == pytest.approx(17.5)
    assert summary["totalTrips"] == 4
    assert [v["vehicleNumber"] for v in summary["vehicleReports"]] == ["A", "B"]
    assert summary["vehicleReports"][0]["totalDistance"] == pytest.approx(12.5)


def test_verification_payload_recomputes_from_current_rows():
    generation = {
        "verification_code": "abc123",
        "date_from": "2025-07-01",
        "date_to": "2025-07-31",
        "generated_at": "2025-08-01T10:00:00+00:00",
        "generated_by": "ops",
        "filter_vehicle": "A",
        "filter_area": "",
        "filter_month": "",
    }
    data = verification_payload(generation, ROWS)
    assert data["verificationCode"] == "abc123"
    assert data["totalDistance"] == pytest.approx(12.5)
    assert data["totalTrips"] == 3
    assert data["totalVehicleReports"] == 1
    assert data["filters"] == {"vehicle": "A", "area": "all", "month": "all"}
    assert data["downloadUrl"] == "/api/reports/pdf/abc123"

    generation["date_from"] = generation["date_to"] = "2024-01-01"
    assert verification_payload(generation, ROWS)["totalTrips"] == 0
