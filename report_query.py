# report_query.py
from datetime import date, datetime
from typing import Dict, List, Optional

from normalizers import parse_canonical_date, parse_distance, to_trip_count
from persistence import trip_sort_key


class EmptyReportError(LookupError):
    """No stored records match the requested range/filters."""
    pass


def _as_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value]
    return [s.strip() for s in str(value).split(",")]


def _unique(values: List[str]) -> List[str]:
    seen = []
    for v in values:
        if v and v.lower() != "all" and v not in seen:
            seen.append(v)
    return seen


def normalize_filters(filters: Optional[Dict] = None) -> Dict:
    """
    Accepts either singular ('vehicle', 'month') or plural ('vehicles', 'months')
    keys; 'all' or blank means no filter. An area list keeps its first entry.
    """
    filters = filters or {}
    vehicles = filters.get("vehicles")
    if vehicles is None:
        vehicles = filters.get("vehicle")
    months = filters.get("months")
    if months is None:
        months = filters.get("month")

    area = filters.get("area")
    if isinstance(area, (list, tuple)):
        area = area[0] if area else None
    area = str(area).strip() if area is not None else ""
    if not area or area.lower() == "all":
        area = None

    return {
        "vehicles": _unique(_as_list(vehicles)),
        "area": area,
        "months": _unique(_as_list(months)),
    }


def parse_iso_date(value) -> date:
    """'YYYY-MM-DD' (or a date/datetime) -> date. Raises ValueError otherwise."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value).strip()[:10], "%Y-%m-%d").date()


def _month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def _normalize_month(key: str) -> Optional[str]:
    parts = key.split("-")
    if len(parts) != 2:
        return None
    try:
        return f"{int(parts[0]):04d}-{int(parts[1]):02d}"
    except ValueError:
        return None


def select_rows(rows: List[Dict], date_from, date_to, filters: Optional[Dict] = None,
                allow_empty: bool = False) -> List[Dict]:
    """
    Records inside [date_from, date_to] (inclusive, calendar dates) matching the
    vehicle/area/month filters, sorted by (vehicle, date).
    Raises EmptyReportError when nothing matches unless allow_empty is set.
    """
    start, end = parse_iso_date(date_from), parse_iso_date(date_to)
    f = normalize_filters(filters)
    vehicles = set(f["vehicles"])
    months = {m for m in (_normalize_month(k) for k in f["months"]) if m}

    out = []
    for r in rows:
        d = parse_canonical_date(r.get("report_date"))
        if d is None or d < start or d > end:
            continue
        if vehicles and r.get("vehicle_no") not in vehicles:
            continue
        if f["area"] and r.get("area") != f["area"]:
            continue
        if months and _month_key(d) not in months:
            continue
        out.append(r)

    if not out and not allow_empty:
        raise EmptyReportError("No records match the selected filters")
    return sorted(out, key=trip_sort_key)


def build_summary(rows: List[Dict]) -> Dict:
    """Per-vehicle distance/trip totals (first-seen order) plus grand totals."""
    vehicles: Dict[str, Dict] = {}
    for r in rows:
        entry = vehicles.setdefault(r.get("vehicle_no", ""), {
            "area": r.get("area", ""),
            "tankerType": r.get("tanker_type", ""),
            "transporterName": r.get("transporter_name", ""),
            "totalDistance": 0.0,
            "totalTrips": 0,
        })
        entry["totalDistance"] += parse_distance(r.get("trip_distance_km"))
        entry["totalTrips"] += to_trip_count(r.get("trip_count"))

    vehicle_reports = [
        {
            "vehicleNumber": vehicle_no,
            "area": e["area"],
            "tankerType": e["tankerType"],
            "transporterName": e["transporterName"],
            "totalDistance": round(e["totalDistance"], 2),
            "totalTrips": e["totalTrips"],
        }
        for vehicle_no, e in vehicles.items()
    ]
    return {
        "vehicleReports": vehicle_reports,
        "totalDistance": round(sum(v["totalDistance"] for v in vehicle_reports), 2),
        "totalTrips": sum(v["totalTrips"] for v in vehicle_reports),
    }


def generation_filters(generation: Dict) -> Dict:
    """Stored generation columns -> filters dict understood by select_rows."""
    return {
        "vehicles": _as_list(generation.get("filter_vehicle") or ""),
        "area": generation.get("filter_area") or None,
        "months": _as_list(generation.get("filter_month") or ""),
    }


def verification_payload(generation: Dict, rows: List[Dict]) -> Dict:
    """
    JSON returned to whoever scans the QR code: the generation's metadata plus a
    summary recomputed from the records currently stored for its range/filters.
    """
    code = generation["verification_code"]
    selected = select_rows(rows, generation["date_from"], generation["date_to"],
                           generation_filters(generation), allow_empty=True)
    summary = build_summary(selected)
    return {
        "verificationCode": code,
        "fromDate": generation["date_from"],
        "toDate": generation["date_to"],
        "generationTime": generation.get("generated_at"),
        "generatedBy": generation.get("generated_by"),
        "totalDistance": summary["totalDistance"],
        "totalTrips": summary["totalTrips"],
        "totalVehicleReports": len(summary["vehicleReports"]),
        "vehicleReports": summary["vehicleReports"],
        "filters": {
            "vehicle": generation.get("filter_vehicle") or "all",
            "area": generation.get("filter_area") or "all",
            "month": generation.get("filter_month") or "all",
        },
        "downloadUrl": f"/api/reports/pdf/{code}",
    }
