# workbook_ingest.py
import csv
import os
import re
from collections import Counter
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from models import TRIP_FIELDS
from normalizers import (
    RANGE_SEPARATOR,
    is_blank,
    normalize_date,
    to_distance_string,
    to_trip_count,
)

SUPPORTED_EXTENSIONS = (".xlsx", ".xlsm", ".xls", ".csv")

# canonical field -> acceptable header spellings, tried in order
COLUMN_CANDIDATES = {
    "vehicle_no": ["Vehicle No.", "Vehicle No", "Vehicle Number"],
    "area": ["Area"],
    "tanker_type": ["Tanker Type", "Type"],
    "transporter_name": ["Transporter Name", "Transporter"],
    "report_date": ["Report Date", "Date"],
    "trip_distance_km": [
        "Trip Distance / Engine Hr",
        "Trip Distance / Engine",
        "Trip Distance",
        "Distance",
    ],
    "trip_count": ["Trip Count", "Trips", "Trip"],
}

# columns whose blanks are filled from the last summary row
CARRY_FORWARD_FIELDS = ("vehicle_no", "area", "tanker_type", "transporter_name")


class WorkbookError(ValueError):
    """Raised when an upload can't be read as a workbook/CSV at all."""
    pass


def normalize_header(value) -> str:
    return re.sub(r"[^a-z0-9]", "", str(value or "").lower())


def find_column(headers: Sequence[str], candidates: Sequence[str]) -> int:
    """Index of the first header matching any candidate (candidates tried in order), else -1."""
    normalized = [normalize_header(h) for h in headers]
    for candidate in candidates:
        target = normalize_header(candidate)
        if target in normalized:
            return normalized.index(target)
    return -1


def _cell_text(value) -> str:
    if is_blank(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, date):
        return value.strftime("%d-%m-%Y")
    return str(value).strip()


def _get_cell(row: Sequence, index: int):
    if index < 0 or index >= len(row):
        return ""
    return row[index]


class WorkbookScanContext:
    """
    Per-sheet scan state.

    `columns` is None until the header row has been found (Searching);
    afterwards rows are read against it (Reading). `carry_forward` holds
    the identifying columns of the most recent summary/range row.
    """

    def __init__(self):
        self.header_row: Optional[List[str]] = None
        self.columns: Optional[Dict[str, int]] = None
        self.carry_forward: Dict[str, str] = {}
        self.skipped = Counter()

    def try_header(self, texts: List[str]) -> bool:
        if find_column(texts, COLUMN_CANDIDATES["vehicle_no"]) == -1:
            return False
        if find_column(texts, COLUMN_CANDIDATES["report_date"]) == -1:
            return False

        self.header_row = texts
        self.columns = {
            field: find_column(texts, candidates)
            for field, candidates in COLUMN_CANDIDATES.items()
        }
        # No recognisable trip-count header: exports put it last
        if self.columns["trip_count"] == -1:
            self.columns["trip_count"] = len(texts) - 1
        return True

    @property
    def date_label(self) -> str:
        return normalize_header(self.header_row[self.columns["report_date"]])

    def text(self, row: Sequence, field: str) -> str:
        return _cell_text(_get_cell(row, self.columns[field]))


def _read_row(ctx: WorkbookScanContext, row: Sequence, texts: List[str]) -> Optional[Dict]:
    """Classify one row after the header; returns a record or None (context/skipped)."""
    if all(t == "" for t in texts):
        ctx.skipped["blank"] += 1
        return None

    raw_date = _get_cell(row, ctx.columns["report_date"])
    date_text = _cell_text(raw_date)

    # grouped exports repeat the header above every vehicle block
    if normalize_header(date_text) == ctx.date_label:
        ctx.skipped["header"] += 1
        return None

    if RANGE_SEPARATOR in date_text:
        # per-vehicle summary line; its totals are not trip data
        ctx.carry_forward = {f: ctx.text(row, f) for f in CARRY_FORWARD_FIELDS}
        ctx.skipped["context"] += 1
        return None

    report_date = normalize_date(raw_date)
    if not report_date:
        ctx.skipped["bad_date"] += 1
        return None

    record = {f: ctx.text(row, f) or ctx.carry_forward.get(f, "") for f in CARRY_FORWARD_FIELDS}
    if not record["vehicle_no"]:
        ctx.skipped["no_vehicle"] += 1
        return None

    record["report_date"] = report_date
    record["trip_distance_km"] = to_distance_string(_get_cell(row, ctx.columns["trip_distance_km"]))
    record["trip_count"] = to_trip_count(_get_cell(row, ctx.columns["trip_count"]))
    return {f: record[f] for f in TRIP_FIELDS}


def parse_table(table: Sequence[Sequence], sheet_name: str = "") -> List[Dict]:
    """
    Parse one sheet (a grid of cell values) into trip records, in source row order.

    Rows before the header are ignored. After it, blank rows and repeated
    headers are skipped, range rows ("01-07-2025 - 31-07-2025") update the
    carry-forward context, and rows with an unusable date or no resolvable
    vehicle are dropped.
    """
    ctx = WorkbookScanContext()
    records = []

    for row in table:
        texts = [_cell_text(v) for v in row]
        if ctx.columns is None:
            ctx.try_header(texts)
            continue
        record = _read_row(ctx, row, texts)
        if record is not None:
            records.append(record)

    if ctx.columns is None:
        print(f"⚠️ No header row found in sheet '{sheet_name}'")
    else:
        dropped = ", ".join(f"{k}={v}" for k, v in sorted(ctx.skipped.items())) or "none"
        print(f"📦 Sheet '{sheet_name}': {len(records)} rows parsed (skipped: {dropped})")
    return records


def _frame_to_table(df: pd.DataFrame) -> List[List]:
    df = df.astype(object).where(pd.notna(df), "")
    return df.values.tolist()


def load_tables(path: str) -> List[Tuple[str, List[List]]]:
    """Read every sheet of an upload as (sheet_name, grid) pairs."""
    ext = os.path.splitext(path)[1].lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise WorkbookError(f"Unsupported file type '{ext or os.path.basename(path)}'. Upload .xlsx, .xls or .csv")

    try:
        if ext == ".csv":
            # csv.reader rather than read_csv: title rows make the grid ragged
            with open(path, newline="", encoding="utf-8-sig") as f:
                return [(os.path.basename(path), [row for row in csv.reader(f)])]
        sheets = pd.read_excel(path, sheet_name=None, header=None, dtype=object)
    except Exception as e:  # BadZipFile, openpyxl/xlrd errors, decode errors
        reason = str(e).replace(path, os.path.basename(path))
        raise WorkbookError(f"Could not read '{os.path.basename(path)}': {reason}") from e

    if not sheets:
        raise WorkbookError("No worksheets found in uploaded file")
    return [(name, _frame_to_table(df)) for name, df in sheets.items()]


def parse_workbook(path: str) -> List[Dict]:
    """All sheets, in workbook order, accumulated into one record list."""
    records = []
    for sheet_name, table in load_tables(path):
        records.extend(parse_table(table, sheet_name))
    return records


def normalize_record(data: Dict) -> Dict:
    """
    Normalise a record submitted directly (manual entry, JSON batch, edits).
    `report_date` is None when the date can't be normalised; callers decide
    whether that is an error.
    """
    data = data or {}
    return {
        "vehicle_no": _cell_text(data.get("vehicle_no")),
        "area": _cell_text(data.get("area")),
        "tanker_type": _cell_text(data.get("tanker_type")),
        "transporter_name": _cell_text(data.get("transporter_name")),
        "report_date": normalize_date(data.get("report_date")),
        "trip_distance_km": to_distance_string(data.get("trip_distance_km")),
        "trip_count": to_trip_count(data.get("trip_count")),
    }
