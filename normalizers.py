# normalizers.py
import math
import re
from datetime import date, datetime, timedelta
from typing import Optional

import pandas as pd

# First signed/unsigned decimal inside free text ("123.45 km extra notes" -> "123.45")
KM_MATCHER = re.compile(r"[-+]?[0-9]*\.?[0-9]+")
RANGE_SEPARATOR = " - "

EXCEL_EPOCH = datetime(1899, 12, 30)
_DMY = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})$")
_YMD = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_CANONICAL = re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})$")


def is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if value is pd.NaT:
        return True
    return str(value).strip() == ""


def fmt_date(d) -> str:
    """Canonical DD-MM-YYYY for a date/datetime (local calendar fields)."""
    return f"{d.day:02d}-{d.month:02d}-{d.year:04d}"


def _checked(day: int, month: int, year: int) -> Optional[str]:
    try:
        return fmt_date(date(year, month, day))
    except ValueError:
        return None


def _from_serial(days: float) -> Optional[str]:
    try:
        return fmt_date(EXCEL_EPOCH + timedelta(days=float(days)))
    except (OverflowError, ValueError):
        return None


def normalize_date(value) -> Optional[str]:
    """
    Normalise any spreadsheet date cell to DD-MM-YYYY.

    Handles, in order:
      - date / datetime / pandas Timestamp values
      - spreadsheet serial numbers (numbers, or numeric strings up to 5 chars)
      - D-M-Y and D/M/Y with 2 or 4 digit years (>=70 -> 19xx, else 20xx)
      - ISO Y-M-D
      - anything pandas can parse, as a last resort

    Returns None for blanks, range strings ("01-07-2025 - 31-07-2025", i.e.
    summary rows) and anything that doesn't resolve to a real calendar day.
    """
    if is_blank(value):
        return None

    if isinstance(value, (datetime, date)):
        return fmt_date(value)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_serial(value)

    raw = str(value).strip()
    if RANGE_SEPARATOR in raw:
        return None

    if len(raw) <= 5:
        try:
            return _from_serial(float(raw))
        except ValueError:
            pass

    m = _DMY.match(raw)
    if m:
        day, month, year = m.group(1), m.group(2), m.group(3)
        if len(year) == 2:
            year = f"19{year}" if int(year) >= 70 else f"20{year}"
        elif len(year) == 3:
            return None
        return _checked(int(day), int(month), int(year))

    m = _YMD.match(raw)
    if m:
        return _checked(int(m.group(3)), int(m.group(2)), int(m.group(1)))

    parsed = pd.to_datetime(raw, errors="coerce")
    if pd.isna(parsed):
        return None
    return fmt_date(parsed)


def parse_canonical_date(value) -> Optional[date]:
    """DD-MM-YYYY -> date (None when the text isn't canonical or not a real day)."""
    m = _CANONICAL.match(str(value or "").strip())
    if not m:
        return None
    try:
        return date(int(m.group(3)), int(m.group(2)), int(m.group(1)))
    except ValueError:
        return None


def parse_distance(value) -> float:
    """Lenient numeric distance: first numeral in the text, else 0.0."""
    if is_blank(value):
        return 0.0
    m = KM_MATCHER.search(str(value))
    if not m:
        return 0.0
    try:
        num = float(m.group(0))
    except ValueError:
        return 0.0
    return num if math.isfinite(num) else 0.0


def to_distance_string(value) -> str:
    """'123.4 km extra' -> '123.40 km'; '0 km' when no numeral is present."""
    if is_blank(value):
        return "0 km"
    m = KM_MATCHER.search(str(value))
    if not m:
        return "0 km"
    try:
        num = float(m.group(0))
    except ValueError:
        return "0 km"
    return f"{num:.2f} km"


def to_trip_count(value) -> int:
    if is_blank(value):
        return 0
    # Excel hands integral cells back as floats (3.0); don't let the '.' vanish into '30'
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    digits = re.sub(r"[^0-9-]", "", str(value))
    # leading integer of what remains: "3 (1-way)" -> "31-" -> 31, "5-" -> 5
    m = re.match(r"-?\d+", digits)
    return int(m.group(0)) if m else 0
