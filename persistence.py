# persistence.py
import os, sqlite3, shutil, tempfile, pandas as pd
from typing import List, Dict, Optional, Iterable
from datetime import date, datetime, timezone
import random
import string

from models import (
    TRIP_COLUMNS, TRIP_FIELDS, SNAPSHOT_COLUMNS, GENERATION_COLUMNS,
    SQLITE_PATH, SCHEMA_SQL, TRIPS_CSV, SNAPSHOTS_CSV, GENERATIONS_CSV,
)
from normalizers import parse_canonical_date

UPSERT_BATCH_SIZE = 50  # rows per transaction (DB backend)

# fields an upload may overwrite on an existing (vehicle_no, report_date) record
_UPSERT_UPDATE_FIELDS = [
    "area", "tanker_type", "transporter_name", "trip_distance_km", "trip_count",
    "snapshot_code", "uploaded_by", "uploaded_at",
]

_INT_FIELDS = {"trip_count", "record_count", "summary_total_trips", "summary_vehicle_count"}
_FLOAT_FIELDS = {"summary_total_distance"}


class DuplicateTripError(ValueError):
    """Raised when an edit would create a second record for the same vehicle and day."""
    pass


def _ensure_parent(path: str):
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)

def get_repo(backend: str, **paths):
    backend = (backend or "csv").lower()
    if backend == "db":
        return DBRepo(**paths)
    return CSVRepo(**paths)

def _now_iso() -> str:
    # UTC, no offset; rendered in the report timezone on export
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

def _gen_trip_id() -> str:
    # TR-YYYYMMDD-XXXXXXXX (letters/digits)
    salt = ''.join(random.choices(string.ascii_uppercase + string.digits, k=8))
    return f"TR-{datetime.now(timezone.utc).strftime('%Y%m%d')}-{salt}"

def trip_sort_key(r: Dict):
    """(vehicle, calendar date); unparseable dates sort last within their vehicle."""
    d = parse_canonical_date(r.get("report_date"))
    return (str(r.get("vehicle_no") or ""), d or date.max, str(r.get("report_date") or ""))

def dedupe_batch(rows: Iterable[Dict]) -> List[Dict]:
    """Collapse repeated (vehicle_no, report_date) keys within one upload; last one wins."""
    by_key: Dict[tuple, Dict] = {}
    for r in rows:
        by_key[(r["vehicle_no"], r["report_date"])] = r
    return list(by_key.values())

def chunk_rows(items: List, size: int) -> List[List]:
    if size <= 0:
        return [items]
    return [items[i:i + size] for i in range(0, len(items), size)]

def _coerce(record: Dict) -> Dict:
    out = dict(record)
    for k in _INT_FIELDS & out.keys():
        try:
            out[k] = int(float(out[k]))
        except (TypeError, ValueError):
            out[k] = 0
    for k in _FLOAT_FIELDS & out.keys():
        try:
            out[k] = float(out[k])
        except (TypeError, ValueError):
            out[k] = 0.0
    return out


class CSVRepo:
    """Trip records, upload snapshots and PDF generations as CSV files (pandas)."""

    def __init__(self, trips_csv: str = None, snapshots_csv: str = None, generations_csv: str = None):
        self.trips_csv = trips_csv or TRIPS_CSV
        self.snapshots_csv = snapshots_csv or SNAPSHOTS_CSV
        self.generations_csv = generations_csv or GENERATIONS_CSV
        for p in (self.trips_csv, self.snapshots_csv, self.generations_csv):
            _ensure_parent(p)

    def _read(self, path: str, columns: List[str]) -> pd.DataFrame:
        if not os.path.exists(path):
            return pd.DataFrame(columns=columns)
        df = pd.read_csv(path, dtype=str, keep_default_na=False, encoding='utf-8-sig')
        for c in columns:
            if c not in df.columns:
                df[c] = ""
        return df[columns]

    def _write(self, df: pd.DataFrame, path: str, columns: List[str]):
        """Write atomically: temp file in the same directory, then move over."""
        fd, tmp = tempfile.mkstemp(prefix=".tmp.", suffix=".csv", dir=os.path.dirname(path) or ".")
        os.close(fd)
        try:
            df[columns].to_csv(tmp, index=False, encoding='utf-8-sig')
            shutil.move(tmp, path)
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)

    def _records(self, df: pd.DataFrame) -> List[Dict]:
        return [_coerce(r) for r in df.to_dict(orient='records')]

    # ===== Trips =====

    def list_trips(self) -> List[Dict]:
        return sorted(self._records(self._read(self.trips_csv, TRIP_COLUMNS)), key=trip_sort_key)

    def get_trip(self, trip_id: str) -> Optional[Dict]:
        df = self._read(self.trips_csv, TRIP_COLUMNS)
        rows = df[df['id'] == trip_id]
        return None if rows.empty else _coerce(rows.iloc[0].to_dict())

    def upsert_trips(self, rows: List[Dict], uploaded_by: str, snapshot_code: str,
                     file_name: Optional[str] = None) -> int:
        """
        Insert or update by (vehicle_no, report_date). Records one upload
        snapshot for the whole batch. Returns the number of rows written.
        """
        rows = dedupe_batch(rows)
        now = _now_iso()
        df = self._read(self.trips_csv, TRIP_COLUMNS)
        index = {(v, d): i for i, (v, d) in enumerate(zip(df['vehicle_no'], df['report_date']))}

        new_rows = []
        for r in rows:
            values = {c: str(r.get(c, "")) for c in TRIP_FIELDS}
            values.update(snapshot_code=snapshot_code, uploaded_by=uploaded_by, uploaded_at=now)
            i = index.get((values['vehicle_no'], values['report_date']))
            if i is None:
                values['id'] = _gen_trip_id()
                new_rows.append(values)
            else:
                df.loc[i, _UPSERT_UPDATE_FIELDS] = [values[c] for c in _UPSERT_UPDATE_FIELDS]

        if new_rows:
            df = pd.concat([df, pd.DataFrame(new_rows, columns=TRIP_COLUMNS)], ignore_index=True)
        self._write(df, self.trips_csv, TRIP_COLUMNS)

        snaps = self._read(self.snapshots_csv, SNAPSHOT_COLUMNS)
        snap = {
            'snapshot_code': snapshot_code,
            'uploaded_by': uploaded_by,
            'uploaded_at': now,
            'record_count': str(len(rows)),
            'file_name': file_name or "",
        }
        snaps = pd.concat([snaps, pd.DataFrame([snap], columns=SNAPSHOT_COLUMNS)], ignore_index=True)
        self._write(snaps, self.snapshots_csv, SNAPSHOT_COLUMNS)
        return len(rows)

    def update_trip(self, trip_id: str, fields: Dict) -> Dict:
        df = self._read(self.trips_csv, TRIP_COLUMNS)
        mask = df['id'] == trip_id
        if not mask.any():
            raise KeyError("trip not found")

        current = df[mask].iloc[0].to_dict()
        merged = {**current, **{k: str(v) for k, v in fields.items() if k in TRIP_COLUMNS and k != 'id'}}
        clash = (df['vehicle_no'] == merged['vehicle_no']) & (df['report_date'] == merged['report_date']) & ~mask
        if clash.any():
            raise DuplicateTripError("A report already exists for the selected vehicle and date")

        merged['uploaded_at'] = _now_iso()
        df.loc[mask, TRIP_COLUMNS] = [merged[c] for c in TRIP_COLUMNS]
        self._write(df, self.trips_csv, TRIP_COLUMNS)
        return _coerce(merged)

    def delete_trip(self, trip_id: str) -> Dict:
        df = self._read(self.trips_csv, TRIP_COLUMNS)
        mask = df['id'] == trip_id
        if not mask.any():
            raise KeyError("trip not found")
        deleted = _coerce(df[mask].iloc[0].to_dict())
        self._write(df[~mask], self.trips_csv, TRIP_COLUMNS)
        return deleted

    def list_snapshots(self) -> List[Dict]:
        return self._records(self._read(self.snapshots_csv, SNAPSHOT_COLUMNS))

    # ===== PDF generations =====

    def save_generation(self, record: Dict):
        df = self._read(self.generations_csv, GENERATION_COLUMNS)
        row = {c: "" if record.get(c) is None else str(record.get(c)) for c in GENERATION_COLUMNS}
        df = df[df['verification_code'] != row['verification_code']]
        df = pd.concat([df, pd.DataFrame([row], columns=GENERATION_COLUMNS)], ignore_index=True)
        self._write(df, self.generations_csv, GENERATION_COLUMNS)

    def get_generation(self, code: str) -> Optional[Dict]:
        df = self._read(self.generations_csv, GENERATION_COLUMNS)
        rows = df[df['verification_code'] == code]
        return None if rows.empty else _coerce(rows.iloc[0].to_dict())


class DBRepo:
    """Same contract as CSVRepo on SQLite; (vehicle_no, report_date) is a UNIQUE key."""

    def __init__(self, sqlite_path: str = None):
        self.sqlite_path = sqlite_path or SQLITE_PATH
        _ensure_parent(self.sqlite_path)
        self.conn = sqlite3.connect(self.sqlite_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        with self.conn:
            self.conn.executescript(SCHEMA_SQL)

    def _row_to_dict(self, row: sqlite3.Row) -> Dict:
        d = {k: row[k] for k in row.keys()}
        return _coerce({k: ("" if v is None else v) for k, v in d.items()})

    # ===== Trips =====

    def list_trips(self) -> List[Dict]:
        rows = self.conn.execute("SELECT * FROM trips").fetchall()
        return sorted((self._row_to_dict(r) for r in rows), key=trip_sort_key)

    def get_trip(self, trip_id: str) -> Optional[Dict]:
        row = self.conn.execute("SELECT * FROM trips WHERE id = ?", (trip_id,)).fetchone()
        return self._row_to_dict(row) if row else None

    def upsert_trips(self, rows: List[Dict], uploaded_by: str, snapshot_code: str,
                     file_name: Optional[str] = None) -> int:
        rows = dedupe_batch(rows)
        now = _now_iso()
        cols = TRIP_COLUMNS
        sql = (
            f"INSERT INTO trips ({','.join(cols)}) VALUES ({','.join(['?'] * len(cols))}) "
            "ON CONFLICT(vehicle_no, report_date) DO UPDATE SET "
            + ", ".join(f"{c} = excluded.{c}" for c in _UPSERT_UPDATE_FIELDS)
        )

        def _vals(r):
            full = {**r, 'id': _gen_trip_id(), 'snapshot_code': snapshot_code,
                    'uploaded_by': uploaded_by, 'uploaded_at': now}
            return tuple(full.get(c) for c in cols)

        batches = chunk_rows(rows, UPSERT_BATCH_SIZE)
        # snapshot row commits together with the first batch
        with self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO upload_snapshots (snapshot_code, uploaded_by, uploaded_at, record_count, file_name) "
                "VALUES (?, ?, ?, ?, ?)",
                (snapshot_code, uploaded_by, now, len(rows), file_name),
            )
            if batches:
                self.conn.executemany(sql, [_vals(r) for r in batches[0]])
        for batch in batches[1:]:
            with self.conn:
                self.conn.executemany(sql, [_vals(r) for r in batch])
        return len(rows)

    def update_trip(self, trip_id: str, fields: Dict) -> Dict:
        current = self.get_trip(trip_id)
        if current is None:
            raise KeyError("trip not found")
        merged = {**current, **{k: v for k, v in fields.items() if k in TRIP_COLUMNS and k != 'id'}}
        merged['uploaded_at'] = _now_iso()
        sets = [c for c in TRIP_COLUMNS if c != 'id']
        try:
            with self.conn:
                self.conn.execute(
                    f"UPDATE trips SET {', '.join(f'{c} = ?' for c in sets)} WHERE id = ?",
                    tuple(merged[c] for c in sets) + (trip_id,),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateTripError("A report already exists for the selected vehicle and date") from e
        return self.get_trip(trip_id)

    def delete_trip(self, trip_id: str) -> Dict:
        current = self.get_trip(trip_id)
        if current is None:
            raise KeyError("trip not found")
        with self.conn:
            self.conn.execute("DELETE FROM trips WHERE id = ?", (trip_id,))
        return current

    def list_snapshots(self) -> List[Dict]:
        rows = self.conn.execute("SELECT * FROM upload_snapshots ORDER BY uploaded_at").fetchall()
        return [self._row_to_dict(r) for r in rows]

    # ===== PDF generations =====

    def save_generation(self, record: Dict):
        cols = GENERATION_COLUMNS
        with self.conn:
            self.conn.execute(
                f"INSERT OR REPLACE INTO pdf_generations ({','.join(cols)}) VALUES ({','.join(['?'] * len(cols))})",
                tuple(record.get(c) for c in cols),
            )

    def get_generation(self, code: str) -> Optional[Dict]:
        row = self.conn.execute(
            "SELECT * FROM pdf_generations WHERE verification_code = ?", (code,)
        ).fetchone()
        return self._row_to_dict(row) if row else None
