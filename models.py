# models.py

TRIP_COLUMNS = [
    # identifiers
    "id",
    "snapshot_code",

    # key: one record per vehicle per day
    "vehicle_no",
    "report_date",          # DD-MM-YYYY

    # descriptive columns (carried forward from summary rows on upload)
    "area",
    "tanker_type",
    "transporter_name",

    # measurements
    "trip_distance_km",     # display form, e.g. "12.34 km"
    "trip_count",

    # audit
    "uploaded_by",
    "uploaded_at",          # UTC, "YYYY-MM-DD HH:MM:SS"
]

# Fields the ingester produces; everything else is stamped by the store
TRIP_FIELDS = [
    "vehicle_no",
    "area",
    "tanker_type",
    "transporter_name",
    "report_date",
    "trip_distance_km",
    "trip_count",
]

SNAPSHOT_COLUMNS = [
    "snapshot_code",
    "uploaded_by",
    "uploaded_at",
    "record_count",
    "file_name",
]

GENERATION_COLUMNS = [
    "verification_code",
    "verification_url",
    "date_from",            # ISO YYYY-MM-DD, as requested
    "date_to",
    "generated_by",
    "generated_at",
    "filter_vehicle",       # comma-joined, empty = all
    "filter_area",
    "filter_month",         # comma-joined YYYY-MM keys
    "record_count",
    "pdf_path",
    "summary_total_distance",
    "summary_total_trips",
    "summary_vehicle_count",
]

SQLITE_PATH = "data/distance_reports.db"
TRIPS_CSV = "data/trip_records.csv"
SNAPSHOTS_CSV = "data/upload_snapshots.csv"
GENERATIONS_CSV = "data/pdf_generations.csv"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS trips (
  id TEXT PRIMARY KEY,
  snapshot_code TEXT,
  vehicle_no TEXT NOT NULL,
  report_date TEXT NOT NULL,
  area TEXT,
  tanker_type TEXT,
  transporter_name TEXT,
  trip_distance_km TEXT,
  trip_count INTEGER,
  uploaded_by TEXT,
  uploaded_at TEXT,
  UNIQUE (vehicle_no, report_date)
);
CREATE INDEX IF NOT EXISTS trips_area_idx ON trips (area);
CREATE INDEX IF NOT EXISTS trips_snapshot_idx ON trips (snapshot_code);

CREATE TABLE IF NOT EXISTS upload_snapshots (
  snapshot_code TEXT PRIMARY KEY,
  uploaded_by TEXT,
  uploaded_at TEXT,
  record_count INTEGER,
  file_name TEXT
);

CREATE TABLE IF NOT EXISTS pdf_generations (
  verification_code TEXT PRIMARY KEY,
  verification_url TEXT,
  date_from TEXT,
  date_to TEXT,
  generated_by TEXT,
  generated_at TEXT,
  filter_vehicle TEXT,
  filter_area TEXT,
  filter_month TEXT,
  record_count INTEGER,
  pdf_path TEXT,
  summary_total_distance REAL,
  summary_total_trips INTEGER,
  summary_vehicle_count INTEGER
);
"""
