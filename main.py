from flask import Flask, request, send_file, jsonify
import os
import io
import secrets
import pandas as pd
from datetime import datetime, timezone
from urllib.parse import quote
from werkzeug.utils import secure_filename
import pytz

from persistence import get_repo, DuplicateTripError  # repo abstraction (CSV or DB)
from workbook_ingest import parse_workbook, normalize_record, WorkbookError
from report_query import (
    EmptyReportError, normalize_filters, parse_iso_date, select_rows,
    build_summary, verification_payload,
)
from report_pdf import build_report_pdf, AssetUnavailableError

app = Flask(__name__)

# =========================
# Config (environment)
# =========================
UPLOAD_FOLDER = os.environ.get("UPLOAD_FOLDER", "uploads")
REPORTS_DIR = os.environ.get("REPORTS_DIR", "data/reports")
os.makedirs(UPLOAD_FOLDER, exist_ok=True)
os.makedirs(REPORTS_DIR, exist_ok=True)

# Persistence backend: 'csv' (default) or 'db'
PERSISTENCE_BACKEND = os.environ.get("PERSISTENCE_BACKEND", "csv").lower()
repo = get_repo(PERSISTENCE_BACKEND)

OPS_TOKEN = os.environ.get("OPS_TOKEN", "").strip()
REPORT_TITLE = "Daily Distance Report"
REPORT_CARD_URL = os.environ.get("REPORT_CARD_URL", "http://localhost:5000/report-card.html").strip().rstrip("/")
REPORT_LOGO_PATH = os.environ.get("REPORT_LOGO_PATH", "static/report_logo.bmp")
REPORT_TIMEZONE = os.environ.get("REPORT_TIMEZONE", "Asia/Kolkata")


# =========================
# Helpers
# =========================
def _check_ops_token(req):
    """Mutations are open unless OPS_TOKEN is configured."""
    if not OPS_TOKEN:
        return True
    token = req.args.get("token") or req.headers.get("X-Ops-Token")
    return token == OPS_TOKEN

def _error(message, status):
    return jsonify({"error": message}), status

def local_time(value):
    """
    Render a stored UTC timestamp ('YYYY-MM-DD HH:MM:SS', no offset) in the
    report timezone as 'YYYY-MM-DD HH:MM'. Unparseable values are returned as-is.
    """
    if not value:
        return ""
    s = str(value).strip()
    tz = pytz.timezone(REPORT_TIMEZONE)
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return s
    if dt.tzinfo is None:
        dt = pytz.utc.localize(dt)
    return dt.astimezone(tz).strftime("%Y-%m-%d %H:%M")

def _payload():
    return request.get_json(silent=True) or {}


# --- Lightweight health probe ---
@app.route("/healthz", methods=["GET", "HEAD"])
def healthz():
    if request.method == "HEAD":
        return ("", 200, {"Content-Type": "text/plain; charset=utf-8", "Cache-Control": "no-store"})
    return ("ok", 200, {"Content-Type": "text/plain; charset=utf-8", "Cache-Control": "no-store"})


# =========================
# Trip records (CRUD + upload)
# =========================
@app.route("/api/reports/data", methods=["GET"])
def list_data():
    return jsonify(repo.list_trips())


def _save_upload(file_storage):
    # secure_filename drops non-ASCII names ("रिपोर्ट.xlsx" -> "xlsx"); the extension picks the reader
    ext = os.path.splitext(file_storage.filename or "")[1].lower()
    stem = secure_filename(os.path.splitext(file_storage.filename or "")[0]) or "upload"
    name = f"{stem}{ext}"
    path = os.path.join(UPLOAD_FOLDER, f"{secrets.token_hex(4)}_{name}")
    file_storage.save(path)
    return path, file_storage.filename or name


@app.route("/api/reports/data", methods=["POST"])
def create_data():
    """
    Three ways in:
      - multipart form: 'file' (.xlsx/.xls/.csv) + 'uploaded_by'
      - JSON {'record': {...}, 'uploaded_by'}   (manual single entry)
      - JSON {'records': [...], 'uploaded_by'}  (batch)
    Every path upserts by (vehicle_no, report_date).
    """
    if not _check_ops_token(request):
        return _error("forbidden", 403)

    try:
        if request.is_json:
            payload = _payload()
            uploaded_by = str(payload.get("uploaded_by") or "").strip()
            if not uploaded_by:
                return _error("uploaded_by is required", 400)

            single = payload.get("record")
            if single:
                rec = normalize_record(single)
                if not rec["vehicle_no"]:
                    return _error("vehicle_no is required", 400)
                if not rec["report_date"]:
                    return _error("Valid report_date is required", 400)
                snapshot_code = f"manual-{secrets.token_hex(8)}"
                count = repo.upsert_trips([rec], uploaded_by, snapshot_code, "manual-entry")
            else:
                raw = payload.get("records")
                if not isinstance(raw, list) or not raw:
                    return _error("No records provided", 400)
                rows = [normalize_record(r) for r in raw if isinstance(r, dict)]
                rows = [r for r in rows if r["report_date"] and r["vehicle_no"]]
                if not rows:
                    return _error("No valid rows to save", 400)
                snapshot_code = secrets.token_hex(16)
                count = repo.upsert_trips(rows, uploaded_by, snapshot_code, None)
        else:
            uploaded_file = request.files.get("file")
            uploaded_by = str(request.form.get("uploaded_by") or "").strip()
            if uploaded_file is None or uploaded_file.filename == "":
                return _error("Missing XLSX file", 400)
            if not uploaded_by:
                return _error("uploaded_by is required", 400)

            path, original_name = _save_upload(uploaded_file)
            try:
                parsed = parse_workbook(path)
            except WorkbookError as e:
                return _error(str(e), 400)
            finally:
                try:
                    os.remove(path)
                except OSError as e:
                    print(f"⚠️ Could not remove {path}: {e}")

            if not parsed:
                return _error("No data rows detected in worksheet", 400)
            snapshot_code = secrets.token_hex(16)
            count = repo.upsert_trips(parsed, uploaded_by, snapshot_code, original_name)

        print(f"📦 Upserted {count} rows ({'database' if PERSISTENCE_BACKEND == 'db' else 'csv'}) snapshot={snapshot_code}")
        return jsonify({
            "success": True,
            "snapshot_code": snapshot_code,
            "record_count": count,
            "records": repo.list_trips(),
        })
    except Exception as e:
        print(f"❌ Failed to save data: {e}")
        return _error("Failed to save data", 500)


@app.route("/api/reports/data", methods=["PATCH"])
def update_data():
    if not _check_ops_token(request):
        return _error("forbidden", 403)

    payload = _payload()
    trip_id, record = payload.get("id"), payload.get("record")
    if not trip_id or not isinstance(record, dict):
        return _error("id and record are required", 400)

    existing = repo.get_trip(trip_id)
    if not existing:
        return _error("Report not found", 404)

    fields = normalize_record({**existing, **record})
    if not fields["report_date"]:
        return _error("Valid report_date is required", 400)
    if not fields["vehicle_no"]:
        return _error("vehicle_no is required", 400)
    fields["uploaded_by"] = str(payload.get("updated_by") or existing.get("uploaded_by") or "").strip()

    try:
        updated = repo.update_trip(trip_id, fields)
    except DuplicateTripError as e:
        return _error(str(e), 409)
    except KeyError:
        return _error("Report not found", 404)
    except Exception as e:
        print(f"❌ Failed to update report {trip_id}: {e}")
        return _error("Failed to update report", 500)
    return jsonify({"success": True, "record": updated})


@app.route("/api/reports/data", methods=["DELETE"])
def delete_data():
    if not _check_ops_token(request):
        return _error("forbidden", 403)

    trip_id = _payload().get("id")
    if not trip_id:
        return _error("id is required", 400)
    try:
        deleted = repo.delete_trip(trip_id)
    except KeyError:
        return _error("Report not found", 404)
    except Exception as e:
        print(f"❌ Failed to delete report {trip_id}: {e}")
        return _error("Failed to delete report", 500)
    return jsonify({"success": True, "record": deleted})


# ======= TRIP CSV EXPORT =======
@app.route("/export_trips_csv")
def export_trips_csv():
    """
    Columns:
      Vehicle No., Area, Tanker Type, Transporter Name, Report Date,
      Trip Distance / Engine Hr, Trip Count, Uploaded By, Uploaded At (report timezone)
    """
    try:
        out_rows = [{
            "Vehicle No.": r.get("vehicle_no", ""),
            "Area": r.get("area", ""),
            "Tanker Type": r.get("tanker_type", ""),
            "Transporter Name": r.get("transporter_name", ""),
            "Report Date": r.get("report_date", ""),
            "Trip Distance / Engine Hr": r.get("trip_distance_km", ""),
            "Trip Count": r.get("trip_count", 0),
            "Uploaded By": r.get("uploaded_by", ""),
            "Uploaded At": local_time(r.get("uploaded_at")),
        } for r in repo.list_trips()]
        columns = ["Vehicle No.", "Area", "Tanker Type", "Transporter Name", "Report Date",
                   "Trip Distance / Engine Hr", "Trip Count", "Uploaded By", "Uploaded At"]
        csv_bytes = pd.DataFrame(out_rows, columns=columns).to_csv(index=False).encode("utf-8-sig")
        dated = datetime.now(pytz.timezone(REPORT_TIMEZONE)).strftime("%d-%m-%Y")
        return send_file(
            io.BytesIO(csv_bytes),
            mimetype="text/csv",
            as_attachment=True,
            download_name=f"DailyDistanceData_{dated}.csv",
        )
    except Exception as e:
        print(f"❌ Failed to export trips CSV: {e}")
        return _error("Failed to export CSV", 500)


# =========================
# PDF generation + verification
# =========================
@app.route("/api/reports/generate", methods=["POST"])
def generate_report():
    """
    Body: {date_from, date_to (YYYY-MM-DD), generated_by, filters: {vehicles, area, months}}
    Renders the PDF, stores it under REPORTS_DIR and records the generation so the
    QR code's verification link can be resolved later.
    """
    payload = _payload()
    date_from_raw, date_to_raw = payload.get("date_from"), payload.get("date_to")
    generated_by = str(payload.get("generated_by") or "").strip()

    if not date_from_raw or not date_to_raw:
        return _error("date_from and date_to are required", 400)
    if not generated_by:
        return _error("generated_by is required", 400)
    try:
        date_from, date_to = parse_iso_date(date_from_raw), parse_iso_date(date_to_raw)
    except ValueError:
        return _error("date_from and date_to must be YYYY-MM-DD", 400)

    filters = normalize_filters(payload.get("filters"))
    try:
        rows = select_rows(repo.list_trips(), date_from, date_to, filters)
    except EmptyReportError as e:
        return _error(str(e), 404)

    verification_code = secrets.token_hex(8)
    verification_url = f"{REPORT_CARD_URL}?code={quote(verification_code)}"
    generated_at = datetime.now(timezone.utc)

    try:
        pdf_bytes = build_report_pdf(
            title=REPORT_TITLE,
            date_from=date_from,
            date_to=date_to,
            generated_at=generated_at,
            generated_by=generated_by,
            rows=rows,
            verification_url=verification_url,
            logo_path=REPORT_LOGO_PATH,
            tz_name=REPORT_TIMEZONE,
        )
    except AssetUnavailableError as e:
        print(f"❌ Report generation failed (asset): {e}")
        return _error("Failed to generate PDF", 500)
    except Exception as e:
        print(f"❌ Report generation failed: {e}")
        return _error("Failed to generate PDF", 500)

    pdf_path = os.path.abspath(os.path.join(REPORTS_DIR, f"{verification_code}.pdf"))
    with open(pdf_path, "wb") as f:
        f.write(pdf_bytes)

    summary = build_summary(rows)
    repo.save_generation({
        "verification_code": verification_code,
        "verification_url": verification_url,
        "date_from": date_from.isoformat(),
        "date_to": date_to.isoformat(),
        "generated_by": generated_by,
        "generated_at": generated_at.isoformat(timespec="seconds"),
        "filter_vehicle": ", ".join(filters["vehicles"]),
        "filter_area": filters["area"] or "",
        "filter_month": ", ".join(filters["months"]),
        "record_count": len(rows),
        "pdf_path": pdf_path,
        "summary_total_distance": summary["totalDistance"],
        "summary_total_trips": summary["totalTrips"],
        "summary_vehicle_count": len(summary["vehicleReports"]),
    })
    print(f"🧾 Generated report {verification_code}: {len(rows)} rows by {generated_by}")

    return jsonify({
        "success": True,
        "pdf_url": f"/api/reports/pdf/{verification_code}",
        "verification_url": verification_url,
        "verification_code": verification_code,
        "record_count": len(rows),
    })


@app.route("/api/reports/pdf/<code>", methods=["GET"])
def download_report_pdf(code):
    generation = repo.get_generation(code)
    pdf_path = (generation or {}).get("pdf_path") or ""
    if not generation or not os.path.isfile(pdf_path):
        return _error("PDF not found", 404)

    with open(pdf_path, "rb") as f:
        pdf_bytes = f.read()
    return send_file(
        io.BytesIO(pdf_bytes),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"DailyDistanceReport({generation['date_from']}).pdf",
    )


@app.route("/api/reports/verify/<code>", methods=["GET"])
def verify_report(code):
    """Public: anyone holding the QR link can re-derive the report's totals."""
    generation = repo.get_generation(code)
    if not generation:
        return _error("Report not found", 404)
    return jsonify({"success": True, "data": verification_payload(generation, repo.list_trips())})


# =========================
# Entrypoint
# =========================
if __name__ == "__main__":
    # Useful for local debugging
    app.run(host="0.0.0.0", port=5000, debug=True)
