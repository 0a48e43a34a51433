#!/usr/bin/env python3
# tools/import_workbook.py
"""
Load one or more distance-report workbooks straight into the configured store,
bypassing the web upload. Same parsing and upsert rules as the upload endpoint.

    PERSISTENCE_BACKEND=db python tools/import_workbook.py july.xlsx august.xlsx --by ops@example.com
"""
import argparse
import os
import secrets
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from persistence import get_repo  # noqa: E402
from workbook_ingest import parse_workbook, WorkbookError  # noqa: E402


def main(argv=None):
    parser = argparse.ArgumentParser(description="Import distance-report workbooks")
    parser.add_argument("paths", nargs="+", help=".xlsx / .xls / .csv files")
    parser.add_argument("--by", default="import-script", help="recorded as uploaded_by")
    parser.add_argument("--backend", default=os.environ.get("PERSISTENCE_BACKEND", "csv"))
    args = parser.parse_args(argv)

    repo = get_repo(args.backend)
    total = 0
    for path in args.paths:
        if not os.path.isfile(path):
            raise SystemExit(f"Cannot find {path}")
        try:
            rows = parse_workbook(path)
        except WorkbookError as e:
            raise SystemExit(f"❌ {e}")
        if not rows:
            print(f"⚠️ No data rows detected in {path}; skipped")
            continue
        count = repo.upsert_trips(rows, args.by, secrets.token_hex(16), os.path.basename(path))
        total += count
        print(f"📦 {path}: upserted {count} rows")

    print(f"Imported {total} rows into {args.backend}.")
    return total


if __name__ == "__main__":
    main()
