import sys
from pathlib import Path

import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]

path_str = str(ROOT)
if path_str not in sys.path:
    sys.path.insert(0, path_str)


@pytest.fixture
def logo_path(tmp_path):
    path = tmp_path / "logo.png"
    Image.new("RGB", (300, 100), (40, 128, 186)).save(path)
    return str(path)


def make_trip(vehicle_no, report_date, distance="10.00 km", trips=1, area="North",
              tanker_type="Water", transporter_name="Acme"):
    return {
        "vehicle_no": vehicle_no,
        "area": area,
        "tanker_type": tanker_type,
        "transporter_name": transporter_name,
        "report_date": report_date,
        "trip_distance_km": distance,
        "trip_count": trips,
    }
