import re
from datetime import date, datetime, timezone

import pytest
from reportlab.pdfgen import canvas

import report_pdf
from report_pdf import (
    AssetUnavailableError,
    LogoCache,
    ROW_FILLS,
    build_report_pdf,
    encode_qr_png,
    first_page_height,
    footer_text,
    paginate,
    report_title_line,
    row_fill,
    sub_header_cells,
    BASE_PAGE_HEIGHT,
    CELL_PADDING,
    FIRST_PAGE_MARGIN,
    PAGE_MARGIN,
    PAGE_WIDTH,
    column_widths,
)
from conftest import make_trip

GENERATED_AT = datetime(2025, 8, 1, 4, 30, tzinfo=timezone.utc)


def _rows(n):
    return [make_trip("DL1AB1234", f"{(i % 28) + 1:02d}-07-2025") for i in range(n)]


def _build(rows, logo_path, **kw):
    args = dict(
        title="Daily Distance Report",
        date_from=date(2025, 7, 1),
        date_to=date(2025, 7, 31),
        generated_at=GENERATED_AT,
        generated_by="ops@example.com",
        rows=rows,
        verification_url="http://localhost:5000/report-card.html?code=abc",
        logo_path=logo_path,
        tz_name="Asia/Kolkata",
    )
    args.update(kw)
    return build_report_pdf(**args)


def _page_count(pdf: bytes) -> int:
    return max(int(n) for n in re.findall(rb"/Count (\d+)", pdf))


@pytest.fixture
def drawn(monkeypatch):
    """Collect every string drawn on any canvas during the test."""
    strings = []
    for name in ("drawString", "drawRightString", "drawCentredString"):
        original = getattr(canvas.Canvas, name)

        def wrapper(self, x, y, text, *args, _original=original, **kwargs):
            strings.append(text)
            return _original(self, x, y, text, *args, **kwargs)

        monkeypatch.setattr(canvas.Canvas, name, wrapper)
    return strings


@pytest.mark.parametrize("count, pages", [(0, 1), (1, 1), (21, 1), (22, 2), (42, 2), (43, 3)])
def test_paginate(count, pages):
    layout = paginate(_rows(count))
    assert len(layout) == pages
    assert sum(len(p.rows) for p in layout) == count
    assert [p.start_index for p in layout] == [i * 21 for i in range(pages)]
    assert layout[0].is_first_page
    assert layout[0].includes_sub_header == (count > 0)
    assert not any(p.includes_sub_header for p in layout[1:])


def test_row_banding_continues_across_pages():
    assert row_fill(0) == ROW_FILLS[0]
    assert row_fill(20) == ROW_FILLS[0]
    assert row_fill(21) == ROW_FILLS[1]


def test_sub_header_totals_are_lenient():
    rows = [
        make_trip("A", "01-07-2025", distance="12.50 km", trips=2),
        make_trip("A", "02-07-2025", distance="not a number", trips="x"),
        make_trip("A", "03-07-2025", distance="7.5", trips=3),
    ]
    cells = sub_header_cells(rows, date(2025, 7, 3), date(2025, 7, 20))
    assert cells[2] == "A"
    assert cells[5] == "03-07-2025 - 20-07-2025"
    assert cells[6] == "20.00 km"
    assert cells[7] == "5"


def test_title_range_covers_whole_months():
    assert report_title_line("Daily Distance Report", date(2025, 2, 10), date(2025, 2, 12)) == \
        "Daily Distance Report (From: 01-02-2025 To: 28-02-2025)"
    assert report_title_line("R", date(2024, 1, 15), date(2024, 2, 3)).endswith("To: 29-02-2024)")


def test_footer_text_uses_report_timezone():
    assert footer_text("ops", GENERATED_AT, "Asia/Kolkata") == \
        "Generated by :- ops, Report Generated At :- 01-08-2025 10:00:00"
    naive = datetime(2025, 8, 1, 4, 30)
    assert footer_text("ops", naive, "Asia/Kolkata").endswith("10:00:00")


def test_first_page_only_grows_when_needed():
    assert first_page_height(170, 0) == BASE_PAGE_HEIGHT
    assert first_page_height(400, 21) > BASE_PAGE_HEIGHT


def test_build_report_page_counts(logo_path):
    assert _page_count(_build(_rows(1), logo_path)) == 1
    assert _page_count(_build(_rows(22), logo_path)) == 2
    assert _page_count(_build(_rows(43), logo_path)) == 3


def test_build_report_draws_header_summary_and_footer(logo_path, drawn):
    pdf = _build(_rows(22), logo_path)
    assert pdf.startswith(b"%PDF")
    assert "Scan for report details" in drawn
    assert drawn.count("S.No") == 2
    assert "Page 1 of 2" in drawn and "Page 2 of 2" in drawn
    assert "01-07-2025 - 31-07-2025" in drawn
    assert "22" in drawn
    assert any(s.startswith("Generated by :- ops@example.com") for s in drawn)


def test_empty_report_has_one_page_without_summary(logo_path, drawn):
    pdf = _build([], logo_path)
    assert _page_count(pdf) == 1
    assert drawn.count("S.No") == 1
    assert "01-07-2025 - 31-07-2025" not in drawn
    assert "Page 1 of 1" in drawn


def test_missing_logo_fails_before_drawing(tmp_path, monkeypatch):
    pages = []
    monkeypatch.setattr(canvas.Canvas, "showPage", lambda self: pages.append(1))
    with pytest.raises(AssetUnavailableError):
        _build(_rows(3), str(tmp_path / "missing.png"))
    assert pages == []


def test_empty_verification_url_fails(logo_path):
    with pytest.raises(AssetUnavailableError):
        _build(_rows(3), logo_path, verification_url="  ")
    with pytest.raises(AssetUnavailableError):
        encode_qr_png("")


def test_encode_qr_png():
    assert encode_qr_png("http://localhost:5000/report-card.html?code=abc").startswith(b"\x89PNG")


def test_logo_cache_reads_file_once(tmp_path, logo_path):
    cache = LogoCache(logo_path)
    first = cache.load()
    with open(logo_path, "wb") as f:
        f.write(b"changed")
    assert cache.load() == first


def test_logo_cache_is_shared_per_path(logo_path):
    assert report_pdf.get_logo_cache(logo_path) is report_pdf.get_logo_cache(logo_path)


@pytest.mark.parametrize("margin", [FIRST_PAGE_MARGIN, PAGE_MARGIN])
def test_column_widths_fill_the_band_exactly(margin):
    table_width = PAGE_WIDTH - 2 * margin
    widths = column_widths(table_width)
    assert len(widths) == 8
    assert sum(widths) == pytest.approx(table_width)
    assert widths[0] / widths[-1] == pytest.approx(40 / 70)


def test_last_column_stays_inside_right_margin(logo_path, monkeypatch):
    positions = []
    original = canvas.Canvas.drawString

    def record(self, x, y, text, *args, **kwargs):
        if text == "Trip Count":
            positions.append(x)
        return original(self, x, y, text, *args, **kwargs)

    monkeypatch.setattr(canvas.Canvas, "drawString", record)
    _build(_rows(22), logo_path)

    first, second = positions
    for x, margin in ((first, FIRST_PAGE_MARGIN), (second, PAGE_MARGIN)):
        last_width = column_widths(PAGE_WIDTH - 2 * margin)[-1]
        assert x == pytest.approx(PAGE_WIDTH - margin - last_width + CELL_PADDING)
