# report_pdf.py
"""
Daily Distance Report PDF.

Fixed 297 x 241 mm pages, 21 table rows per page. Page 1 carries the logo,
title and verification QR code above the table plus a one-line summary band;
every page repeats the column header and has a "Generated by" footer with
page numbering. Row shading follows the row's position in the whole report,
so banding continues across page breaks.
"""
import asyncio
import calendar
import math
import os
import threading
from datetime import date, datetime
from io import BytesIO
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple
from xml.sax.saxutils import escape

import pytz
import qrcode
from reportlab.lib import colors
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas
from reportlab.platypus import Paragraph

from normalizers import fmt_date, parse_distance, to_trip_count

LOGO_PATH = os.environ.get("REPORT_LOGO_PATH", "static/report_logo.bmp")
REPORT_TIMEZONE = os.environ.get("REPORT_TIMEZONE", "Asia/Kolkata")

# Page geometry (points)
PAGE_WIDTH = 297 * mm
BASE_PAGE_HEIGHT = 241 * mm
FIRST_PAGE_MARGIN = 20
PAGE_MARGIN = 24
ROWS_PER_PAGE = 21
ROW_HEIGHT = 18
BAND_HEIGHT = 20          # column header and summary sub-header
FOOTER_OFFSET = 40        # footer sits this far above the bottom margin
FOOTER_GAP = 6            # minimum space between last row and footer
CELL_PADDING = 3
FONT_SIZE = 8
FOOTER_FONT_SIZE = 10
PAGE_LABEL_WIDTH = 60

# First-page header block
LOGO_WIDTH = 140
LOGO_STRETCH = 1.5
LOGO_LIFT = 4             # logo/title block sits this far above the header bottom
LOGO_TITLE_GAP = 6
TITLE_MEASURE_WIDTH = 300
TITLE_DRAW_WIDTH = 400
QR_SIZE = 140
QR_CAPTION = "Scan for report details"
QR_CAPTION_GAP = 2
QR_CAPTION_SIZE = 10
HEADER_GAP = 11           # header block -> table

# nominal widths (pt); scaled to the band width by column_widths()
COLUMNS = [
    ("S.No", 40),
    ("Area", 80),
    ("Vehicle No.", 100),
    ("Tanker Type", 100),
    ("Transporter Name", 120),
    ("Report Date", 150),
    ("Trip Distance / Engine Hr", 150),
    ("Trip Count", 70),
]

HEADER_FILL = colors.HexColor("#2880ba")
HEADER_TEXT = colors.white
SUB_HEADER_FILL = colors.HexColor("#babae8")
SUB_HEADER_TEXT = colors.HexColor("#50525f")
ROW_FILLS = (colors.white, colors.HexColor("#f5f5f5"))
ROW_TEXT = colors.HexColor("#2c2c2c")

_styles = getSampleStyleSheet()
TITLE_STYLE = ParagraphStyle("ReportTitle", parent=_styles["Normal"],
                             fontName="Helvetica-Bold", fontSize=12, leading=14.4)


class AssetUnavailableError(RuntimeError):
    """Logo or QR image could not be produced; the report is not rendered."""
    pass


class ReportRequest(NamedTuple):
    title: str
    date_from: date
    date_to: date
    generated_at: datetime
    generated_by: str
    verification_url: str
    rows: Tuple[Dict, ...]   # sorted by (vehicle_no, report_date); not re-sorted here


class PageLayout(NamedTuple):
    page_index: int
    rows: Sequence[Dict]
    start_index: int
    is_first_page: bool
    includes_sub_header: bool


# ---------------------------------------------------------------------------
# Assets
# ---------------------------------------------------------------------------

class LogoCache:
    """Read-through cache of one logo file; bytes are read once per process."""

    def __init__(self, path: str):
        self.path = path
        self._data: Optional[bytes] = None
        self._lock = threading.Lock()

    def load(self) -> bytes:
        if self._data is not None:
            return self._data
        with self._lock:
            if self._data is None:
                try:
                    with open(self.path, "rb") as f:
                        self._data = f.read()
                except OSError as e:
                    raise AssetUnavailableError(f"Logo not readable at '{self.path}': {e}") from e
        return self._data


_logo_caches: Dict[str, LogoCache] = {}
_logo_caches_lock = threading.Lock()


def get_logo_cache(path: str) -> LogoCache:
    key = os.path.abspath(path)
    with _logo_caches_lock:
        cache = _logo_caches.get(key)
        if cache is None:
            cache = _logo_caches[key] = LogoCache(path)
        return cache


def encode_qr_png(url: str) -> bytes:
    if not url or not str(url).strip():
        raise AssetUnavailableError("Verification URL is empty")
    try:
        qr_img = qrcode.make(str(url).strip()).convert("RGB")
        buf = BytesIO()
        qr_img.save(buf, format="PNG")
    except Exception as e:
        raise AssetUnavailableError(f"QR generation failed: {e}") from e
    return buf.getvalue()


def _image_reader(data: bytes, what: str) -> ImageReader:
    try:
        img = ImageReader(BytesIO(data))
        img.getSize()
    except Exception as e:
        raise AssetUnavailableError(f"{what} is not a readable image: {e}") from e
    return img


# ---------------------------------------------------------------------------
# Pure layout helpers
# ---------------------------------------------------------------------------

def total_pages(row_count: int) -> int:
    return max(1, math.ceil(row_count / ROWS_PER_PAGE))


def paginate(rows: Sequence[Dict]) -> List[PageLayout]:
    pages = []
    for i in range(total_pages(len(rows))):
        start = i * ROWS_PER_PAGE
        pages.append(PageLayout(
            page_index=i,
            rows=rows[start:start + ROWS_PER_PAGE],
            start_index=start,
            is_first_page=i == 0,
            includes_sub_header=i == 0 and len(rows) > 0,
        ))
    return pages


def column_widths(table_width: float) -> List[float]:
    """COLUMNS widths scaled so the columns exactly fill the band between the margins."""
    scale = table_width / sum(width for _, width in COLUMNS)
    return [width * scale for _, width in COLUMNS]


def row_fill(global_index: int):
    return ROW_FILLS[global_index % 2]


def report_title_line(title: str, date_from: date, date_to: date) -> str:
    """Title with the range widened to whole calendar months."""
    range_start = date(date_from.year, date_from.month, 1)
    last_day = calendar.monthrange(date_to.year, date_to.month)[1]
    range_end = date(date_to.year, date_to.month, last_day)
    return f"{title} (From: {fmt_date(range_start)} To: {fmt_date(range_end)})"


def total_distance_km(rows: Sequence[Dict]) -> float:
    return sum(parse_distance(r.get("trip_distance_km")) for r in rows)


def total_trip_count(rows: Sequence[Dict]) -> int:
    return sum(to_trip_count(r.get("trip_count")) for r in rows)


def _text(v) -> str:
    if v is None:
        return ""
    s = str(v).strip()
    return "" if s.lower() == "nan" else s


def sub_header_cells(rows: Sequence[Dict], date_from: date, date_to: date) -> List[str]:
    """Summary band: first row's identity, the literal requested range, totals."""
    first = rows[0] if rows else {}
    return [
        "",
        _text(first.get("area")),
        _text(first.get("vehicle_no")),
        _text(first.get("tanker_type")),
        _text(first.get("transporter_name")),
        f"{fmt_date(date_from)} - {fmt_date(date_to)}",
        f"{total_distance_km(rows):.2f} km",
        str(total_trip_count(rows)),
    ]


def row_cells(row: Dict, global_index: int) -> List[str]:
    return [
        str(global_index + 1),
        _text(row.get("area")),
        _text(row.get("vehicle_no")),
        _text(row.get("tanker_type")),
        _text(row.get("transporter_name")),
        _text(row.get("report_date")),
        _text(row.get("trip_distance_km")),
        str(to_trip_count(row.get("trip_count"))),
    ]


def footer_text(generated_by: str, generated_at: datetime, tz_name: str = None) -> str:
    if generated_at.tzinfo is None:
        generated_at = pytz.utc.localize(generated_at)
    local = generated_at.astimezone(pytz.timezone(tz_name or REPORT_TIMEZONE))
    return (f"Generated by :- {generated_by}, Report Generated At :- "
            f"{fmt_date(local)} {local.strftime('%H:%M:%S')}")


def _title_height(title_line: str) -> float:
    _, h = Paragraph(escape(title_line), TITLE_STYLE).wrap(TITLE_MEASURE_WIDTH, 1000)
    return h


def header_metrics(title_line: str, logo_size: Tuple[float, float]) -> Dict[str, float]:
    iw, ih = logo_size
    logo_h = LOGO_WIDTH * (ih / iw) * LOGO_STRETCH
    left_h = logo_h + LOGO_TITLE_GAP + _title_height(title_line)
    qr_h = QR_SIZE + QR_CAPTION_GAP + QR_CAPTION_SIZE
    return {
        "logo_height": logo_h,
        "left_height": left_h,
        "qr_height": qr_h,
        "height": max(left_h + LOGO_LIFT, qr_h),
    }


def first_page_height(header_height: float, row_count: int) -> float:
    """Base height unless header + a full first page of rows would run into the footer."""
    content = (FIRST_PAGE_MARGIN + header_height + HEADER_GAP + BAND_HEIGHT
               + (BAND_HEIGHT if row_count else 0)
               + min(row_count, ROWS_PER_PAGE) * ROW_HEIGHT)
    return max(BASE_PAGE_HEIGHT, content + FOOTER_GAP + FOOTER_OFFSET + FIRST_PAGE_MARGIN)


# ---------------------------------------------------------------------------
# Drawing
# ---------------------------------------------------------------------------

class _Layout:
    """
    Canvas plus a top-down cursor `y` for one render call. Positions are kept
    as distance from the page top and flipped to reportlab's origin on draw.
    """

    def __init__(self, c: canvas.Canvas, page_height: float, margin: float):
        self.c = c
        self.page_height = page_height
        self.margin = margin
        self.y = margin

    def new_page(self, page_height: float, margin: float):
        self.c.showPage()
        self.c.setPageSize((PAGE_WIDTH, page_height))
        self.page_height = page_height
        self.margin = margin
        self.y = margin

    @property
    def left(self) -> float:
        return self.margin

    @property
    def right(self) -> float:
        return PAGE_WIDTH - self.margin

    @property
    def table_width(self) -> float:
        return self.right - self.left

    def rl(self, y: float) -> float:
        return self.page_height - y


def _draw_paragraph(c, text, style, x, y, max_width):
    p = Paragraph(text, style)
    w, h = p.wrapOn(c, max_width, 1000)
    p.drawOn(c, x, y - h)
    return y - h


def _clipped_string(layout: _Layout, text: str, x: float, top: float, width: float, height: float,
                    font: str, size: float, color):
    """Single line, vertically centred in the box, cut at the box edge (never wrapped)."""
    c = layout.c
    c.saveState()
    path = c.beginPath()
    path.rect(x, layout.rl(top + height), width, height)
    c.clipPath(path, stroke=0, fill=0)
    c.setFont(font, size)
    c.setFillColor(color)
    c.drawString(x, layout.rl(top + height / 2 + size * 0.35), text)
    c.restoreState()


def _draw_band(layout: _Layout, cells: Sequence[str], height: float, fill, text_color, font: str):
    c = layout.c
    top = layout.y
    c.setFillColor(fill)
    c.rect(layout.left, layout.rl(top + height), layout.table_width, height, stroke=0, fill=1)

    x = layout.left
    for width, value in zip(column_widths(layout.table_width), cells):
        _clipped_string(layout, value, x + CELL_PADDING, top, width - 2 * CELL_PADDING, height,
                        font, FONT_SIZE, text_color)
        x += width
    layout.y = top + height


def _draw_first_page_header(layout: _Layout, title_line: str, metrics: Dict[str, float],
                            logo: ImageReader, qr: ImageReader):
    c = layout.c
    top = layout.y
    header_h = metrics["height"]

    # left block: stretched logo over the title, bottom-aligned (lifted slightly)
    logo_top = top + header_h - LOGO_LIFT - metrics["left_height"]
    c.drawImage(logo, layout.left, layout.rl(logo_top + metrics["logo_height"]),
                width=LOGO_WIDTH, height=metrics["logo_height"], mask="auto")
    title_top = logo_top + metrics["logo_height"] + LOGO_TITLE_GAP
    _draw_paragraph(c, escape(title_line), TITLE_STYLE, layout.left, layout.rl(title_top), TITLE_DRAW_WIDTH)

    # right block: QR + caption, flush with the header bottom
    qr_x = layout.right - QR_SIZE
    qr_top = top + header_h - metrics["qr_height"]
    c.drawImage(qr, qr_x, layout.rl(qr_top + QR_SIZE), width=QR_SIZE, height=QR_SIZE)
    c.setFont("Helvetica-Bold", QR_CAPTION_SIZE)
    c.setFillColor(colors.black)
    c.drawCentredString(qr_x + QR_SIZE / 2,
                        layout.rl(qr_top + QR_SIZE + QR_CAPTION_GAP + QR_CAPTION_SIZE * 0.8),
                        QR_CAPTION)

    layout.y = top + header_h + HEADER_GAP


def _draw_footer(layout: _Layout, text: str, page_number: int, page_count: int):
    footer_top = layout.page_height - layout.margin - FOOTER_OFFSET
    _clipped_string(layout, text, layout.left, footer_top, layout.table_width - PAGE_LABEL_WIDTH,
                    FOOTER_FONT_SIZE * 1.4, "Helvetica-Bold", FOOTER_FONT_SIZE, colors.black)
    c = layout.c
    c.setFont("Helvetica-Bold", FOOTER_FONT_SIZE)
    c.setFillColor(colors.black)
    c.drawRightString(layout.right, layout.rl(footer_top + FOOTER_FONT_SIZE * 1.4 / 2 + FOOTER_FONT_SIZE * 0.35),
                      f"Page {page_number} of {page_count}")


def _draw_report(request: ReportRequest, logo: ImageReader, qr: ImageReader, tz_name: str = None) -> bytes:
    rows = list(request.rows)
    pages = paginate(rows)
    title_line = report_title_line(request.title, request.date_from, request.date_to)
    metrics = header_metrics(title_line, logo.getSize())
    summary = sub_header_cells(rows, request.date_from, request.date_to)
    footer = footer_text(request.generated_by, request.generated_at, tz_name)
    header_labels = [label for label, _ in COLUMNS]

    buf = BytesIO()
    first_h = first_page_height(metrics["height"], len(rows))
    c = canvas.Canvas(buf, pagesize=(PAGE_WIDTH, first_h))
    c.setTitle(title_line)
    c.setAuthor(request.generated_by)
    layout = _Layout(c, first_h, FIRST_PAGE_MARGIN)

    for page in pages:
        if page.is_first_page:
            _draw_first_page_header(layout, title_line, metrics, logo, qr)
        else:
            layout.new_page(BASE_PAGE_HEIGHT, PAGE_MARGIN)

        _draw_band(layout, header_labels, BAND_HEIGHT, HEADER_FILL, HEADER_TEXT, "Helvetica-Bold")
        if page.includes_sub_header:
            _draw_band(layout, summary, BAND_HEIGHT, SUB_HEADER_FILL, SUB_HEADER_TEXT, "Helvetica")

        for offset, row in enumerate(page.rows):
            idx = page.start_index + offset
            _draw_band(layout, row_cells(row, idx), ROW_HEIGHT, row_fill(idx), ROW_TEXT, "Helvetica")

        _draw_footer(layout, footer, page.page_index + 1, len(pages))

    c.showPage()
    c.save()
    return buf.getvalue()


async def render_report_pdf(request: ReportRequest, logo_path: str = None, tz_name: str = None) -> bytes:
    """
    Render a report to PDF bytes. Waits for the logo (cached after the first
    read) and the QR image before drawing anything; an asset failure raises
    AssetUnavailableError and no document is produced.
    """
    logo_bytes = await asyncio.to_thread(get_logo_cache(logo_path or LOGO_PATH).load)
    qr_bytes = await asyncio.to_thread(encode_qr_png, request.verification_url)
    logo = _image_reader(logo_bytes, "Logo")
    qr = _image_reader(qr_bytes, "QR code")
    return _draw_report(request, logo, qr, tz_name)


def build_report_pdf(*, title, date_from, date_to, generated_at, generated_by, rows,
                     verification_url, logo_path=None, tz_name=None) -> bytes:
    """Synchronous entry point for request handlers and scripts."""
    request = ReportRequest(
        title=title,
        date_from=date_from,
        date_to=date_to,
        generated_at=generated_at,
        generated_by=generated_by,
        verification_url=verification_url,
        rows=tuple(rows or ()),
    )
    return asyncio.run(render_report_pdf(request, logo_path=logo_path, tz_name=tz_name))
