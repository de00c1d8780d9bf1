# =========================================================
# owner_portal/renderers.py
# Statement PDF (reportlab platypus) and CSV rendering
# =========================================================

import csv
import io
import logging
import tempfile
from typing import Any, List, Sequence

import requests
from reportlab.graphics import renderPDF
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import mm
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer
from reportlab.platypus.tables import LongTable, TableStyle
from svglib.svglib import svg2rlg

from . import config
from .invoices import parse_upstream_date
from .models import Statement

LOGGER = logging.getLogger(__name__)


# =========================
# FORMATTING
# =========================

def format_short_date(value: Any) -> str:
    """YYYY-M-D without zero padding; unparseable input is returned as text."""
    if value is None or value == "":
        return ""
    dt = parse_upstream_date(value)
    if dt is None:
        return str(value)
    return f"{dt.year}-{dt.month}-{dt.day}"


def money(value: float) -> str:
    return f"{value:.2f} {config.CURRENCY_SYMBOL}"


def fetch_logo():
    if not config.LOGO_URL:
        return None
    try:
        resp = requests.get(config.LOGO_URL, timeout=10)
        if not resp.ok:
            return None
        with tempfile.NamedTemporaryFile(suffix=".svg") as tmp:
            tmp.write(resp.content)
            tmp.flush()
            return svg2rlg(tmp.name)
    except (requests.RequestException, OSError, ValueError) as e:
        LOGGER.warning("Could not load logo from %s: %s", config.LOGO_URL, e)
        return None


# =========================
# PDF
# =========================

def esc(s: Any) -> str:
    if s is None:
        return ""
    s = str(s)
    return (
        s.replace("&", "&amp;")
         .replace("<", "&lt;")
         .replace(">", "&gt;")
         .replace('"', "&quot;")
         .replace("'", "&#39;")
    )


def build_statement_pdf(statement: Statement, compress: bool = True, logo=None) -> bytes:
    buf = io.BytesIO()
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(name="TitleX", parent=styles["Title"], fontName="Helvetica-Bold", fontSize=20, leading=24, alignment=TA_CENTER, spaceAfter=10))
    styles.add(ParagraphStyle(name="H1X", parent=styles["Heading1"], fontSize=14, leading=18, spaceBefore=10, spaceAfter=6, keepWithNext=1))
    styles.add(ParagraphStyle(name="BodyX", parent=styles["BodyText"], fontSize=10, leading=13))
    styles.add(ParagraphStyle(name="SmallX", parent=styles["BodyText"], fontSize=8.6, leading=11))
    styles.add(ParagraphStyle(name="SmallR", parent=styles["SmallX"], alignment=TA_RIGHT))
    styles.add(ParagraphStyle(name="TinyX", parent=styles["BodyText"], fontSize=8.1, leading=10))
    styles.add(ParagraphStyle(name="TinyR", parent=styles["TinyX"], alignment=TA_RIGHT))

    if logo is None:
        logo = fetch_logo()

    heading = f"Owner Statement {statement.period.label}"
    if statement.property_name:
        heading += f" - {statement.property_name}"

    doc = SimpleDocTemplate(
        buf,
        pagesize=A4,
        leftMargin=16 * mm,
        rightMargin=16 * mm,
        topMargin=18 * mm,
        bottomMargin=16 * mm,
        title=heading,
        author="Owner Portal",
        pageCompression=1 if compress else 0,
    )
    content_w = A4[0] - 32 * mm

    def P(text: Any, style: str = "TinyX") -> Paragraph:
        return Paragraph(esc(text), styles[style])

    def make_long_table(header: List[str], rows: List[List[Any]], col_widths: List[float],
                        right_cols: Sequence[int] = ()) -> LongTable:
        data: List[List[Any]] = [[P(h, "SmallR" if i in right_cols else "SmallX") for i, h in enumerate(header)]]
        for r in rows:
            data.append([P(c, "TinyR" if i in right_cols else "TinyX") for i, c in enumerate(r)])

        t = LongTable(data, colWidths=col_widths, repeatRows=1)
        ts = TableStyle([
            ("FONTNAME", (0, 0), (-1, -1), "Helvetica"),
            ("FONTSIZE", (0, 0), (-1, -1), 8),
            ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#eef2ff")),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.HexColor("#111827")),
            ("GRID", (0, 0), (-1, -1), 0.3, colors.HexColor("#cbd5e1")),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ("LEFTPADDING", (0, 0), (-1, -1), 4),
            ("RIGHTPADDING", (0, 0), (-1, -1), 4),
            ("TOPPADDING", (0, 0), (-1, -1), 3),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
        ])
        for i in range(1, len(data)):
            if i % 2 == 0:
                ts.add("BACKGROUND", (0, i), (-1, i), colors.HexColor("#f8fafc"))

        t.setStyle(ts)
        return t

    def header_footer(canvas, doc_):
        canvas.saveState()

        top_y = A4[1] - 10 * mm
        right_x = A4[0] - 16 * mm

        # logo box, right-aligned in the header band
        target_w = 30 * mm
        target_h = 6.0 * mm
        x_logo = right_x - target_w
        title_y = top_y - 3 * mm

        if logo:
            lw = float(getattr(logo, "width", 0) or 0)
            lh = float(getattr(logo, "height", 0) or 0)
            if lw > 0 and lh > 0:
                s = min(target_w / lw, target_h / lh)
                canvas.saveState()
                canvas.translate(x_logo, title_y - 0.6 * mm)
                canvas.scale(s, s)
                renderPDF.draw(logo, canvas, 0, 0)
                canvas.restoreState()

        canvas.setFont("Helvetica-Bold", 11)
        canvas.drawString(16 * mm, title_y, heading)

        canvas.setFont("Helvetica", 8.5)
        canvas.drawRightString(x_logo - 3 * mm if logo else right_x, title_y, f"Page {doc_.page}")

        canvas.restoreState()

    def section(title: str, header: List[str], rows: List[List[Any]], fractions: List[float],
                right_cols: Sequence[int]) -> None:
        story.append(Paragraph(esc(title), styles["H1X"]))
        if not rows:
            story.append(P(f"- No {title.lower()} in this period", "BodyX"))
        else:
            story.append(make_long_table(header, rows, [content_w * f for f in fractions], right_cols))
        story.append(Spacer(1, 10))

    story: List[Any] = []

    story.append(Spacer(1, 16))
    story.append(Paragraph("Statement", styles["TitleX"]))
    story.append(P(f"Property: {statement.property_name or statement.property_id}", "BodyX"))
    story.append(P(f"Period: {statement.period.label}", "BodyX"))
    story.append(P(f"Generated: {statement.generated_at.strftime('%Y-%m-%d %H:%M')} UTC", "SmallX"))
    story.append(Spacer(1, 10))

    story.append(Paragraph("Summary", styles["H1X"]))
    for label, value in statement.summary.lines():
        story.append(P(f"{label}: {money(value)}", "BodyX"))
    story.append(Spacer(1, 10))

    section(
        "Invoices",
        ["ID", "Date", "Guest", "Gross", "VAT", "Total"],
        [[i.id, format_short_date(i.date), i.guest_name, money(i.gross_revenue), money(i.vat), money(i.total)]
         for i in statement.invoices],
        [0.14, 0.13, 0.31, 0.14, 0.13, 0.15],
        right_cols=(3, 4, 5),
    )
    section(
        "Expenses",
        ["ID", "Date", "Vendor", "Amount"],
        [[e.id, format_short_date(e.date), e.vendor, money(e.amount)] for e in statement.expenses],
        [0.16, 0.16, 0.48, 0.20],
        right_cols=(3,),
    )
    section(
        "Commissions",
        ["ID", "Date", "Amount"],
        [[c.id, format_short_date(c.date), money(c.amount)] for c in statement.commissions],
        [0.3, 0.3, 0.4],
        right_cols=(2,),
    )

    doc.build(story, onFirstPage=header_footer, onLaterPages=header_footer)
    pdf = buf.getvalue()
    if len(pdf) > config.MAX_PDF_MB * 1024 * 1024:
        raise RuntimeError(f"Generated PDF too large ({len(pdf)/(1024*1024):.1f}MB) for limit ({config.MAX_PDF_MB}MB).")
    return pdf


# =========================
# CSV
# =========================

def _csv_block(title: str, header: List[str], rows: List[List[Any]]) -> str:
    out = io.StringIO()
    w = csv.writer(out, lineterminator="\n")
    w.writerow(header)
    w.writerows(rows)
    return f"# {title}\n" + out.getvalue().rstrip("\n")


def build_statement_csv(statement: Statement) -> str:
    s = statement.summary
    blocks = [
        _csv_block(
            "Invoices",
            ["Invoice ID", "Date", "Guest Name", "Gross", "VAT", "Total", "Invoice URL"],
            [[i.id, format_short_date(i.date), i.guest_name, f"{i.gross_revenue:.2f}", f"{i.vat:.2f}",
              f"{i.total:.2f}", i.invoice_url] for i in statement.invoices],
        ),
        _csv_block(
            "Expenses",
            ["Expense ID", "Date", "Vendor", "Amount"],
            [[e.id, format_short_date(e.date), e.vendor, f"{e.amount:.2f}"] for e in statement.expenses],
        ),
        _csv_block(
            "Commissions",
            ["Commission ID", "Date", "Amount"],
            [[c.id, format_short_date(c.date), f"{c.amount:.2f}"] for c in statement.commissions],
        ),
        _csv_block(
            "Summary",
            ["Key", "Value"],
            [
                ["Gross Revenue", f"{s.gross:.2f}"],
                ["VAT", f"{s.vat:.2f}"],
                ["Total Invoiced", f"{s.invoiced_total:.2f}"],
                ["Total Commissions", f"{s.commissions_total:.2f}"],
                ["Total Expenses", f"{s.expenses_total:.2f}"],
                ["Net Payout", f"{s.net_payout:.2f}"],
            ],
        ),
    ]
    return "\n\n".join(blocks) + "\n"
