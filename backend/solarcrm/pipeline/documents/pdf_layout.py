from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Sequence

from reportlab.lib.colors import Color, HexColor, white
from reportlab.lib.pagesizes import A4
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from ...settings import settings

BRAND_ORANGE = HexColor("#FF5603")
RECEIPT_GREEN = HexColor("#228B22")
TEXT_BLACK = Color(0, 0, 0)
TEXT_GRAY = Color(100 / 255, 100 / 255, 100 / 255)
RULE_GRAY = Color(200 / 255, 200 / 255, 200 / 255)
HEADER_FILL = Color(245 / 255, 245 / 255, 245 / 255)

PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN = 56.7  # 20mm
CONTENT_WIDTH = PAGE_WIDTH - 2 * MARGIN

FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"


@dataclass(frozen=True, slots=True)
class Party:
    name: str
    lines: Sequence[str] = ()


@dataclass(frozen=True, slots=True)
class Column:
    title: str
    width: float
    align: str = "left"


class DocumentCanvas:
    """
    Top-down drawing cursor over a reportlab canvas.

    `y` is the baseline of the next line in PDF points; helpers move it down
    and start a new page when a block would cross the bottom margin.
    """

    def __init__(self, *, title: str, author: str | None = None):
        self.buf = io.BytesIO()
        self.c = canvas.Canvas(self.buf, pagesize=A4)
        self.c.setTitle(title)
        self.c.setAuthor(author or settings.company_legal_name)
        self.y = PAGE_HEIGHT - MARGIN
        self.page_number = 1

    # --- primitives ---

    def text(self, x: float, s: str, *, size: float = 10, bold: bool = False, color: Color = TEXT_BLACK) -> None:
        self.c.setFillColor(color)
        self.c.setFont(FONT_BOLD if bold else FONT, size)
        self.c.drawString(x, self.y, str(s or ""))

    def text_right(self, right_x: float, s: str, *, size: float = 10, bold: bool = False, color: Color = TEXT_BLACK) -> None:
        self.c.setFillColor(color)
        self.c.setFont(FONT_BOLD if bold else FONT, size)
        self.c.drawRightString(right_x, self.y, str(s or ""))

    def text_center(self, s: str, *, size: float = 10, bold: bool = False, color: Color = TEXT_BLACK) -> None:
        self.c.setFillColor(color)
        self.c.setFont(FONT_BOLD if bold else FONT, size)
        self.c.drawCentredString(PAGE_WIDTH / 2, self.y, str(s or ""))

    def down(self, pts: float) -> None:
        self.y -= pts

    def ensure_space(self, pts: float) -> None:
        if self.y - pts < MARGIN + 30:
            self.c.showPage()
            self.page_number += 1
            self.y = PAGE_HEIGHT - MARGIN

    def rule(self, *, gap_after: float = 24) -> None:
        self.c.setStrokeColor(RULE_GRAY)
        self.c.setLineWidth(0.5)
        self.c.line(MARGIN, self.y, PAGE_WIDTH - MARGIN, self.y)
        self.down(gap_after)

    # --- blocks ---

    def brand_header(self, *, title: str, title_color: Color, meta: Sequence[str]) -> None:
        top = self.y
        self.text(MARGIN, settings.company_brand_name, size=18, bold=True, color=BRAND_ORANGE)
        self.down(22)
        self.text(MARGIN, settings.company_legal_name, color=TEXT_GRAY)
        self.down(14)
        self.text(MARGIN, settings.company_address, color=TEXT_GRAY)

        # Right column: document title over its reference lines.
        saved = self.y
        self.y = top
        self.text_right(PAGE_WIDTH - MARGIN, title, size=24, bold=True, color=title_color)
        for line in meta:
            self.down(14)
            self.text_right(PAGE_WIDTH - MARGIN, line, color=TEXT_GRAY)
        self.y = min(saved, self.y) - 24
        self.rule()

    def parties(self, *, left_label: str, left: Party, right_label: str, right: Party) -> None:
        right_x = MARGIN + CONTENT_WIDTH / 2 + 28
        self.text(MARGIN, left_label, bold=True, color=TEXT_GRAY)
        self.text(right_x, right_label, bold=True, color=TEXT_GRAY)
        self.down(17)
        left_lines = [left.name, *left.lines]
        right_lines = [right.name, *right.lines]
        for i in range(max(len(left_lines), len(right_lines))):
            if i < len(left_lines):
                self.text(MARGIN, left_lines[i])
            if i < len(right_lines):
                self.text(right_x, right_lines[i])
            self.down(14)
        self.down(10)
        self.rule()

    def label_value(self, label: str, value: str, *, label_width: float = 70) -> None:
        self.text(MARGIN, label, bold=True, color=TEXT_GRAY)
        self.text(MARGIN + label_width, value)
        self.down(17)

    def table(self, columns: Sequence[Column], rows: Sequence[Sequence[str]]) -> None:
        row_h = 20.0

        def _header() -> None:
            self.c.setFillColor(HEADER_FILL)
            self.c.rect(MARGIN, self.y - 6, CONTENT_WIDTH, row_h, stroke=0, fill=1)
            self._row([c.title for c in columns], columns, bold=True, color=TEXT_GRAY)
            self.down(row_h)

        self.ensure_space(row_h * 2)
        _header()
        for row in rows:
            if self.y - row_h < MARGIN + 30:
                self.ensure_space(row_h * 2)
                _header()
            self._row(row, columns)
            self.down(row_h)
            self.c.setStrokeColor(RULE_GRAY)
            self.c.setLineWidth(0.3)
            self.c.line(MARGIN, self.y + row_h - 6, PAGE_WIDTH - MARGIN, self.y + row_h - 6)

    def _row(self, cells: Sequence[str], columns: Sequence[Column], *, bold: bool = False, color: Color = TEXT_BLACK) -> None:
        x = MARGIN + 6
        for cell, col in zip(cells, columns):
            if col.align == "right":
                self.text_right(x + col.width - 12, cell, bold=bold, color=color)
            else:
                self.text(x, _clip(str(cell), col.width - 12, bold=bold), bold=bold, color=color)
            x += col.width

    def summary_line(self, label: str, value: str) -> None:
        left = PAGE_WIDTH - MARGIN - 200
        self.text(left + 10, label, color=TEXT_GRAY)
        self.text_right(PAGE_WIDTH - MARGIN - 10, value)
        self.down(16)

    def total_box(self, label: str, value: str, *, fill: Color) -> None:
        self.ensure_space(50)
        left = PAGE_WIDTH - MARGIN - 200
        self.c.setFillColor(fill)
        self.c.rect(left, self.y - 10, 200, 30, stroke=0, fill=1)
        self.text(left + 10, label, size=12, bold=True, color=white)
        self.text_right(PAGE_WIDTH - MARGIN - 10, value, size=12, bold=True, color=white)
        self.down(48)

    def paragraph(self, title: str, body: str) -> None:
        lines = _wrap(str(body or ""), CONTENT_WIDTH)
        self.ensure_space(20 + 14 * len(lines))
        self.text(MARGIN, title, bold=True, color=TEXT_GRAY)
        self.down(16)
        for line in lines:
            self.text(MARGIN, line)
            self.down(14)
        self.down(10)

    def payment_instructions(self) -> None:
        self.ensure_space(80)
        self.text(MARGIN, "PAYMENT INSTRUCTIONS", bold=True, color=TEXT_GRAY)
        self.down(16)
        for label, value in (
            ("Bank:", settings.bank_name),
            ("Account Name:", settings.bank_account_name),
            ("Account No.:", settings.bank_account_number),
        ):
            self.label_value(label, value, label_width=90)

    def footer(self, message: str = "Thank you for your business!") -> None:
        self.c.setFillColor(TEXT_GRAY)
        self.c.setFont(FONT, 9)
        self.c.drawCentredString(PAGE_WIDTH / 2, MARGIN - 20, message)
        self.c.drawCentredString(
            PAGE_WIDTH / 2, MARGIN - 32, f"{settings.company_email}  |  {settings.company_phone}"
        )

    def finish(self) -> bytes:
        self.footer()
        self.c.showPage()
        self.c.save()
        return self.buf.getvalue()


def _clip(s: str, width: float, *, bold: bool = False, size: float = 10) -> str:
    font = FONT_BOLD if bold else FONT
    if stringWidth(s, font, size) <= width:
        return s
    while s and stringWidth(s + "...", font, size) > width:
        s = s[:-1]
    return s + "..."


def _wrap(text: str, width: float, *, size: float = 10) -> list[str]:
    out: list[str] = []
    for para in text.splitlines() or [""]:
        line = ""
        for word in para.split():
            candidate = f"{line} {word}".strip()
            if stringWidth(candidate, FONT, size) <= width:
                line = candidate
            else:
                if line:
                    out.append(line)
                line = word
        out.append(line)
    return out
