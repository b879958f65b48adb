"""
Stamp a customer's handwritten signature onto the last page of a contract PDF.

Coordinates are authored in millimetres from the top-left of the page (how the
contract template is laid out) and converted to PDF points from the
bottom-left (how PDF drawing works): 1 mm = 2.835 pt.

Where the block goes depends on the page count of the contract:

- 3 or more pages: the signature section was pushed onto a fresh last page by
  the template's page-break rule, so it sits a fixed distance below the top
  margin of that page.
- 1 or 2 pages: the signature section follows the body text and ends near the
  bottom margin, so the block is placed a fixed distance above the bottom edge.

This is a heuristic tied to the contract template. It is isolated in
`compute_signature_placement` so it can be replaced by anchor-based placement.
"""

from __future__ import annotations

import base64
import binascii
import io
import re
from dataclasses import dataclass
from datetime import datetime

from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError
from reportlab.lib.colors import Color, black
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from ...domain.clock import format_local
from ...errors import RenderError

MM_TO_PT = 2.835

SIGNATURE_BOX_WIDTH_PT = 100.0
SIGNATURE_BOX_HEIGHT_PT = 40.0

PAGE_MARGIN_MM = 20.0
# Client column of the two-column signature section.
CLIENT_COLUMN_X_MM = 115.0
# Multi-page contracts: client signature line, measured down from the top margin.
TOP_LAYOUT_LINE_OFFSET_MM = 45.0
# Short contracts: bottom of the signature image, measured up from the bottom margin.
BOTTOM_LAYOUT_OFFSET_MM = 30.0

# Signer name and date lines, measured down from the bottom of the signature image.
NAME_GAP_MM = 4.2
DATE_GAP_MM = 8.5
NAME_FONT = ("Helvetica", 10)
DATE_FONT = ("Helvetica", 9)
DATE_GRAY = Color(0.4, 0.4, 0.4)

_SUPPORTED_FORMATS = {"PNG": "image/png", "JPEG": "image/jpeg"}
_DATA_URL_RE = re.compile(r"^data:(image/[a-zA-Z0-9.+-]+);base64,(.+)$", re.DOTALL)


@dataclass(frozen=True, slots=True)
class SignaturePlacement:
    x: float
    y: float
    width: float
    height: float
    scale: float
    name_y: float
    date_y: float


def mm_to_pt(mm: float) -> float:
    return mm * MM_TO_PT


def fit_scale(image_width: float, image_height: float) -> float:
    """Largest scale <= 1 that fits the image in the signature box."""
    if image_width <= 0 or image_height <= 0:
        raise RenderError(message="Signature image has no size", code="invalid_signature_image")
    return min(SIGNATURE_BOX_WIDTH_PT / image_width, SIGNATURE_BOX_HEIGHT_PT / image_height, 1.0)


def compute_signature_placement(
    *,
    page_count: int,
    page_width: float,
    page_height: float,
    image_width: float,
    image_height: float,
) -> SignaturePlacement:
    if page_count < 1:
        raise RenderError(message="PDF has no pages", code="invalid_pdf")
    scale = fit_scale(image_width, image_height)
    width = image_width * scale
    height = image_height * scale
    # Keep the column inside narrow pages.
    x = min(mm_to_pt(CLIENT_COLUMN_X_MM), max(0.0, page_width - mm_to_pt(PAGE_MARGIN_MM) - width))

    if page_count >= 3:
        line_y = page_height - mm_to_pt(PAGE_MARGIN_MM + TOP_LAYOUT_LINE_OFFSET_MM)
        y = line_y + 2.0
    else:
        y = mm_to_pt(PAGE_MARGIN_MM + BOTTOM_LAYOUT_OFFSET_MM)

    return SignaturePlacement(
        x=x,
        y=y,
        width=width,
        height=height,
        scale=scale,
        name_y=y - mm_to_pt(NAME_GAP_MM),
        date_y=y - mm_to_pt(DATE_GAP_MM),
    )


def decode_signature_image(signature_data: str) -> Image.Image:
    """Decode a PNG/JPEG data URL. Anything else is a RenderError."""
    m = _DATA_URL_RE.match(str(signature_data or "").strip())
    if not m:
        raise RenderError(message="Signature is not an image data URL", code="unsupported_signature_image")
    try:
        raw = base64.b64decode(m.group(2), validate=True)
        img = Image.open(io.BytesIO(raw))
        img.load()
    except (binascii.Error, ValueError, UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
        raise RenderError(message="Signature image could not be decoded", code="unsupported_signature_image", cause=e) from e
    if img.format not in _SUPPORTED_FORMATS:
        raise RenderError(
            message=f"Unsupported signature image format: {img.format or m.group(1)}",
            code="unsupported_signature_image",
        )
    return img


def _overlay(
    *,
    page_width: float,
    page_height: float,
    image: Image.Image,
    placement: SignaturePlacement,
    signed_by_name: str,
    signed_label: str,
) -> PdfReader:
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=(page_width, page_height))
    c.drawImage(
        ImageReader(image),
        placement.x,
        placement.y,
        width=placement.width,
        height=placement.height,
        mask="auto",
    )
    c.setFillColor(black)
    c.setFont(*NAME_FONT)
    c.drawString(placement.x, placement.name_y, signed_by_name)
    c.setFillColor(DATE_GRAY)
    c.setFont(*DATE_FONT)
    c.drawString(placement.x, placement.date_y, signed_label)
    c.showPage()
    c.save()
    buf.seek(0)
    return PdfReader(buf)


def stamp_signature(
    pdf_bytes: bytes,
    *,
    signature_data: str,
    signed_by_name: str,
    signed_at_label: str,
) -> bytes:
    """
    Return a copy of `pdf_bytes` with the signature, signer name and
    `Signed: <date>` line drawn on the last page.

    `signed_at_label` is the already-formatted signing time.
    """
    try:
        reader = PdfReader(io.BytesIO(pdf_bytes))
        pages = list(reader.pages)
    except (PyPdfError, ValueError, OSError) as e:
        raise RenderError(message="Contract PDF could not be read", code="invalid_pdf", cause=e) from e
    if not pages:
        raise RenderError(message="PDF has no pages", code="invalid_pdf")

    image = decode_signature_image(signature_data)
    last = pages[-1]
    box = last.mediabox
    page_width, page_height = float(box.width), float(box.height)
    placement = compute_signature_placement(
        page_count=len(pages),
        page_width=page_width,
        page_height=page_height,
        image_width=float(image.width),
        image_height=float(image.height),
    )

    try:
        overlay = _overlay(
            page_width=page_width,
            page_height=page_height,
            image=image,
            placement=placement,
            signed_by_name=str(signed_by_name or "").strip(),
            signed_label=f"Signed: {signed_at_label}",
        )
    except Exception as e:
        raise RenderError(message="Signature overlay could not be drawn", cause=e) from e

    writer = PdfWriter()
    for p in pages:
        writer.add_page(p)
    target = writer.pages[-1]
    # Pages with a shifted origin: move the overlay onto the visible area.
    offset_x, offset_y = float(box.left), float(box.bottom)
    try:
        if offset_x or offset_y:
            target.merge_translated_page(overlay.pages[0], offset_x, offset_y)
        else:
            target.merge_page(overlay.pages[0])
        out = io.BytesIO()
        writer.write(out)
    except (PyPdfError, ValueError, KeyError) as e:
        raise RenderError(message="Signature could not be merged into the PDF", cause=e) from e
    return out.getvalue()


def signed_file_name(original_name: str | None) -> str:
    base = re.sub(r"\.pdf$", "", str(original_name or "").strip(), flags=re.IGNORECASE) or "agreement"
    return f"{base}-signed.pdf"


def format_signed_label(signed_at: datetime, tz_name: str) -> str:
    return format_local(signed_at, tz_name)
