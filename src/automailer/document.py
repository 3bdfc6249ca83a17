from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError
from reportlab.pdfgen import canvas

from .errors import DocumentError


logger = logging.getLogger(__name__)

# Errors pypdf raises on malformed input besides its own hierarchy.
_PDF_ERRORS = (PyPdfError, ValueError, KeyError, TypeError, AttributeError)


@dataclass(frozen=True)
class DateStamp:
    """
    Where and how the date lands on the cover page. Coordinates are PDF points, measured
    from the right edge and the bottom edge of the first page.
    """

    date_format: str = "%m/%d/%Y"
    x_from_right: float = 90.0
    y: float = 80.0
    font_name: str = "Helvetica"
    font_size: float = 9.0


def _read_pdf(data: bytes, *, what: str) -> PdfReader:
    if not data:
        raise DocumentError(f"{what} is empty")
    try:
        return PdfReader(io.BytesIO(data))
    except _PDF_ERRORS as e:
        raise DocumentError(f"{what} is not a readable PDF: {e}") from e


def _render_overlay(width: float, height: float, text: str, x: float, y: float, stamp: DateStamp) -> bytes:
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height))
    c.setFont(stamp.font_name, stamp.font_size)
    c.drawString(x, y, text)
    c.showPage()
    c.save()
    return buf.getvalue()


def stamp_template(
    template_bytes: bytes,
    *,
    today: Optional[date] = None,
    stamp: DateStamp = DateStamp(),
) -> bytes:
    """
    Draw the date onto the first page of the template and return the new PDF bytes.

    Every other page is copied untouched, so the page count never changes. `today` defaults to
    the local clock at call time.
    """
    reader = _read_pdf(template_bytes, what="template")
    try:
        if not reader.pages:
            raise DocumentError("template has no pages")

        writer = PdfWriter(clone_from=reader)
        first = writer.pages[0]
        box = first.mediabox
        left, bottom = float(box.left), float(box.bottom)
        width, height = float(box.width), float(box.height)

        text = (today or date.today()).strftime(stamp.date_format)
        # Overlay is drawn on a page the size of the mediabox, so coordinates are relative to it.
        overlay_bytes = _render_overlay(width, height, text, width - stamp.x_from_right, stamp.y, stamp)
        overlay = PdfReader(io.BytesIO(overlay_bytes)).pages[0]
        if left or bottom:
            first.merge_translated_page(overlay, left, bottom)
        else:
            first.merge_page(overlay)

        out = io.BytesIO()
        writer.write(out)
        return out.getvalue()
    except _PDF_ERRORS as e:
        raise DocumentError(f"failed to stamp template: {e}") from e


def merge_documents(documents: Iterable[bytes]) -> bytes:
    """
    Concatenate all pages of each document, in order, into one new PDF.

    An empty input yields a valid PDF with zero pages.
    """
    writer = PdfWriter()
    try:
        for idx, data in enumerate(documents):
            reader = _read_pdf(data, what=f"document #{idx + 1}")
            writer.append(reader)

        out = io.BytesIO()
        writer.write(out)
        return out.getvalue()
    except _PDF_ERRORS as e:
        raise DocumentError(f"failed to merge documents: {e}") from e


def page_count(data: bytes) -> int:
    return len(_read_pdf(data, what="document").pages)


class DocumentComposer:
    """
    Builds the deliverable for one statement: a freshly dated cover page followed by the statement.
    """

    def __init__(
        self,
        template_path: Union[str, Path],
        *,
        stamp: DateStamp = DateStamp(),
        today: Callable[[], date] = date.today,
    ) -> None:
        self.template_path = Path(template_path)
        self.stamp = stamp
        self._today = today
        self._template: Optional[bytes] = None

    def load_template(self) -> bytes:
        if self._template is None:
            try:
                self._template = self.template_path.read_bytes()
            except OSError as e:
                raise DocumentError(f"failed to read template {self.template_path}: {e}") from e
        return self._template

    def stamp_template(self) -> bytes:
        return stamp_template(self.load_template(), today=self._today(), stamp=self.stamp)

    def compose(self, statement_pdf: bytes) -> bytes:
        logger.debug("Creating template pdf")
        cover = self.stamp_template()
        logger.debug("Merging pdfs")
        return merge_documents([cover, statement_pdf])
