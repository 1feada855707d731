# apps/api/services/pdf_renderer.py

import logging
from typing import Iterable, Optional

import fitz

from .document_integrity import qr_code_png

_logger = logging.getLogger(__name__)

# A4 in points
PAGE_WIDTH = 595
PAGE_HEIGHT = 842
MARGIN = 56
LINE_HEIGHT = 16
FOOTER_TOP = PAGE_HEIGHT - 110


class PdfRenderer:
    """
    Minimal document renderer: a title, one text line per entry and a footer
    carrying the verification URL and its QR code. The footer never contains
    the document hash.
    """

    def __init__(self, organisation: str = "Land Acquisition Management System"):
        self.organisation = organisation

    def render(self, title: str, lines: Iterable[str], verification_url: Optional[str] = None) -> bytes:
        doc = fitz.open()
        try:
            page = self._new_page(doc, title)
            y = MARGIN + 60
            for line in lines:
                if y > FOOTER_TOP - LINE_HEIGHT:
                    self._footer(page, verification_url)
                    page = self._new_page(doc, title)
                    y = MARGIN + 60
                page.insert_text((MARGIN, y), str(line), fontsize=11, fontname="helv")
                y += LINE_HEIGHT
            self._footer(page, verification_url)
            return doc.tobytes(garbage=4, deflate=True)
        finally:
            doc.close()

    def _new_page(self, doc, title: str):
        page = doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
        page.insert_text((MARGIN, MARGIN), self.organisation, fontsize=9, fontname="helv")
        page.insert_text((MARGIN, MARGIN + 28), title, fontsize=16, fontname="hebo")
        return page

    def _footer(self, page, verification_url: Optional[str]) -> None:
        if not verification_url:
            return
        try:
            png = qr_code_png(verification_url)
        except Exception as e:
            # QR image is decorative; the printed URL still carries the pointer
            _logger.warning(f"QR code generation failed for {verification_url}: {str(e)}")
            png = None
        if png:
            page.insert_image(fitz.Rect(MARGIN, FOOTER_TOP, MARGIN + 80, FOOTER_TOP + 80), stream=png)
        page.insert_text((MARGIN + 90, FOOTER_TOP + 36), "Verify this document:", fontsize=8, fontname="helv")
        page.insert_text((MARGIN + 90, FOOTER_TOP + 48), verification_url, fontsize=8, fontname="helv")
