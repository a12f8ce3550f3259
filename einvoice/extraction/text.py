"""Text layer extraction for PDF documents.

Only born-digital PDFs carry a text layer; scanned documents return an empty
string and are handled by the provider's vision input alone.
"""

import logging
from io import BytesIO

from pypdf import PdfReader
from pypdf.errors import PdfReadError

logger = logging.getLogger(__name__)


def looks_like_pdf(body: bytes) -> bool:
    """Check the PDF magic bytes (tolerating a UTF-8 BOM and leading whitespace)."""
    if not body:
        return False
    head = body.lstrip()
    if head.startswith(b"\xef\xbb\xbf"):
        head = head[3:].lstrip()
    return head.startswith(b"%PDF")


def extract_pdf_text(body: bytes, max_pages: int = 20) -> str:
    """Concatenate the text of the first pages of a PDF.

    Args:
        body: PDF file content
        max_pages: Pages to read at most

    Returns:
        Page texts separated by blank lines; empty if the PDF has no text layer
        or cannot be parsed
    """
    if not looks_like_pdf(body):
        return ""
    try:
        reader = PdfReader(BytesIO(body))
        pages = []
        for page in reader.pages[:max_pages]:
            text = (page.extract_text() or "").replace("\u202f", " ").replace("\xa0", " ")
            if text.strip():
                pages.append(text.strip())
    except PdfReadError as e:
        logger.warning(f"Could not read PDF text layer: {e}")
        return ""
    return "\n\n".join(pages)
