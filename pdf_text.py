"""PDF text extraction for the text-only extraction path.

Uses PyMuPDF to pull the text layer page by page. Scanned PDFs with no text
layer come back as an empty string; rasterizing them is not attempted.
"""

import logging

import fitz  # PyMuPDF

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"


class PdfParseError(ValueError):
    """The upload could not be opened as a PDF."""


def extract_text(pdf_bytes: bytes) -> str:
    """Return the text of every page, pages separated by blank lines.

    Raises PdfParseError if the bytes are not a readable PDF.
    """
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as e:
        raise PdfParseError(f"Failed to parse PDF: {e}") from e

    try:
        pages = [doc.load_page(pno).get_text().strip() for pno in range(len(doc))]
    except Exception as e:
        raise PdfParseError(f"Failed to read PDF text: {e}") from e
    finally:
        doc.close()

    text = "\n\n".join(p for p in pages if p)
    logger.info("PDF text extracted: pages=%d chars=%d", len(pages), len(text))
    return text
