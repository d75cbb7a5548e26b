"""Plain-text extraction from uploaded files"""
import io
import logging
from pathlib import Path

import PyPDF2
from PyPDF2.errors import PdfReadError

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {".txt", ".md", ".csv", ".json", ".html", ".xml"}


class TextExtractionError(Exception):
    """File could not be turned into text"""


def extract_text(filename: str, data: bytes) -> str:
    """
    Extract plain text from an uploaded file

    Args:
        filename: Original file name, used to pick the decoder
        data: Raw file bytes

    Returns:
        Extracted text, stripped
    """
    extension = Path(filename).suffix.lower()

    if extension == ".pdf":
        text = _extract_text_from_pdf(data)
    elif extension in TEXT_EXTENSIONS:
        text = data.decode("utf-8", errors="replace")
    else:
        raise TextExtractionError(f"Unsupported file type: {extension or filename}")

    text = text.strip()
    if not text:
        raise TextExtractionError(f"Could not extract text from {filename}")
    return text


def _extract_text_from_pdf(data: bytes) -> str:
    """Extract text content from PDF bytes"""
    text = ""

    try:
        pdf_reader = PyPDF2.PdfReader(io.BytesIO(data))

        # Extract text from all pages
        for page in pdf_reader.pages:
            page_text = page.extract_text()
            if page_text:
                text += page_text + "\n\n"
    except PdfReadError as e:
        logger.error(f"Error extracting text from PDF: {e}")
        raise TextExtractionError(f"Invalid PDF file: {e}") from e

    return text
